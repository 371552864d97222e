"""
argocd-update step - syncs Argo CD Applications to desired revisions.

For each Application the step works out the revisions it should be synced to,
checks whether the Application's current operation belongs to this promotion,
and if an update is needed, rewrites the Application's sources and starts a
new sync operation stamped with the promotion's identity. Subsequent passes
observe that operation until it reaches a terminal phase.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from promoter.core.config import settings
from promoter.core.errors import (
    ConfigurationError,
    PermissionDeniedError,
    TechnicalError,
    join_errors,
)
from promoter.schemas.argocd import (
    ANNOTATION_KEY_REFRESH,
    APPLICATION_API_VERSION,
    EVENT_REASON_OPERATION_STARTED,
    REFRESH_TYPE_HARD,
    AppProject,
    Application,
    ApplicationSource,
    ApplicationSourceHelm,
    ApplicationSourceKustomize,
    ArgoCDAppSourceUpdate,
    ArgoCDAppUpdate,
    ArgoCDUpdateConfig,
    HelmImageUpdates,
    HelmImageValue,
    HelmParameter,
    Info,
    KustomizeImageUpdates,
    Operation,
    OperationInitiator,
    OperationPhase,
    OperationState,
    SyncOperation,
)
from promoter.schemas.freight import FreightOrigin, Image as FreightImage
from promoter.schemas.health import HealthCheckStep
from promoter.schemas.promotion import PromotionPhase, StepResult
from promoter.services.freight import ImageFinder
from promoter.services.git_urls import normalize_git_url
from promoter.services.kube_client import ClusterClient, patch_unstructured
from promoter.services.label_selector import build_label_selector
from promoter.services.merge import recursive_merge
from promoter.services.outcome import Fail, Outcome, Proceed, Wait
from promoter.services.shared_state import get_step_output
from promoter.services.step_registry import StepContext, StepRunner
from promoter.services.sync_windows import SyncWindows

logger = logging.getLogger(__name__)

STEP_KIND_ARGOCD_UPDATE = "argocd-update"

# Info entry correlating an operation with the promotion that started it
PROMOTION_INFO_KEY = "kargo.akuity.io/promotion"
SYNC_REASON = "Promotion triggered a sync of this Application resource."
AUTHORIZED_STAGE_ANNOTATION = "kargo.akuity.io/authorized-stage"
COMMIT_OUTPUT_KEY = "commit"
MAX_VALIDATION_ERRORS_TO_REPORT = 3

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "ArgoCDUpdateConfig",
    "type": "object",
    "additionalProperties": False,
    "required": ["apps"],
    "properties": {
        "apps": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/app"}},
        "fromOrigin": {"$ref": "#/$defs/origin"},
    },
    "$defs": {
        "app": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "namespace": {"type": "string", "minLength": 1},
                "selector": {"$ref": "#/$defs/selector"},
                "fromOrigin": {"$ref": "#/$defs/origin"},
                "sources": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/source"}},
            },
            "oneOf": [{"required": ["name"]}, {"required": ["selector"]}],
        },
        "selector": {
            "type": "object",
            "additionalProperties": False,
            "minProperties": 1,
            "properties": {
                "matchLabels": {"type": "object", "additionalProperties": {"type": "string"}},
                "matchExpressions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["key", "operator"],
                        "properties": {
                            "key": {"type": "string", "minLength": 1},
                            "operator": {"enum": ["In", "NotIn", "Exists", "DoesNotExist"]},
                            "values": {"type": "array", "items": {"type": "string"}},
                        },
                    },
                },
            },
        },
        "source": {
            "type": "object",
            "additionalProperties": False,
            "required": ["repoURL"],
            "properties": {
                "repoURL": {"type": "string", "minLength": 1},
                "chart": {"type": "string"},
                "desiredRevision": {"type": "string", "minLength": 1},
                "desiredCommitFromStep": {"type": "string", "minLength": 1},
                "updateTargetRevision": {"type": "boolean"},
                "fromOrigin": {"$ref": "#/$defs/origin"},
                "helm": {"$ref": "#/$defs/helm"},
                "kustomize": {"$ref": "#/$defs/kustomize"},
            },
            "if": {
                "properties": {"updateTargetRevision": {"const": True}},
                "required": ["updateTargetRevision"],
            },
            "then": {
                "oneOf": [
                    {"required": ["desiredRevision"]},
                    {"required": ["desiredCommitFromStep"]},
                ],
            },
        },
        "helm": {
            "type": "object",
            "additionalProperties": False,
            "required": ["images"],
            "properties": {
                "images": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["key", "repoURL", "value"],
                        "properties": {
                            "key": {"type": "string", "minLength": 1},
                            "repoURL": {"type": "string", "minLength": 1},
                            "value": {"enum": ["ImageAndTag", "Tag", "ImageAndDigest", "Digest"]},
                            "fromOrigin": {"$ref": "#/$defs/origin"},
                        },
                    },
                },
            },
        },
        "kustomize": {
            "type": "object",
            "additionalProperties": False,
            "required": ["images"],
            "properties": {
                "images": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "required": ["repoURL"],
                        "properties": {
                            "repoURL": {"type": "string", "minLength": 1},
                            "useDigest": {"type": "boolean"},
                            "newName": {"type": "string", "minLength": 1},
                            "fromOrigin": {"$ref": "#/$defs/origin"},
                        },
                    },
                },
            },
        },
        "origin": {
            "type": "object",
            "additionalProperties": False,
            "required": ["kind", "name"],
            "properties": {
                "kind": {"enum": ["Warehouse"]},
                "name": {"type": "string", "minLength": 1},
            },
        },
    },
}

# Lower sorts first: the worst phase decides the step status
_PHASE_SEVERITY = {
    OperationPhase.FAILED: 0,
    OperationPhase.ERROR: 0,
    OperationPhase.RUNNING: 1,
    OperationPhase.TERMINATING: 1,
    OperationPhase.SUCCEEDED: 2,
}

Phase = Union[OperationPhase, str]


def _app_ref(app: Application) -> str:
    return f'Argo CD Application "{app.name}" in namespace "{app.namespace}"'


def source_update_matches(update: ArgoCDAppSourceUpdate, source: ApplicationSource) -> bool:
    """Whether a configured source update applies to an Application source.

    Chart sources must match on repoURL and chart exactly. Git sources match
    on their normalized repoURL.
    """
    if source.chart or update.chart:
        return source.repo_url == update.repo_url and source.chart == update.chart
    return normalize_git_url(source.repo_url) == normalize_git_url(update.repo_url)


def assign_source_updates(
    update: ArgoCDAppUpdate, sources: List[ApplicationSource]
) -> Tuple[List[Optional[ArgoCDAppSourceUpdate]], List[ArgoCDAppSourceUpdate]]:
    """Pair each source update with the first matching source not yet taken.

    Returns:
        The update assigned to each source position (or None), and the
        updates that matched no source
    """
    assigned: List[Optional[ArgoCDAppSourceUpdate]] = [None] * len(sources)
    unmatched = []
    for src_update in update.sources:
        for i, source in enumerate(sources):
            if assigned[i] is None and source_update_matches(src_update, source):
                assigned[i] = src_update
                break
        else:
            unmatched.append(src_update)
    return assigned, unmatched


def determine_desired_revisions(
    update: ArgoCDAppUpdate, app: Application, shared_state: Dict[str, Any]
) -> List[str]:
    """Build the desired revision for each of the Application's sources.

    A source's revision comes from the matching source update, either given
    explicitly or taken from the commit recorded by an earlier step. Sources
    without a matching update get "" (no opinion).

    Raises:
        ConfigurationError: If a referenced step recorded no commit
    """
    assigned, _ = assign_source_updates(update, app.current_sources())
    revisions = []
    for src_update in assigned:
        revision = ""
        if src_update is not None:
            if src_update.desired_revision:
                revision = src_update.desired_revision
            elif src_update.desired_commit_from_step:
                commit = get_step_output(
                    shared_state, src_update.desired_commit_from_step, COMMIT_OUTPUT_KEY
                )
                if not isinstance(commit, str) or not commit:
                    raise ConfigurationError(
                        f"no commit found in output of step "
                        f'"{src_update.desired_commit_from_step}"'
                    )
                revision = commit
        revisions.append(revision)
    return revisions


def _operation_info(operation: Operation, name: str) -> Optional[str]:
    for info in operation.info:
        if info.name == name:
            return info.value
    return None


def check_operation_ownership(
    op_state: OperationState, promotion: str, initiator: str
) -> Outcome:
    """Decide whether an Application's current operation belongs to us.

    Returns:
        Proceed if the operation was started by us for this promotion.
        Wait if someone else's operation is still in flight.
        Fail if someone else's operation has finished; it says nothing
        about our own sync, so a new one must be started.
    """
    operation = op_state.operation
    if operation.initiated_by.username != initiator:
        reason = (
            f'current operation was initiated by "{operation.initiated_by.username}": '
            "waiting for operation to complete"
        )
        if not op_state.phase.completed():
            return Wait(reason, phase=op_state.phase)
        return Fail(reason)

    if _operation_info(operation, PROMOTION_INFO_KEY) != promotion:
        reason = (
            f"current operation was not initiated for Promotion {promotion}: "
            "waiting for operation to complete"
        )
        if not op_state.phase.completed():
            return Wait(reason, phase=op_state.phase)
        return Fail(reason)

    return Proceed()


def _source_fields(source: ApplicationSource) -> Dict[str, Any]:
    # Unset and empty fields compare equal
    return {k: v for k, v in source.to_object().items() if v not in (None, "", [], {})}


def _sources_equal(a: List[ApplicationSource], b: List[ApplicationSource]) -> bool:
    return len(a) == len(b) and all(
        _source_fields(x) == _source_fields(y) for x, y in zip(a, b)
    )


def must_perform_update(
    app: Application,
    desired_revisions: List[str],
    promotion: str,
    initiator: Optional[str] = None,
    desired_sources: Optional[List[ApplicationSource]] = None,
) -> Tuple[Phase, bool, Optional[str]]:
    """Decide whether the Application must be (re)synced.

    Args:
        desired_sources: Sources the Application should have been synced
            with; only compared when the step updates sources

    Returns:
        (observed phase or "", whether an update is needed, diagnostic)
    """
    initiator = initiator or settings.OPERATION_INITIATOR
    op_state = app.status.operation_state
    if op_state is None:
        return "", True, None

    ownership = check_operation_ownership(op_state, promotion, initiator)
    if isinstance(ownership, Wait):
        return ownership.phase, False, ownership.reason
    if isinstance(ownership, Fail):
        logger.info(f"{_app_ref(app)}: previous operation is complete; can start a new one")
        return "", True, None

    if not op_state.phase.completed():
        return op_state.phase, False, None

    sync_result = op_state.sync_result
    if sync_result is None:
        return "", True, "operation completed without a sync result"

    if desired_sources is not None:
        if sync_result.source is not None and sync_result.source.repo_url:
            synced_sources = [sync_result.source]
            desired_sources = desired_sources[:1]
        else:
            synced_sources = sync_result.sources
        if not _sources_equal(synced_sources, desired_sources):
            return "", True, "operation result source does not match desired source"

    if not desired_revisions:
        return op_state.phase, False, None

    observed = sync_result.revisions or [sync_result.revision]
    for i, desired in enumerate(desired_revisions):
        if not desired:
            continue
        if i >= len(observed) or observed[i] != desired:
            return "", True, (
                f"sync result revisions {observed} do not match "
                f"desired revisions {desired_revisions}"
            )
    return op_state.phase, False, None


async def build_kustomize_images(
    update: KustomizeImageUpdates,
    images: ImageFinder,
    origin: Optional[FreightOrigin] = None,
) -> List[str]:
    """Render Kustomize image overrides as repo[=newName](:tag|@digest).

    Tags and digests come from the Freight being promoted. Images the
    Freight does not carry are left out.
    """
    kustomize_images = []
    for image_update in update.images:
        image = await _find_image(images, image_update.repo_url, image_update.from_origin or origin)
        if image is None:
            continue
        ref = image_update.repo_url
        if image_update.new_name:
            ref = f"{ref}={image_update.new_name}"
        if image_update.use_digest:
            ref = f"{ref}@{image.digest}"
        else:
            ref = f"{ref}:{image.tag}"
        kustomize_images.append(ref)
    return kustomize_images


async def build_helm_parameter_changes(
    update: HelmImageUpdates,
    images: ImageFinder,
    origin: Optional[FreightOrigin] = None,
) -> Dict[str, str]:
    """Map Helm parameter keys to values taken from Freight images.

    Images the Freight does not carry are left out.
    """
    changes: Dict[str, str] = {}
    for image_update in update.images:
        image = await _find_image(images, image_update.repo_url, image_update.from_origin or origin)
        if image is None:
            continue
        if image_update.value == HelmImageValue.IMAGE_AND_TAG:
            changes[image_update.key] = f"{image_update.repo_url}:{image.tag}"
        elif image_update.value == HelmImageValue.TAG:
            changes[image_update.key] = image.tag
        elif image_update.value == HelmImageValue.IMAGE_AND_DIGEST:
            changes[image_update.key] = f"{image_update.repo_url}@{image.digest}"
        elif image_update.value == HelmImageValue.DIGEST:
            changes[image_update.key] = image.digest
    return changes


async def _find_image(
    images: ImageFinder, repo_url: str, origin: Optional[FreightOrigin]
) -> Optional[FreightImage]:
    try:
        image = await images.find(repo_url, origin)
    except ConfigurationError as e:
        raise ConfigurationError(f'error finding image from repo "{repo_url}": {e}') from e
    except TechnicalError as e:
        raise TechnicalError(f'error finding image from repo "{repo_url}": {e}') from e
    if image is None:
        logger.debug(f"No image from {repo_url} in Freight; not overriding it")
    return image


async def apply_source_update(
    update: ArgoCDAppSourceUpdate,
    desired_revision: str,
    source: ApplicationSource,
    images: ImageFinder,
    origin: Optional[FreightOrigin] = None,
) -> ApplicationSource:
    """Return a copy of source with the update applied."""
    source = source.model_copy(deep=True)
    origin = update.from_origin or origin
    if update.update_target_revision and desired_revision:
        source.target_revision = desired_revision

    if update.kustomize is not None and update.kustomize.images:
        kustomize_images = await build_kustomize_images(update.kustomize, images, origin)
        if kustomize_images:
            if source.kustomize is None:
                source.kustomize = ApplicationSourceKustomize()
            source.kustomize.images = kustomize_images

    if update.helm is not None and update.helm.images:
        changes = await build_helm_parameter_changes(update.helm, images, origin)
        if changes and source.helm is None:
            source.helm = ApplicationSourceHelm()
        for key, value in changes.items():
            param = HelmParameter(name=key, value=value)
            for i, existing in enumerate(source.helm.parameters):
                if existing.name == key:
                    source.helm.parameters[i] = param
                    break
            else:
                source.helm.parameters.append(param)
    return source


async def build_desired_sources(
    app: Application,
    update: ArgoCDAppUpdate,
    desired_revisions: List[str],
    images: Optional[ImageFinder] = None,
    origin: Optional[FreightOrigin] = None,
) -> List[ApplicationSource]:
    """Apply the configured source updates to a copy of the app's sources.

    Args:
        images: Finder for the images of the Freight being promoted; without
            one, no image overrides are applied
        origin: Origin of Freight to take images from when neither the
            update nor the image names one

    Raises:
        ConfigurationError: If the revision vector does not line up with the
            sources, or a source update matches no source
    """
    images = images or ImageFinder()
    origin = update.from_origin or origin
    sources = [s.model_copy(deep=True) for s in app.current_sources()]
    if len(sources) != len(desired_revisions):
        raise ConfigurationError(
            f"{_app_ref(app)} has {len(sources)} sources but "
            f"{len(desired_revisions)} desired revisions"
        )

    assigned, unmatched = assign_source_updates(update, sources)
    if unmatched:
        src_update = unmatched[0]
        message = (
            f"no source of {_app_ref(app)} matched update for source with "
            f"repoURL {src_update.repo_url}"
        )
        if src_update.chart:
            message += f' and chart "{src_update.chart}"'
        raise ConfigurationError(message)

    for i, src_update in enumerate(assigned):
        if src_update is not None:
            sources[i] = await apply_source_update(
                src_update, desired_revisions[i], sources[i], images, origin
            )
    return sources


def operation_phases_to_step_status(phases: List[Phase]) -> Optional[PromotionPhase]:
    """Map the worst of several operation phases to a step status."""
    known = [OperationPhase(p) for p in phases if p in _PHASE_SEVERITY]
    if not known:
        return None
    worst = min(known, key=lambda p: _PHASE_SEVERITY[p])
    if worst in (OperationPhase.RUNNING, OperationPhase.TERMINATING):
        return PromotionPhase.RUNNING
    if worst.failed():
        return PromotionPhase.ERRORED
    return PromotionPhase.SUCCEEDED


def format_sync_message(app: Application) -> str:
    message = "initiated sync"
    if len(app.spec.sources) == 1:
        message += " to " + app.spec.sources[0].target_revision
    elif len(app.spec.sources) > 1:
        message += f" to {len(app.spec.sources)} sources"
    elif app.spec.source is not None:
        message += " to " + app.spec.source.target_revision
    return message


def authorize_app_update(app: Application, project: str, stage: str) -> None:
    """Check the Application explicitly permits mutation by this stage.

    Raises:
        PermissionDeniedError: If the authorized-stage annotation is missing,
            malformed, uses a glob or names another stage
    """
    denied = (
        f"{_app_ref(app)} does not permit mutation by "
        f"Kargo Stage {stage} in namespace {project}"
    )
    allowed = app.metadata.annotations.get(AUTHORIZED_STAGE_ANNOTATION)
    if allowed is None:
        raise PermissionDeniedError(denied)

    tokens = allowed.split(":", 1)
    if len(tokens) != 2:
        raise PermissionDeniedError(
            f'unable to parse value of annotation "{AUTHORIZED_STAGE_ANNOTATION}" '
            f'("{allowed}") on {_app_ref(app)}'
        )
    project_name, stage_name = tokens
    if "*" in project_name or "*" in stage_name:
        raise PermissionDeniedError(
            f"{_app_ref(app)} has deprecated glob expression in annotation "
            f'"{AUTHORIZED_STAGE_ANNOTATION}" ("{allowed}")'
        )
    if project_name != project or stage_name != stage:
        raise PermissionDeniedError(denied)


class ArgoCDUpdater(StepRunner):
    """Step runner for the argocd-update step kind."""

    name = STEP_KIND_ARGOCD_UPDATE
    default_timeout = timedelta(seconds=settings.ARGOCD_UPDATE_TIMEOUT_SECONDS)
    config_schema = CONFIG_SCHEMA

    def __init__(self, initiator: Optional[str] = None):
        self.initiator = initiator or settings.OPERATION_INITIATOR

    async def run(self, step_ctx: StepContext) -> StepResult:
        client = step_ctx.argocd_client
        if client is None:
            return StepResult(
                status=PromotionPhase.ERRORED,
                message=(
                    "Argo CD integration is disabled on this controller; cannot update "
                    "Argo CD Application resources"
                ),
            )

        try:
            cfg = ArgoCDUpdateConfig.model_validate(step_ctx.config)
        except ValidationError as e:
            raise ConfigurationError(f"invalid {self.name} config: {e}") from e

        logger.info(f"Executing {self.name} step for promotion {step_ctx.promotion}")
        images = ImageFinder.from_step_context(step_ctx)
        phases: List[Phase] = []
        messages: List[str] = []
        app_health_checks: List[Dict[str, Any]] = []
        for update in cfg.apps:
            apps = await self._get_authorized_applications(client, step_ctx, update)
            if update.selector is not None:
                logger.info(f"Found {len(apps)} Applications matching selector")
            if update.sources:
                await self._validate_source_updates_applicable(
                    update, apps, step_ctx.shared_state, images, cfg.from_origin
                )

            for app in apps:
                desired_revisions = determine_desired_revisions(
                    update, app, step_ctx.shared_state
                )
                app_health_checks.append({
                    "name": app.name,
                    "namespace": app.namespace,
                    "desiredRevisions": desired_revisions,
                })

                desired_sources = await build_desired_sources(
                    app, update, desired_revisions, images, cfg.from_origin
                )
                phase, message = await self._process_application(
                    client, step_ctx, update, app, desired_revisions, desired_sources
                )
                if phase and OperationPhase(phase).failed():
                    # Fail fast
                    return StepResult(
                        status=PromotionPhase.FAILED,
                        message=message or f"{_app_ref(app)} sync operation {phase}",
                    )
                if phase:
                    phases.append(phase)
                if message:
                    messages.append(message)

        status = operation_phases_to_step_status(phases)
        if status is None:
            raise TechnicalError(
                f"could not determine promotion step status from operation phases: {phases}"
            )

        retry_after = None
        if status == PromotionPhase.RUNNING:
            retry_after = timedelta(seconds=settings.ARGOCD_RETRY_AFTER_SECONDS)
        logger.info(f"Done executing {self.name} step: {status.value}")
        return StepResult(
            status=status,
            message="; ".join(messages),
            health_check=HealthCheckStep(
                kind=STEP_KIND_ARGOCD_UPDATE,
                input={"apps": app_health_checks},
            ),
            retry_after=retry_after,
        )

    async def _get_authorized_applications(
        self, client: ClusterClient, step_ctx: StepContext, update: ArgoCDAppUpdate
    ) -> List[Application]:
        """Find the Applications an update targets and keep the authorized ones.

        Raises:
            PermissionDeniedError: If none of the Applications are authorized
            TechnicalError: If no Application could be found
        """
        namespace = update.namespace or settings.ARGOCD_NAMESPACE
        if update.selector is not None:
            selector = build_label_selector(update.selector)
            objs = await client.list("Application", namespace, label_selector=selector)
            apps = [Application.model_validate(obj) for obj in objs]
        else:
            obj = await client.get("Application", namespace, update.name)
            if obj is None:
                raise TechnicalError(
                    f'unable to find Argo CD Application "{update.name}" '
                    f'in namespace "{namespace}"'
                )
            apps = [Application.model_validate(obj)]

        authorized = []
        denials = []
        for app in apps:
            try:
                authorize_app_update(app, step_ctx.project, step_ctx.stage)
            except PermissionDeniedError as e:
                logger.info(f"Skipping unauthorized Application {app.namespace}/{app.name}: {e}")
                denials.append(e)
                continue
            authorized.append(app)

        if authorized:
            return authorized
        if update.selector is not None:
            if not apps:
                raise TechnicalError(
                    f'no Argo CD Applications found matching selector in namespace "{namespace}"'
                )
            raise PermissionDeniedError(
                f"found {len(apps)} Application(s) matching selector in namespace "
                f'"{namespace}", but none are authorized for Stage '
                f"{step_ctx.project}:{step_ctx.stage}"
            )
        raise PermissionDeniedError(
            f'Argo CD Application "{update.name}" in namespace "{namespace}" is not '
            f"authorized: {denials[0]}"
        )

    async def _validate_source_updates_applicable(
        self,
        update: ArgoCDAppUpdate,
        apps: List[Application],
        shared_state: Dict[str, Any],
        images: ImageFinder,
        origin: Optional[FreightOrigin],
    ) -> None:
        """Check every selected Application can take the source updates.

        Nothing is updated unless all of them can.

        Raises:
            ConfigurationError: Listing at most the first few incompatible apps
        """
        if len(apps) <= 1:
            return
        errors = []
        for app in apps:
            try:
                await build_desired_sources(
                    app,
                    update,
                    determine_desired_revisions(update, app, shared_state),
                    images,
                    origin,
                )
            except ConfigurationError as e:
                errors.append(f'Application "{app.name}" in namespace "{app.namespace}": {e}')
        if not errors:
            return
        if len(errors) > MAX_VALIDATION_ERRORS_TO_REPORT:
            raise ConfigurationError(
                f"selected Applications must have compatible sources; {len(errors)} "
                f"incompatible (showing first {MAX_VALIDATION_ERRORS_TO_REPORT}). "
                f"No Applications were updated:\n"
                f"{join_errors(errors[:MAX_VALIDATION_ERRORS_TO_REPORT])}"
            )
        raise ConfigurationError(
            f"selected Applications must have compatible sources; {len(errors)} "
            f"incompatible. No Applications were updated:\n{join_errors(errors)}"
        )

    async def _process_application(
        self,
        client: ClusterClient,
        step_ctx: StepContext,
        update: ArgoCDAppUpdate,
        app: Application,
        desired_revisions: List[str],
        desired_sources: List[ApplicationSource],
    ) -> Tuple[Phase, Optional[str]]:
        """Move a single Application one step closer to the desired revisions.

        Returns:
            The Application's operation phase (or "") and a message worth
            reporting, if any
        """
        phase, must_update, diagnostic = must_perform_update(
            app,
            desired_revisions,
            step_ctx.promotion,
            self.initiator,
            desired_sources if update.sources else None,
        )

        if not must_update:
            logger.info(f"{_app_ref(app)} does not require update")
            if diagnostic:
                if not phase:
                    raise TechnicalError(diagnostic)
                logger.info(f"{_app_ref(app)} update cannot be performed: {diagnostic}")
            if phase and OperationPhase(phase).failed():
                op_state = app.status.operation_state
                if op_state is not None:
                    return phase, f"{_app_ref(app)} failed with: {op_state.message}"
                return phase, None
            return phase, diagnostic

        logger.info(f"{_app_ref(app)} requires update")
        if diagnostic:
            logger.info(f"Performing update of {_app_ref(app)}: {diagnostic}")

        gate = await self._check_sync_windows(client, app)
        if isinstance(gate, Wait):
            logger.info(gate.reason)
            return OperationPhase.RUNNING, gate.reason

        await self.sync_application(client, step_ctx, app, desired_sources)
        return OperationPhase.RUNNING, None

    async def _check_sync_windows(self, client: ClusterClient, app: Application) -> Outcome:
        """Proceed if the app's AppProject currently permits a manual sync."""
        project_name = app.spec.project or "default"
        obj = await client.get("AppProject", app.namespace, project_name)
        if obj is None:
            logger.warning(
                f'AppProject "{project_name}" of {_app_ref(app)} not found; '
                "not checking sync windows"
            )
            return Proceed()
        project = AppProject.model_validate(obj)
        windows = SyncWindows(project.spec.sync_windows).matches(app)
        if windows.can_sync(is_manual=True):
            return Proceed()
        return Wait(
            f"sync of {_app_ref(app)} is blocked by a sync window of AppProject "
            f'"{project_name}": waiting for the sync window to open'
        )

    async def sync_application(
        self,
        client: ClusterClient,
        step_ctx: StepContext,
        app: Application,
        desired_sources: List[ApplicationSource],
    ) -> None:
        """Point the Application at the desired sources and start a sync.

        Raises:
            TechnicalError: If the Application could not be patched
        """
        app = app.model_copy(deep=True)
        app.metadata.annotations[ANNOTATION_KEY_REFRESH] = REFRESH_TYPE_HARD

        if app.spec.sources:
            app.spec.sources = [s.model_copy(deep=True) for s in desired_sources]
        elif app.spec.source is not None:
            app.spec.source = desired_sources[0].model_copy(deep=True)

        operation = Operation(
            initiated_by=OperationInitiator(username=self.initiator, automated=True),
            info=[
                Info(name="Reason", value=SYNC_REASON),
                Info(name=PROMOTION_INFO_KEY, value=step_ctx.promotion),
            ],
            sync=SyncOperation(revisions=[]),
        )
        if app.spec.sync_policy is not None:
            if app.spec.sync_policy.retry is not None:
                operation.retry = app.spec.sync_policy.retry
            if app.spec.sync_policy.sync_options:
                operation.sync.sync_options = list(app.spec.sync_policy.sync_options)
        app.operation = operation
        # A stale operation state can hide the new operation from observers
        app.status.operation_state = None

        src = app.to_object()

        def modify(dst: Dict[str, Any]) -> None:
            dst.setdefault("metadata", {})["annotations"] = src["metadata"].get("annotations", {})
            dst["spec"] = recursive_merge(src.get("spec", {}), dst.get("spec"))
            dst["operation"] = src["operation"]
            # An app never reconciled by Argo CD has no status to fix up
            if isinstance(dst.get("status"), dict):
                dst["status"].pop("operationState", None)

        try:
            await patch_unstructured(client, "Application", app.namespace, app.name, modify)
        except TechnicalError as e:
            raise TechnicalError(f'error patching Argo CD Application "{app.name}": {e}') from e
        logger.debug(f"Patched {_app_ref(app)}")

        await self._emit_event(
            client,
            app,
            self.initiator,
            EVENT_REASON_OPERATION_STARTED,
            format_sync_message(app),
        )

    async def _emit_event(
        self,
        client: ClusterClient,
        app: Application,
        user: str,
        reason: str,
        message: str,
    ) -> None:
        """Record an event like the one Argo CD's API server emits on sync.

        Failures are logged and otherwise ignored.
        """
        user = user or "Unknown user"
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        event = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{app.name}.{time.time_ns():x}",
                "namespace": app.namespace,
                "annotations": {"user": user},
            },
            "source": {"component": user},
            "involvedObject": {
                "apiVersion": APPLICATION_API_VERSION,
                "kind": app.kind,
                "namespace": app.namespace,
                "name": app.name,
                "uid": app.metadata.uid,
                "resourceVersion": app.metadata.resource_version,
            },
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
            "message": f"{user} {message}",
            "type": "Normal",
            "reason": reason,
        }
        try:
            await client.create("Event", app.namespace, event)
        except TechnicalError as e:
            logger.error(f"Unable to create event for {_app_ref(app)} ({reason}): {e}")
