"""
Health checks for Argo CD Applications updated by the argocd-update step.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from promoter.core.config import settings
from promoter.core.errors import TechnicalError
from promoter.schemas.argocd import Application, ApplicationStatus, HealthStatus, SyncStatus
from promoter.schemas.health import HealthResult, HealthState
from promoter.services.argocd_updater import STEP_KIND_ARGOCD_UPDATE
from promoter.services.kube_client import ClusterClient
from promoter.services.step_registry import HealthChecker, HealthStepContext

logger = logging.getLogger(__name__)

APPLICATION_STATUSES_KEY = "applicationStatuses"

HEALTH_ERROR_CONDITIONS = ("ComparisonError", "InvalidSpecError")

HEALTH_STATUS_HEALTHY = "Healthy"
HEALTH_STATUS_PROGRESSING = "Progressing"
HEALTH_STATUS_SUSPENDED = "Suspended"
STATUS_UNKNOWN = "Unknown"


class ArgoCDAppHealthCheck(BaseModel):
    name: str
    namespace: str = ""
    desired_revisions: List[str] = Field(default_factory=list, alias="desiredRevisions")

    model_config = {"populate_by_name": True}


class ArgoCDHealthConfig(BaseModel):
    apps: List[ArgoCDAppHealthCheck] = []


def _app_ref(name: str, namespace: str) -> str:
    return f'Argo CD Application "{name}" in namespace "{namespace}"'


def _unknown_status() -> ApplicationStatus:
    return ApplicationStatus(
        health=HealthStatus(status=STATUS_UNKNOWN),
        sync=SyncStatus(status=STATUS_UNKNOWN),
    )


def stage_health_for_app_sync(
    app: Application, desired_revisions: List[str]
) -> Tuple[HealthState, Optional[str]]:
    """Compare the revisions an Application is synced to with the desired ones.

    Positions with an empty desired revision are ignored.
    """
    if not any(desired_revisions):
        return HealthState.HEALTHY, None

    ref = _app_ref(app.name, app.namespace)
    op_state = app.status.operation_state
    if (
        (app.operation is not None and app.operation.sync is not None)
        or op_state is None
        or op_state.finished_at is None
    ):
        return HealthState.UNKNOWN, f"{ref} is being synced"

    sources = app.current_sources()
    if len(sources) != len(desired_revisions):
        return HealthState.UNKNOWN, (
            f"{ref} has {len(sources)} sources but {len(desired_revisions)} desired revisions"
        )

    observed = app.status.sync.revisions or [app.status.sync.revision]
    if len(observed) != len(desired_revisions):
        return HealthState.UNKNOWN, (
            f"{ref} has {len(observed)} observed revisions but "
            f"{len(desired_revisions)} desired revisions"
        )

    issues = []
    for i, (observed_revision, desired_revision) in enumerate(zip(observed, desired_revisions)):
        if desired_revision and observed_revision != desired_revision:
            issues.append(
                f"Source {i} with RepoURL {sources[i].repo_url} of Application "
                f'"{app.name}" in namespace "{app.namespace}" does not match the '
                f'desired revision "{desired_revision}".'
            )
    if issues:
        return HealthState.UNHEALTHY, (
            f'Not all sources of Application "{app.name}" in namespace "{app.namespace}" '
            f"are synced to the desired revisions. Issues: {'; '.join(issues)}"
        )
    return HealthState.HEALTHY, None


def stage_health_for_app_health(app: Application) -> Tuple[HealthState, Optional[str]]:
    """Map Argo CD's health status word onto a health state."""
    ref = _app_ref(app.name, app.namespace)
    status = app.status.health.status
    if status in (HEALTH_STATUS_PROGRESSING, ""):
        return HealthState.PROGRESSING, f"{ref} is progressing"
    if status == HEALTH_STATUS_SUSPENDED:
        # Suspended counts as progressing until the suspension is lifted
        return HealthState.PROGRESSING, f"{ref} is suspended"
    if status == HEALTH_STATUS_HEALTHY:
        return HealthState.HEALTHY, None
    return HealthState.UNHEALTHY, f'{ref} has health state "{status}"'


def error_condition_issues(app: Application) -> List[str]:
    ref = _app_ref(app.name, app.namespace)
    return [
        f'{ref} has "{condition.type}" condition: {condition.message}'
        for condition in app.status.conditions
        if condition.type in HEALTH_ERROR_CONDITIONS
    ]


def cooldown_remaining(app: Application, now: Optional[datetime] = None) -> timedelta:
    """Time left before a just-finished operation's health can be trusted."""
    op_state = app.status.operation_state
    if op_state is None:
        return timedelta(0)
    now = now or datetime.now(timezone.utc)
    finished_at = op_state.finished_at or now
    if finished_at.tzinfo is None:
        finished_at = finished_at.replace(tzinfo=timezone.utc)
    remaining = finished_at + timedelta(seconds=settings.HEALTH_COOLDOWN_SECONDS) - now
    return max(remaining, timedelta(0))


class ArgoCDHealthChecker(HealthChecker):
    """Health checker for the argocd-update step kind."""

    name = STEP_KIND_ARGOCD_UPDATE

    async def check(self, health_ctx: HealthStepContext) -> HealthResult:
        try:
            cfg = ArgoCDHealthConfig.model_validate(health_ctx.input)
        except ValidationError as e:
            return HealthResult(
                status=HealthState.UNKNOWN,
                issues=[
                    f"could not convert config into {self.name} health check config: {e}"
                ],
            )

        client = health_ctx.argocd_client
        if client is None:
            return HealthResult(
                status=HealthState.UNKNOWN,
                issues=[
                    "Argo CD integration is disabled on this controller; cannot assess "
                    "the health or sync status of Argo CD Applications"
                ],
            )

        status = HealthState.HEALTHY
        issues: List[str] = []
        app_statuses: List[Dict[str, Any]] = []
        for app_check in cfg.apps:
            namespace = app_check.namespace or settings.ARGOCD_NAMESPACE
            state, app_status, app_issues = await self.get_application_health(
                client, namespace, app_check.name, app_check.desired_revisions
            )
            status = status.merge(state)
            issues.extend(app_issues)
            app_statuses.append({
                "namespace": namespace,
                "name": app_check.name,
                **app_status.to_object(),
            })

        return HealthResult(
            status=status,
            issues=issues,
            output={APPLICATION_STATUSES_KEY: app_statuses},
        )

    async def get_application_health(
        self,
        client: ClusterClient,
        namespace: str,
        name: str,
        desired_revisions: List[str],
    ) -> Tuple[HealthState, ApplicationStatus, List[str]]:
        """Assess one Application from its conditions, sync and health status.

        Returns:
            The health state, the Application's own status to report, and
            the issues explaining a less than healthy state
        """
        app, error = await self._get_application(client, namespace, name)
        if app is None:
            return HealthState.UNKNOWN, _unknown_status(), [error]
        app_status = app.status

        condition_issues = error_condition_issues(app)
        if condition_issues:
            return HealthState.UNHEALTHY, app_status, condition_issues

        if desired_revisions:
            state, issue = stage_health_for_app_sync(app, desired_revisions)
            if issue:
                return state, app_status, [issue]

            # Argo CD may not have assessed health since the sync finished
            remaining = cooldown_remaining(app)
            if remaining > timedelta(0):
                logger.debug(
                    f"Waiting {remaining.total_seconds():.1f}s before assessing health of "
                    f"{_app_ref(name, namespace)}"
                )
                await asyncio.sleep(remaining.total_seconds())
                app, error = await self._get_application(client, namespace, name)
                if app is None:
                    return HealthState.UNKNOWN, app_status, [error]

        state, issue = stage_health_for_app_health(app)
        return state, app_status, [issue] if issue else []

    async def _get_application(
        self, client: ClusterClient, namespace: str, name: str
    ) -> Tuple[Optional[Application], Optional[str]]:
        try:
            obj = await client.get("Application", namespace, name)
        except TechnicalError as e:
            return None, f"error finding {_app_ref(name, namespace)}: {e}"
        if obj is None:
            return None, f"unable to find {_app_ref(name, namespace)}"
        return Application.model_validate(obj), None
