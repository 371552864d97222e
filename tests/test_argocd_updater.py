"""
Tests for the argocd-update step runner and its reconciliation helpers.
"""
import pytest
from datetime import timedelta

from promoter.core.errors import ConfigurationError, PermissionDeniedError, TechnicalError
from promoter.schemas.argocd import (
    Application,
    ApplicationSource,
    ArgoCDAppSourceUpdate,
    ArgoCDAppUpdate,
    HelmImageUpdates,
    KustomizeImageUpdates,
    OperationPhase,
)
from promoter.schemas.freight import FreightCollection, FreightOrigin, FreightRequest
from promoter.schemas.promotion import PromotionPhase
from promoter.services.argocd_updater import (
    CONFIG_SCHEMA,
    PROMOTION_INFO_KEY,
    ArgoCDUpdater,
    authorize_app_update,
    build_desired_sources,
    build_helm_parameter_changes,
    build_kustomize_images,
    determine_desired_revisions,
    format_sync_message,
    must_perform_update,
    operation_phases_to_step_status,
    source_update_matches,
)
from promoter.services.config_validation import config_problems
from promoter.services.freight import ImageFinder
from promoter.services.step_registry import StepContext

MOCK_PROJECT = "demo"
MOCK_STAGE = "test"
MOCK_PROMOTION = "test.01j2kz8r5v.abc1234"


GUESTBOOK_REPO = "https://github.com/example/guestbook"
STOREFRONT_IMAGE = "ghcr.io/example/storefront"
STOREFRONT_DIGEST = "sha256:9b2f6c3e1a4d7b0c8e5f2a9d6c3b0e7f4a1d8c5b2e9f6a3d0c7b4e1f8a5d2c9b"
REDIS_IMAGE = "docker.io/library/redis"
REDIS_DIGEST = "sha256:4e8d2b6f0a3c7e1b5d9f2a6c0e4b8d1f5a9c3e7b0d4f8a2c6e1b5d9f3a7c0e4b"


def _step_ctx(config, client, shared_state=None, freight=None, freight_requests=None) -> StepContext:
    return StepContext(
        alias="step-0",
        config=config,
        project=MOCK_PROJECT,
        stage=MOCK_STAGE,
        promotion=MOCK_PROMOTION,
        work_dir="/tmp",
        shared_state=shared_state or {},
        freight=freight or {},
        freight_requests=freight_requests or [],
        kargo_client=client,
        argocd_client=client,
    )


def _image_finder(kargo_factory, cluster=None, requests=()) -> ImageFinder:
    return ImageFinder(
        freight=FreightCollection.model_validate(kargo_factory.freight_collection()).references(),
        freight_requests=[
            FreightRequest.model_validate(req) for req in kargo_factory.freight_requests(*requests)
        ],
        project=MOCK_PROJECT,
        kargo_client=cluster,
    )


def _guestbook_update(**source) -> dict:
    return {
        "name": "guestbook",
        "sources": [{"repoURL": GUESTBOOK_REPO, **source}],
    }


class TestConfigSchema:
    """Tests for the argocd-update config schema."""

    @pytest.mark.unit
    def test_valid_config(self):
        config = {"apps": [_guestbook_update(desiredRevision="v1", updateTargetRevision=True)]}
        assert config_problems(CONFIG_SCHEMA, config) == []

    @pytest.mark.unit
    def test_apps_must_not_be_empty(self):
        problems = config_problems(CONFIG_SCHEMA, {"apps": []})
        assert len(problems) == 1
        assert problems[0].startswith("apps:")

    @pytest.mark.unit
    def test_name_and_selector_are_exclusive(self):
        config = {"apps": [{"name": "guestbook", "selector": {"matchLabels": {"a": "b"}}}]}
        assert config_problems(CONFIG_SCHEMA, config)

    @pytest.mark.unit
    def test_update_target_revision_needs_a_revision(self):
        config = {"apps": [_guestbook_update(updateTargetRevision=True)]}
        assert config_problems(CONFIG_SCHEMA, config)

    @pytest.mark.unit
    def test_image_updates_from_freight(self):
        config = {"apps": [_guestbook_update(
            kustomize={"images": [{"repoURL": "nginx", "useDigest": True}]},
            helm={"images": [{
                "key": "image.tag",
                "repoURL": "nginx",
                "value": "Tag",
                "fromOrigin": {"kind": "Warehouse", "name": "nginx"},
            }]},
        )]}
        assert config_problems(CONFIG_SCHEMA, config) == []

    @pytest.mark.unit
    def test_kustomize_image_rejects_literal_tag(self):
        config = {"apps": [_guestbook_update(kustomize={"images": [{"repoURL": "nginx", "tag": "1.25"}]})]}
        assert config_problems(CONFIG_SCHEMA, config)

    @pytest.mark.unit
    def test_helm_image_value_must_be_known(self):
        config = {"apps": [_guestbook_update(
            helm={"images": [{"key": "image.tag", "repoURL": "nginx", "value": "1.25"}]},
        )]}
        assert config_problems(CONFIG_SCHEMA, config)

    @pytest.mark.unit
    def test_unknown_field_is_rejected(self):
        config = {"apps": [{"name": "guestbook", "bogus": True}]}
        assert config_problems(CONFIG_SCHEMA, config)


class TestSourceMatching:
    """Tests for matching source updates to Application sources."""

    @pytest.mark.unit
    def test_git_urls_are_normalized(self):
        update = ArgoCDAppSourceUpdate(repoURL="https://GitHub.com/example/guestbook/")
        source = ApplicationSource(repoURL="https://github.com/example/guestbook.git")
        assert source_update_matches(update, source)

    @pytest.mark.unit
    def test_chart_sources_match_exactly(self):
        update = ArgoCDAppSourceUpdate(repoURL="https://charts.example.com", chart="redis")
        assert source_update_matches(
            update, ApplicationSource(repoURL="https://charts.example.com", chart="redis")
        )
        assert not source_update_matches(
            update, ApplicationSource(repoURL="https://charts.example.com/", chart="redis")
        )
        assert not source_update_matches(
            update, ApplicationSource(repoURL="https://charts.example.com", chart="nginx")
        )

    @pytest.mark.unit
    def test_chart_update_does_not_match_git_source(self):
        update = ArgoCDAppSourceUpdate(repoURL=GUESTBOOK_REPO, chart="guestbook")
        assert not source_update_matches(update, ApplicationSource(repoURL=GUESTBOOK_REPO))


class TestDetermineDesiredRevisions:
    """Tests for desired revision resolution."""

    @pytest.mark.unit
    def test_explicit_revision(self, argocd_factory):
        app = Application.model_validate(argocd_factory.application())
        update = ArgoCDAppUpdate.model_validate(_guestbook_update(desiredRevision="v1.2.3"))

        assert determine_desired_revisions(update, app, {}) == ["v1.2.3"]

    @pytest.mark.unit
    def test_revision_from_step_output(self, argocd_factory):
        app = Application.model_validate(argocd_factory.application())
        update = ArgoCDAppUpdate.model_validate(_guestbook_update(desiredCommitFromStep="commit"))
        state = {"commit": {"commit": "c0ffee"}}

        assert determine_desired_revisions(update, app, state) == ["c0ffee"]

    @pytest.mark.unit
    def test_missing_step_output_is_a_configuration_error(self, argocd_factory):
        app = Application.model_validate(argocd_factory.application())
        update = ArgoCDAppUpdate.model_validate(_guestbook_update(desiredCommitFromStep="commit"))

        with pytest.raises(ConfigurationError, match='no commit found in output of step "commit"'):
            determine_desired_revisions(update, app, {})

    @pytest.mark.unit
    def test_no_opinion_without_updates(self, argocd_factory):
        app = Application.model_validate(argocd_factory.multi_source_application())
        update = ArgoCDAppUpdate(name="storefront")

        assert determine_desired_revisions(update, app, {}) == ["", ""]

    @pytest.mark.unit
    def test_positions_follow_application_sources(self, argocd_factory):
        app = Application.model_validate(argocd_factory.multi_source_application())
        update = ArgoCDAppUpdate.model_validate({
            "name": "storefront",
            "sources": [{"repoURL": "https://charts.example.com", "chart": "redis", "desiredRevision": "18.0.0"}],
        })

        assert determine_desired_revisions(update, app, {}) == ["", "18.0.0"]

    @pytest.mark.unit
    def test_idempotent(self, argocd_factory):
        app = Application.model_validate(argocd_factory.multi_source_application())
        update = ArgoCDAppUpdate.model_validate({
            "name": "storefront",
            "sources": [{"repoURL": "https://github.com/example/storefront", "desiredCommitFromStep": "clone"}],
        })
        state = {"clone": {"commit": "abc123"}}

        first = determine_desired_revisions(update, app, state)
        second = determine_desired_revisions(update, app, state)

        assert first == second == ["abc123", ""]


class TestMustPerformUpdate:
    """Tests for deciding whether an Application must be synced."""

    def _app(self, argocd_factory, operation_state=None, multi_source=False) -> Application:
        obj = argocd_factory.multi_source_application() if multi_source else argocd_factory.application()
        if operation_state is not None:
            obj["status"]["operationState"] = operation_state
        return Application.model_validate(obj)

    @pytest.mark.unit
    def test_no_operation(self, argocd_factory):
        app = self._app(argocd_factory)

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION) == ("", True, None)

    @pytest.mark.unit
    def test_foreign_operation_running(self, argocd_factory):
        app = self._app(argocd_factory, argocd_factory.operation_state("Running", username="admin"))

        phase, must_update, diagnostic = must_perform_update(app, ["v1"], MOCK_PROMOTION)

        assert phase == OperationPhase.RUNNING
        assert must_update is False
        assert "waiting for operation to complete" in diagnostic
        assert '"admin"' in diagnostic

    @pytest.mark.unit
    def test_foreign_operation_completed(self, argocd_factory):
        app = self._app(
            argocd_factory,
            argocd_factory.operation_state("Succeeded", username="admin", revisions=["v1"]),
        )

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION) == ("", True, None)

    @pytest.mark.unit
    def test_other_promotion_running(self, argocd_factory):
        app = self._app(argocd_factory, argocd_factory.operation_state("Running", promotion="other"))

        phase, must_update, diagnostic = must_perform_update(app, ["v1"], MOCK_PROMOTION)

        assert phase == OperationPhase.RUNNING
        assert must_update is False
        assert f"not initiated for Promotion {MOCK_PROMOTION}" in diagnostic

    @pytest.mark.unit
    def test_other_promotion_completed(self, argocd_factory):
        app = self._app(
            argocd_factory,
            argocd_factory.operation_state("Succeeded", promotion="other", revisions=["v1"]),
        )

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION) == ("", True, None)

    @pytest.mark.unit
    def test_own_operation_running(self, argocd_factory):
        app = self._app(argocd_factory, argocd_factory.operation_state("Running", promotion=MOCK_PROMOTION))

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION) == (OperationPhase.RUNNING, False, None)

    @pytest.mark.unit
    def test_own_operation_without_sync_result(self, argocd_factory):
        app = self._app(argocd_factory, argocd_factory.operation_state("Succeeded", promotion=MOCK_PROMOTION))

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION) == (
            "", True, "operation completed without a sync result"
        )

    @pytest.mark.unit
    def test_own_operation_synced_to_desired_revision(self, argocd_factory):
        app = self._app(
            argocd_factory,
            argocd_factory.operation_state("Succeeded", promotion=MOCK_PROMOTION, revisions=["v1"]),
        )

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION) == (OperationPhase.SUCCEEDED, False, None)

    @pytest.mark.unit
    def test_own_operation_synced_to_other_revision(self, argocd_factory):
        app = self._app(
            argocd_factory,
            argocd_factory.operation_state("Succeeded", promotion=MOCK_PROMOTION, revisions=["v0"]),
        )

        phase, must_update, diagnostic = must_perform_update(app, ["v1"], MOCK_PROMOTION)

        assert (phase, must_update) == ("", True)
        assert "do not match desired revisions" in diagnostic

    @pytest.mark.unit
    def test_empty_revisions_never_demand_update(self, argocd_factory):
        app = self._app(
            argocd_factory,
            argocd_factory.operation_state("Succeeded", promotion=MOCK_PROMOTION, revisions=["a", "b"]),
            multi_source=True,
        )

        assert must_perform_update(app, ["", ""], MOCK_PROMOTION)[1] is False
        assert must_perform_update(app, ["", "b"], MOCK_PROMOTION)[1] is False

    @pytest.mark.unit
    def test_unknown_revisions_defer(self, argocd_factory):
        app = self._app(
            argocd_factory,
            argocd_factory.operation_state("Failed", promotion=MOCK_PROMOTION, revisions=["v0"]),
        )

        assert must_perform_update(app, [], MOCK_PROMOTION) == (OperationPhase.FAILED, False, None)

    @pytest.mark.unit
    def test_synced_source_differs_from_desired(self, argocd_factory):
        app = self._app(argocd_factory, argocd_factory.operation_state(
            "Succeeded", promotion=MOCK_PROMOTION, revisions=["v1"],
            sync_source={"repoURL": GUESTBOOK_REPO + ".git", "path": "manifests", "targetRevision": "v0"},
        ))
        desired = [ApplicationSource(repo_url=GUESTBOOK_REPO + ".git", path="manifests", target_revision="v1")]

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION, desired_sources=desired) == (
            "", True, "operation result source does not match desired source"
        )

    @pytest.mark.unit
    def test_synced_source_matches_desired(self, argocd_factory):
        app = self._app(argocd_factory, argocd_factory.operation_state(
            "Succeeded", promotion=MOCK_PROMOTION, revisions=["v1"],
            sync_source={"repoURL": GUESTBOOK_REPO + ".git", "path": "manifests", "targetRevision": "v1"},
        ))
        desired = [ApplicationSource(repo_url=GUESTBOOK_REPO + ".git", path="manifests", target_revision="v1")]

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION, desired_sources=desired) == (
            OperationPhase.SUCCEEDED, False, None
        )

    @pytest.mark.unit
    def test_synced_sources_of_multi_source_app(self, argocd_factory):
        obj = argocd_factory.multi_source_application()
        state = argocd_factory.operation_state(
            "Succeeded", promotion=MOCK_PROMOTION, revisions=["abc123", "17.0.0"]
        )
        state["syncResult"]["sources"] = obj["spec"]["sources"]
        obj["status"]["operationState"] = state
        app = Application.model_validate(obj)
        desired = app.current_sources()

        assert must_perform_update(app, ["", ""], MOCK_PROMOTION, desired_sources=desired)[1] is False

        desired[0] = desired[0].model_copy(deep=True)
        desired[0].kustomize.images = ["ghcr.io/example/storefront:1.1.0"]
        phase, must_update, diagnostic = must_perform_update(
            app, ["", ""], MOCK_PROMOTION, desired_sources=desired
        )
        assert (phase, must_update) == ("", True)
        assert diagnostic == "operation result source does not match desired source"

    @pytest.mark.unit
    def test_sources_not_compared_without_source_updates(self, argocd_factory):
        app = self._app(argocd_factory, argocd_factory.operation_state(
            "Succeeded", promotion=MOCK_PROMOTION, revisions=["v1"],
            sync_source={"repoURL": GUESTBOOK_REPO + ".git", "targetRevision": "v0"},
        ))

        assert must_perform_update(app, ["v1"], MOCK_PROMOTION)[1] is False


class TestBuildDesiredSources:
    """Tests for applying source updates."""

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_no_updates_round_trips(self, argocd_factory):
        app = Application.model_validate(argocd_factory.multi_source_application())

        sources = await build_desired_sources(app, ArgoCDAppUpdate(name="storefront"), ["", ""])

        assert sources == app.current_sources()
        assert sources[0] is not app.spec.sources[0]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_applies_revision_and_image_overrides(self, argocd_factory, kargo_factory):
        app = Application.model_validate(argocd_factory.multi_source_application())
        update = ArgoCDAppUpdate.model_validate({
            "name": "storefront",
            "sources": [
                {
                    "repoURL": "https://github.com/example/storefront",
                    "fromOrigin": {"kind": "Warehouse", "name": "storefront"},
                    "kustomize": {"images": [{"repoURL": STOREFRONT_IMAGE}]},
                },
                {
                    "repoURL": "https://charts.example.com",
                    "chart": "redis",
                    "desiredRevision": "18.0.0",
                    "updateTargetRevision": True,
                    "fromOrigin": {"kind": "Warehouse", "name": "redis"},
                    "helm": {"images": [
                        {"key": "image.tag", "repoURL": REDIS_IMAGE, "value": "Tag"},
                        {"key": "image.digest", "repoURL": REDIS_IMAGE, "value": "Digest"},
                    ]},
                },
            ],
        })
        revisions = determine_desired_revisions(update, app, {})

        sources = await build_desired_sources(app, update, revisions, _image_finder(kargo_factory))

        assert sources[0].target_revision == "main"
        assert sources[0].kustomize.images == ["ghcr.io/example/storefront:1.1.0"]
        assert sources[1].target_revision == "18.0.0"
        assert [(p.name, p.value) for p in sources[1].helm.parameters] == [
            ("image.tag", "7.2.4"),
            ("image.digest", REDIS_DIGEST),
        ]
        # The Application itself is untouched
        assert app.spec.sources[1].target_revision == "17.0.0"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_images_missing_from_freight_are_not_overridden(self, argocd_factory, kargo_factory):
        app = Application.model_validate(argocd_factory.multi_source_application())
        update = ArgoCDAppUpdate.model_validate({
            "name": "storefront",
            "fromOrigin": {"kind": "Warehouse", "name": "storefront"},
            "sources": [
                {
                    "repoURL": "https://github.com/example/storefront",
                    "kustomize": {"images": [{"repoURL": "ghcr.io/example/checkout"}]},
                },
                {
                    "repoURL": "https://charts.example.com",
                    "chart": "redis",
                    "helm": {"images": [{"key": "image.tag", "repoURL": REDIS_IMAGE, "value": "Tag"}]},
                },
            ],
        })

        sources = await build_desired_sources(app, update, ["", ""], _image_finder(kargo_factory))

        assert sources == app.current_sources()

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_target_revision_only_when_requested(self, argocd_factory):
        app = Application.model_validate(argocd_factory.application())
        update = ArgoCDAppUpdate.model_validate(_guestbook_update(desiredRevision="v1"))

        sources = await build_desired_sources(app, update, ["v1"])

        assert sources[0].target_revision == "main"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unmatched_update_is_a_configuration_error(self, argocd_factory):
        app = Application.model_validate(argocd_factory.application())
        update = ArgoCDAppUpdate.model_validate({
            "name": "guestbook",
            "sources": [{"repoURL": "https://charts.example.com", "chart": "redis"}],
        })

        with pytest.raises(ConfigurationError) as exc_info:
            await build_desired_sources(app, update, [""])

        assert 'and chart "redis"' in str(exc_info.value)
        assert 'Argo CD Application "guestbook" in namespace "argocd"' in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_revision_count_must_match(self, argocd_factory):
        app = Application.model_validate(argocd_factory.multi_source_application())

        with pytest.raises(ConfigurationError, match="has 2 sources but 1 desired revisions"):
            await build_desired_sources(app, ArgoCDAppUpdate(name="storefront"), [""])


class TestImageOverrides:
    """Tests for rendering image overrides from the Freight being promoted."""

    STOREFRONT = {"kind": "Warehouse", "name": "storefront"}

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_kustomize_tag_and_digest(self, kargo_factory):
        update = KustomizeImageUpdates.model_validate({"images": [
            {"repoURL": STOREFRONT_IMAGE, "fromOrigin": self.STOREFRONT},
            {
                "repoURL": STOREFRONT_IMAGE,
                "newName": "registry.local/storefront",
                "useDigest": True,
                "fromOrigin": self.STOREFRONT,
            },
        ]})

        images = await build_kustomize_images(update, _image_finder(kargo_factory))

        assert images == [
            "ghcr.io/example/storefront:1.1.0",
            f"ghcr.io/example/storefront=registry.local/storefront@{STOREFRONT_DIGEST}",
        ]

    @pytest.mark.asyncio
    @pytest.mark.unit
    @pytest.mark.parametrize("value, expected", [
        ("ImageAndTag", "docker.io/library/redis:7.2.4"),
        ("Tag", "7.2.4"),
        ("ImageAndDigest", f"docker.io/library/redis@{REDIS_DIGEST}"),
        ("Digest", REDIS_DIGEST),
    ])
    async def test_helm_values(self, kargo_factory, value, expected):
        update = HelmImageUpdates.model_validate({"images": [
            {"key": "image", "repoURL": REDIS_IMAGE, "value": value},
        ]})
        origin = FreightOrigin(kind="Warehouse", name="redis")

        changes = await build_helm_parameter_changes(update, _image_finder(kargo_factory), origin)

        assert changes == {"image": expected}

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_image_origin_takes_precedence(self, kargo_factory):
        update = KustomizeImageUpdates.model_validate({"images": [
            {"repoURL": STOREFRONT_IMAGE, "fromOrigin": self.STOREFRONT},
        ]})
        origin = FreightOrigin(kind="Warehouse", name="redis")

        images = await build_kustomize_images(update, _image_finder(kargo_factory), origin)

        assert images == ["ghcr.io/example/storefront:1.1.0"]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_origin_inferred_from_requested_warehouses(self, fake_cluster, kargo_factory):
        fake_cluster.add(kargo_factory.warehouse("storefront"))
        fake_cluster.add(kargo_factory.warehouse("redis", [REDIS_IMAGE]))
        update = KustomizeImageUpdates.model_validate({"images": [
            {"repoURL": STOREFRONT_IMAGE, "useDigest": True},
        ]})
        finder = _image_finder(kargo_factory, fake_cluster, ("redis", "storefront"))

        images = await build_kustomize_images(update, finder)

        assert images == [f"ghcr.io/example/storefront@{STOREFRONT_DIGEST}"]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_no_warehouse_provides_image(self, fake_cluster, kargo_factory):
        fake_cluster.add(kargo_factory.warehouse("redis", [REDIS_IMAGE]))
        update = KustomizeImageUpdates.model_validate({"images": [{"repoURL": STOREFRONT_IMAGE}]})

        images = await build_kustomize_images(
            update, _image_finder(kargo_factory, fake_cluster, ("redis",))
        )

        assert images == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_ambiguous_origin(self, fake_cluster, kargo_factory):
        fake_cluster.add(kargo_factory.warehouse("storefront"))
        fake_cluster.add(kargo_factory.warehouse("storefront-canary"))
        update = KustomizeImageUpdates.model_validate({"images": [{"repoURL": STOREFRONT_IMAGE}]})
        finder = _image_finder(kargo_factory, fake_cluster, ("storefront", "storefront-canary"))

        with pytest.raises(ConfigurationError, match="please provide an origin manually"):
            await build_kustomize_images(update, finder)

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_missing_warehouse(self, fake_cluster, kargo_factory):
        update = KustomizeImageUpdates.model_validate({"images": [{"repoURL": STOREFRONT_IMAGE}]})

        with pytest.raises(TechnicalError, match='Warehouse "storefront" not found in namespace "demo"'):
            await build_kustomize_images(
                update, _image_finder(kargo_factory, fake_cluster, ("storefront",))
            )


class TestHelpers:
    """Tests for phase aggregation, messages and authorization."""

    @pytest.mark.unit
    def test_worst_phase_wins(self):
        assert operation_phases_to_step_status(["Succeeded", "Running"]) == PromotionPhase.RUNNING
        assert operation_phases_to_step_status(["Running", "Error"]) == PromotionPhase.ERRORED
        assert operation_phases_to_step_status([OperationPhase.SUCCEEDED]) == PromotionPhase.SUCCEEDED
        assert operation_phases_to_step_status(["Terminating"]) == PromotionPhase.RUNNING

    @pytest.mark.unit
    def test_no_phases(self):
        assert operation_phases_to_step_status([]) is None

    @pytest.mark.unit
    def test_format_sync_message(self, argocd_factory):
        single = Application.model_validate(argocd_factory.application())
        multi = Application.model_validate(argocd_factory.multi_source_application())

        assert format_sync_message(single) == "initiated sync to main"
        assert format_sync_message(multi) == "initiated sync to 2 sources"

    @pytest.mark.unit
    def test_authorized_stage(self, argocd_factory):
        app = Application.model_validate(argocd_factory.application())
        authorize_app_update(app, MOCK_PROJECT, MOCK_STAGE)

    @pytest.mark.unit
    @pytest.mark.parametrize("annotation, match", [
        (None, "does not permit mutation"),
        ("demo-test", "unable to parse value of annotation"),
        ("demo:*", "deprecated glob expression"),
        ("demo:prod", "does not permit mutation"),
    ])
    def test_unauthorized_stage(self, argocd_factory, annotation, match):
        obj = argocd_factory.application()
        if annotation is None:
            obj["metadata"]["annotations"] = {}
        else:
            obj["metadata"]["annotations"]["kargo.akuity.io/authorized-stage"] = annotation
        app = Application.model_validate(obj)

        with pytest.raises(PermissionDeniedError, match=match):
            authorize_app_update(app, MOCK_PROJECT, MOCK_STAGE)


class TestArgoCDUpdaterRun:
    """Tests for full runs of the step against an in-memory cluster."""

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_starts_sync(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        config = {"apps": [_guestbook_update(desiredRevision="def456", updateTargetRevision=True)]}

        result = await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert result.status == PromotionPhase.RUNNING
        assert result.retry_after == timedelta(seconds=30)
        assert result.health_check.kind == "argocd-update"
        assert result.health_check.input == {"apps": [
            {"name": "guestbook", "namespace": "argocd", "desiredRevisions": ["def456"]}
        ]}

        app = fake_cluster.stored("Application", "argocd", "guestbook")
        assert app["metadata"]["annotations"]["argocd.argoproj.io/refresh"] == "hard"
        assert app["spec"]["source"]["targetRevision"] == "def456"
        assert app["spec"]["source"]["path"] == "manifests"
        operation = app["operation"]
        assert operation["initiatedBy"] == {"username": "kargo-controller", "automated": True}
        assert {"name": PROMOTION_INFO_KEY, "value": MOCK_PROMOTION} in operation["info"]
        assert operation["sync"]["syncOptions"] == ["CreateNamespace=true"]
        assert operation["retry"] == {"limit": 3}

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_emits_event(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        config = {"apps": [_guestbook_update(desiredRevision="def456", updateTargetRevision=True)]}

        await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert len(fake_cluster.created) == 1
        kind, namespace, event = fake_cluster.created[0]
        assert (kind, namespace) == ("Event", "argocd")
        assert event["reason"] == "OperationStarted"
        assert event["message"] == "kargo-controller initiated sync to def456"
        assert event["involvedObject"]["name"] == "guestbook"
        assert event["involvedObject"]["uid"] == "5f1c3c2a-7d4e-4a4b-9a59-3c1b7f6f0a11"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_event_failure_is_not_fatal(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        fake_cluster.fail_create = True
        config = {"apps": [{"name": "guestbook"}]}

        result = await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert result.status == PromotionPhase.RUNNING
        assert len(fake_cluster.patches) == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_clears_stale_operation_state(self, fake_cluster, argocd_factory):
        app = argocd_factory.application()
        app["status"]["operationState"] = argocd_factory.operation_state(
            "Succeeded", promotion="older", revisions=["abc123"]
        )
        fake_cluster.add(app)

        await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, fake_cluster))

        stored = fake_cluster.stored("Application", "argocd", "guestbook")
        assert "operationState" not in stored["status"]
        assert stored["status"]["health"] == {"status": "Healthy"}

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_waits_for_own_operation(self, fake_cluster, argocd_factory):
        app = argocd_factory.application()
        app["status"]["operationState"] = argocd_factory.operation_state("Running", promotion=MOCK_PROMOTION)
        fake_cluster.add(app)

        result = await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, fake_cluster))

        assert result.status == PromotionPhase.RUNNING
        assert fake_cluster.patches == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_succeeds_once_synced(self, fake_cluster, argocd_factory):
        app = argocd_factory.application()
        app["status"]["operationState"] = argocd_factory.operation_state(
            "Succeeded", promotion=MOCK_PROMOTION, revisions=["def456"],
            sync_source={"repoURL": GUESTBOOK_REPO + ".git", "path": "manifests", "targetRevision": "def456"},
        )
        fake_cluster.add(app)
        config = {"apps": [_guestbook_update(desiredRevision="def456", updateTargetRevision=True)]}

        result = await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert result.status == PromotionPhase.SUCCEEDED
        assert result.retry_after is None
        assert fake_cluster.patches == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_resyncs_on_revision_mismatch(self, fake_cluster, argocd_factory):
        app = argocd_factory.application()
        app["status"]["operationState"] = argocd_factory.operation_state(
            "Succeeded", promotion=MOCK_PROMOTION, revisions=["abc123"]
        )
        fake_cluster.add(app)
        config = {"apps": [_guestbook_update(desiredRevision="def456", updateTargetRevision=True)]}

        result = await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert result.status == PromotionPhase.RUNNING
        assert len(fake_cluster.patches) == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_failed_sync_fails_step(self, fake_cluster, argocd_factory):
        app = argocd_factory.application()
        app["status"]["operationState"] = argocd_factory.operation_state(
            "Failed", promotion=MOCK_PROMOTION, revisions=["def456"],
            message="one or more objects failed to apply",
            sync_source={"repoURL": GUESTBOOK_REPO + ".git", "path": "manifests", "targetRevision": "def456"},
        )
        fake_cluster.add(app)
        config = {"apps": [_guestbook_update(desiredRevision="def456", updateTargetRevision=True)]}

        result = await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert result.status == PromotionPhase.FAILED
        assert result.message == (
            'Argo CD Application "guestbook" in namespace "argocd" failed with: '
            "one or more objects failed to apply"
        )

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_waits_for_foreign_operation(self, fake_cluster, argocd_factory):
        app = argocd_factory.application()
        app["status"]["operationState"] = argocd_factory.operation_state("Running", username="admin")
        fake_cluster.add(app)

        result = await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, fake_cluster))

        assert result.status == PromotionPhase.RUNNING
        assert "waiting for operation to complete" in result.message
        assert fake_cluster.patches == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_sync_window_blocks_update(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        fake_cluster.add(argocd_factory.app_project([argocd_factory.sync_window(kind="deny")]))

        result = await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, fake_cluster))

        assert result.status == PromotionPhase.RUNNING
        assert "blocked by a sync window" in result.message
        assert fake_cluster.patches == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_sync_window_permitting_manual_sync(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        fake_cluster.add(argocd_factory.app_project(
            [argocd_factory.sync_window(kind="deny", manual_sync=True)]
        ))

        await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, fake_cluster))

        assert len(fake_cluster.patches) == 1

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_revision_from_earlier_step(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        config = {"apps": [_guestbook_update(desiredCommitFromStep="commit", updateTargetRevision=True)]}

        await ArgoCDUpdater().run(
            _step_ctx(config, fake_cluster, shared_state={"commit": {"commit": "c0ffee"}})
        )

        app = fake_cluster.stored("Application", "argocd", "guestbook")
        assert app["spec"]["source"]["targetRevision"] == "c0ffee"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_image_overrides_from_freight(self, fake_cluster, argocd_factory, kargo_factory):
        fake_cluster.add(argocd_factory.multi_source_application())
        fake_cluster.add(kargo_factory.warehouse("storefront"))
        config = {"apps": [{
            "name": "storefront",
            "sources": [{
                "repoURL": "https://github.com/example/storefront",
                "kustomize": {"images": [{"repoURL": STOREFRONT_IMAGE, "useDigest": True}]},
            }],
        }]}
        step_ctx = _step_ctx(
            config,
            fake_cluster,
            freight=kargo_factory.freight_collection(),
            freight_requests=kargo_factory.freight_requests("storefront"),
        )

        result = await ArgoCDUpdater().run(step_ctx)

        assert result.status == PromotionPhase.RUNNING
        app = fake_cluster.stored("Application", "argocd", "storefront")
        assert app["spec"]["sources"][0]["kustomize"]["images"] == [
            f"ghcr.io/example/storefront@{STOREFRONT_DIGEST}"
        ]
        assert app["spec"]["sources"][1]["helm"]["parameters"] == [{"name": "image.tag", "value": "7.0"}]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_resyncs_when_synced_sources_differ(self, fake_cluster, argocd_factory, kargo_factory):
        app = argocd_factory.multi_source_application()
        state = argocd_factory.operation_state(
            "Succeeded", promotion=MOCK_PROMOTION, revisions=["abc123", "17.0.0"]
        )
        # Synced before the new image was applied
        state["syncResult"]["sources"] = app["spec"]["sources"]
        app["status"]["operationState"] = state
        fake_cluster.add(app)
        config = {"apps": [{
            "name": "storefront",
            "sources": [{
                "repoURL": "https://github.com/example/storefront",
                "fromOrigin": {"kind": "Warehouse", "name": "storefront"},
                "kustomize": {"images": [{"repoURL": STOREFRONT_IMAGE}]},
            }],
        }]}

        result = await ArgoCDUpdater().run(
            _step_ctx(config, fake_cluster, freight=kargo_factory.freight_collection())
        )

        assert result.status == PromotionPhase.RUNNING
        assert len(fake_cluster.patches) == 1
        stored = fake_cluster.stored("Application", "argocd", "storefront")
        assert stored["spec"]["sources"][0]["kustomize"]["images"] == ["ghcr.io/example/storefront:1.1.0"]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_missing_application(self, fake_cluster):
        with pytest.raises(TechnicalError, match='unable to find Argo CD Application "guestbook"'):
            await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, fake_cluster))

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unauthorized_application(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application({"metadata": {"annotations": None}}))

        with pytest.raises(PermissionDeniedError, match="is not authorized"):
            await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, fake_cluster))

        assert fake_cluster.patches == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_selector_skips_unauthorized_applications(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        fake_cluster.add(argocd_factory.application({
            "metadata": {"name": "guestbook-prod", "annotations": {
                "kargo.akuity.io/authorized-stage": "demo:prod"
            }},
        }))
        config = {"apps": [{"selector": {"matchLabels": {"app.kubernetes.io/part-of": "guestbook"}}}]}

        result = await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert result.status == PromotionPhase.RUNNING
        assert [name for _, _, name, _ in fake_cluster.patches] == ["guestbook"]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_selector_without_matches(self, fake_cluster):
        config = {"apps": [{"selector": {"matchLabels": {"app": "missing"}}}]}

        with pytest.raises(TechnicalError, match="no Argo CD Applications found matching selector"):
            await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_selector_with_incompatible_sources(self, fake_cluster, argocd_factory):
        fake_cluster.add(argocd_factory.application())
        fake_cluster.add(argocd_factory.application({
            "metadata": {"name": "guestbook-fork"},
            "spec": {"source": {"repoURL": "https://github.com/fork/guestbook.git"}},
        }))
        config = {"apps": [{
            "selector": {"matchLabels": {"app.kubernetes.io/part-of": "guestbook"}},
            "sources": [{"repoURL": GUESTBOOK_REPO, "desiredRevision": "v1", "updateTargetRevision": True}],
        }]}

        with pytest.raises(ConfigurationError) as exc_info:
            await ArgoCDUpdater().run(_step_ctx(config, fake_cluster))

        assert "1 incompatible. No Applications were updated" in str(exc_info.value)
        assert 'Application "guestbook-fork"' in str(exc_info.value)
        assert fake_cluster.patches == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_argocd_integration_disabled(self):
        result = await ArgoCDUpdater().run(_step_ctx({"apps": [{"name": "guestbook"}]}, None))

        assert result.status == PromotionPhase.ERRORED
        assert "Argo CD integration is disabled" in result.message
