"""
Promotion engine - runs the steps of a promotion as a resumable state machine.

Each call to ``promote`` is one reconciliation pass. A pass starts at
``PromotionContext.start_from_step`` and either runs every remaining step to
success, stops at a step that is still running (to be resumed from that same
step on the next pass), or stops for good with an error.
"""
import asyncio
import logging
import re
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from promoter.core.errors import ConfigurationError, TechnicalError, TerminalError
from promoter.schemas.health import HealthCheckStep
from promoter.schemas.promotion import (
    PromotionContext,
    PromotionPhase,
    PromotionResult,
    Step,
    StepExecutionMetadata,
    StepResult,
    format_duration,
)
from promoter.services.config_validation import validate_config
from promoter.services.kube_client import ClusterClient, CredentialsDatabase
from promoter.services.outcome import Fail, Outcome, Proceed, Wait
from promoter.services.secrets_service import load_project_secrets
from promoter.services.shared_state import copy_state, copy_value
from promoter.services.step_registry import (
    StepContext,
    StepRunner,
    StepRunnerPermissions,
    StepRunnerRegistry,
)

logger = logging.getLogger(__name__)

# Aliases of this form are generated for steps without one
RESERVED_STEP_ALIAS = re.compile(r"^(step|task)-\d+$")

DEFAULT_ERROR_THRESHOLD = 1

_VALID_STEP_STATUSES = (
    PromotionPhase.SUCCEEDED,
    PromotionPhase.FAILED,
    PromotionPhase.ERRORED,
    PromotionPhase.RUNNING,
)


def resolve_step_alias(alias: str, index: int) -> str:
    """Return the alias a step runs under.

    Raises:
        ConfigurationError: If a user-supplied alias uses the reserved form
    """
    alias = (alias or "").strip()
    if not alias:
        return f"step-{index}"
    if RESERVED_STEP_ALIAS.match(alias):
        raise ConfigurationError(f'step alias "{alias}" is forbidden')
    return alias


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_since(started_at: datetime) -> timedelta:
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return _now() - started_at


class PromotionEngine:
    """Executes promotion steps with retry, timeout and error threshold policy."""

    def __init__(
        self,
        registry: StepRunnerRegistry,
        kargo_client: Optional[ClusterClient] = None,
        argocd_client: Optional[ClusterClient] = None,
        credentials_db: Optional[CredentialsDatabase] = None,
    ):
        self.registry = registry
        self.kargo_client = kargo_client
        self.argocd_client = argocd_client
        self.credentials_db = credentials_db

    async def promote(
        self,
        promo_ctx: PromotionContext,
        steps: List[Step],
        cancel: Optional[asyncio.Event] = None,
    ) -> PromotionResult:
        """Run one reconciliation pass over the steps of a promotion.

        Args:
            promo_ctx: Promotion identity plus the state carried over from
                the previous pass
            steps: Ordered steps of the promotion
            cancel: Set to stop the pass at the next step boundary

        Returns:
            PromotionResult describing where the pass stopped and why
        """
        work_dir = promo_ctx.work_dir
        created_work_dir = False
        if not work_dir:
            work_dir = tempfile.mkdtemp(prefix="run-")
            created_work_dir = True
        try:
            try:
                secrets = await load_project_secrets(self.kargo_client, promo_ctx.project)
            except TechnicalError as e:
                logger.error(f"Promotion {promo_ctx.promotion} could not load secrets: {e}")
                return PromotionResult(
                    status=PromotionPhase.ERRORED,
                    message=str(e),
                    current_step=promo_ctx.start_from_step,
                    step_execution_metadata=promo_ctx.step_execution_metadata,
                    state=copy_state(promo_ctx.state),
                )
            return await self._execute_steps(promo_ctx, steps, work_dir, secrets, cancel)
        finally:
            if created_work_dir:
                shutil.rmtree(work_dir, ignore_errors=True)

    async def _execute_steps(
        self,
        promo_ctx: PromotionContext,
        steps: List[Step],
        work_dir: str,
        secrets: Dict[str, Dict[str, str]],
        cancel: Optional[asyncio.Event],
    ) -> PromotionResult:
        state = copy_state(promo_ctx.state)
        metas = [m.model_copy(deep=True) for m in promo_ctx.step_execution_metadata]
        health_checks: List[HealthCheckStep] = []

        def result(
            status: PromotionPhase,
            index: int,
            message: str = "",
            retry_after: Optional[timedelta] = None,
        ) -> PromotionResult:
            return PromotionResult(
                status=status,
                message=message,
                current_step=index,
                step_execution_metadata=metas,
                state=state,
                health_check_steps=health_checks,
                retry_after=retry_after,
            )

        for i in range(promo_ctx.start_from_step, len(steps)):
            if cancel is not None and cancel.is_set():
                logger.info(f"Promotion {promo_ctx.promotion} cancelled before step {i}")
                return result(PromotionPhase.ERRORED, i, "promotion was cancelled")

            step = steps[i]
            try:
                alias = resolve_step_alias(step.alias, i)
            except ConfigurationError as e:
                return result(
                    PromotionPhase.ERRORED, i, f"error getting step alias for step {i}: {e}"
                )

            registration = self.registry.get_promotion_step_runner(step.kind)
            if registration is None:
                return result(
                    PromotionPhase.ERRORED,
                    i,
                    f"error getting runner for step {i}: no promotion step runner "
                    f'registered for step kind "{step.kind}"',
                )
            runner: StepRunner = registration.runner

            # Steps before start_from_step may have no recorded metadata
            while len(metas) < i:
                skipped = len(metas)
                metas.append(StepExecutionMetadata(
                    alias=(steps[skipped].alias or "").strip() or f"step-{skipped}"
                ))
            if len(metas) == i:
                metas.append(StepExecutionMetadata(alias=alias))
            meta = metas[i]
            if meta.started_at is None:
                meta.started_at = _now()

            if runner.config_schema is not None:
                try:
                    validate_config(step.kind, runner.config_schema, step.config)
                except ConfigurationError as e:
                    meta.status = PromotionPhase.ERRORED
                    meta.message = str(e)
                    meta.finished_at = _now()
                    return result(PromotionPhase.ERRORED, i, str(e))

            step_ctx = self._step_context(
                promo_ctx, step, alias, work_dir, state, secrets, registration.permissions
            )
            logger.info(
                f"Running step {i} ({alias}) of kind {step.kind} "
                f"for promotion {promo_ctx.promotion}"
            )
            step_result, error = await self._run_step(runner, step_ctx, step.kind)

            if isinstance(step_result, (TerminalError, ConfigurationError)):
                meta.status = PromotionPhase.ERRORED
                meta.message = str(step_result)
                meta.finished_at = _now()
                logger.error(f"Step {i} ({alias}) failed unrecoverably: {step_result}")
                return result(
                    PromotionPhase.ERRORED, i, f"an unrecoverable error occurred: {step_result}"
                )

            if (
                not isinstance(step_result, StepResult)
                or step_result.status not in _VALID_STEP_STATUSES
            ):
                meta.status = PromotionPhase.ERRORED
                meta.finished_at = _now()
                return result(
                    PromotionPhase.ERRORED, i, f"step {i} returned an invalid status"
                )

            try:
                output = copy_value(step_result.output)
            except (TypeError, ValueError) as e:
                meta.status = PromotionPhase.ERRORED
                meta.message = f"output is not JSON: {e}"
                meta.finished_at = _now()
                logger.error(f"Step {i} ({alias}) returned output that is not JSON: {e}")
                return result(
                    PromotionPhase.ERRORED, i, f"step {i} returned output that is not JSON: {e}"
                )

            meta.status = step_result.status
            meta.message = step_result.message
            state[alias] = output

            if error is not None:
                if meta.status != PromotionPhase.FAILED:
                    meta.status = PromotionPhase.ERRORED
                meta.message = error
            elif meta.status in (PromotionPhase.ERRORED, PromotionPhase.FAILED):
                verb = "errored" if meta.status == PromotionPhase.ERRORED else "failed"
                error = f"step {i} {verb}: {meta.message or 'no details provided'}"

            outcome = self._apply_policy(i, step, runner, meta, error)
            if isinstance(outcome, Proceed):
                meta.finished_at = _now()
                if step_result.health_check is not None:
                    health_checks.append(step_result.health_check)
                logger.info(f"Step {i} ({alias}) succeeded")
                continue
            if isinstance(outcome, Fail):
                meta.finished_at = _now()
                logger.error(f"Step {i} ({alias}) errored: {outcome.reason}")
                return result(PromotionPhase.ERRORED, i, outcome.reason)

            logger.info(f"Step {i} ({alias}) is still running: {outcome.reason}")
            return result(
                PromotionPhase.RUNNING, i, outcome.reason, retry_after=step_result.retry_after
            )

        return result(PromotionPhase.SUCCEEDED, max(len(steps) - 1, 0))

    async def _run_step(
        self, runner: StepRunner, step_ctx: StepContext, kind: str
    ) -> Tuple[Any, Optional[str]]:
        """Invoke a runner, turning raised errors into an Errored result."""
        try:
            return await runner.run(step_ctx), None
        except (TerminalError, ConfigurationError) as e:
            return e, None
        except Exception as e:
            logger.warning(f"Step runner {kind} raised: {e}")
            return StepResult(status=PromotionPhase.ERRORED), f'failed to run step "{kind}": {e}'

    @staticmethod
    def _apply_policy(
        index: int,
        step: Step,
        runner: StepRunner,
        meta: StepExecutionMetadata,
        error: Optional[str],
    ) -> Outcome:
        """Decide what a step's result means for the pass.

        Success proceeds to the next step. An error counts against the
        error threshold. Anything that is neither fatal nor finished waits
        for the next pass unless the step's timeout has elapsed.
        """
        if meta.status == PromotionPhase.SUCCEEDED:
            meta.error_count = 0
            return Proceed()

        if error is not None:
            meta.error_count += 1
            threshold = runner.default_error_threshold or DEFAULT_ERROR_THRESHOLD
            if step.retry is not None:
                threshold = step.retry.get_error_threshold(threshold)
            if meta.error_count >= threshold:
                return Fail(f"step {index} met error threshold of {threshold}: {meta.message}")

        timeout = runner.default_timeout
        if step.retry is not None:
            timeout = step.retry.get_timeout(timeout)
        if (
            timeout is not None
            and timeout > timedelta(0)
            and _elapsed_since(meta.started_at) > timeout
        ):
            return Fail(f"step {index} timeout of {format_duration(timeout)} has elapsed")

        if error is not None:
            meta.message = f"{meta.message}; step will be retried"
            return Wait(meta.message)

        meta.error_count = 0
        return Wait(meta.message)

    def _step_context(
        self,
        promo_ctx: PromotionContext,
        step: Step,
        alias: str,
        work_dir: str,
        state: Dict[str, Any],
        secrets: Dict[str, Dict[str, str]],
        permissions: StepRunnerPermissions,
    ) -> StepContext:
        step_ctx = StepContext(
            alias=alias,
            config=copy_value(step.config) or {},
            project=promo_ctx.project,
            stage=promo_ctx.stage,
            promotion=promo_ctx.promotion,
            work_dir=work_dir,
            shared_state=copy_state(state),
            freight_requests=copy_value(promo_ctx.freight_requests) or [],
            freight=copy_value(promo_ctx.freight) or {},
            secrets=secrets,
        )
        if permissions.allow_kargo_client:
            step_ctx.kargo_client = self.kargo_client
        if permissions.allow_argocd_client:
            step_ctx.argocd_client = self.argocd_client
        if permissions.allow_credentials_db:
            step_ctx.credentials_db = self.credentials_db
        return step_ctx
