"""
Health check engine - runs post-promotion health checks and merges verdicts.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from promoter.schemas.health import (
    Health,
    HealthCheckContext,
    HealthCheckStep,
    HealthResult,
    HealthState,
)
from promoter.services.kube_client import ClusterClient, CredentialsDatabase
from promoter.services.shared_state import copy_value
from promoter.services.step_registry import HealthStepContext, StepRunnerRegistry

logger = logging.getLogger(__name__)


class HealthEngine:
    """Runs health check steps in order and merges their results."""

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

    async def check(
        self,
        health_ctx: HealthCheckContext,
        steps: List[HealthCheckStep],
        cancel: Optional[asyncio.Event] = None,
    ) -> Health:
        """Run every health check step and return the merged verdict.

        The merged status is the worst status of all steps. Issues of all
        steps are concatenated, and outputs are collected in step order.
        """
        status = HealthState.HEALTHY
        issues: List[str] = []
        outputs: List[Dict[str, Any]] = []

        for step in steps:
            if cancel is not None and cancel.is_set():
                logger.info(f"Health check for stage {health_ctx.stage} cancelled")
                return Health(
                    status=status.merge(HealthState.UNKNOWN),
                    issues=issues + ["health check was cancelled"],
                )

            step_result = await self._execute_health_check(health_ctx, step)
            status = status.merge(step_result.status)
            issues.extend(issue for issue in step_result.issues if issue)
            if step_result.output:
                outputs.append(step_result.output)

        return Health(status=status, issues=issues, output=outputs or None)

    async def _execute_health_check(
        self, health_ctx: HealthCheckContext, step: HealthCheckStep
    ) -> HealthResult:
        registration = self.registry.get_health_check_step_runner(step.kind)
        if registration is None:
            return HealthResult(
                status=HealthState.UNKNOWN,
                issues=[f'no health checker registered for step kind "{step.kind}"'],
            )

        step_ctx = HealthStepContext(
            project=health_ctx.project,
            stage=health_ctx.stage,
            input=copy_value(step.input) or {},
        )
        permissions = registration.permissions
        if permissions.allow_kargo_client:
            step_ctx.kargo_client = self.kargo_client
        if permissions.allow_argocd_client:
            step_ctx.argocd_client = self.argocd_client
        if permissions.allow_credentials_db:
            step_ctx.credentials_db = self.credentials_db

        try:
            return await registration.runner.check(step_ctx)
        except Exception as e:
            logger.error(f"Health checker {step.kind} raised: {e}", exc_info=True)
            return HealthResult(
                status=HealthState.UNKNOWN,
                issues=[f'error running health check of kind "{step.kind}": {e}'],
            )
