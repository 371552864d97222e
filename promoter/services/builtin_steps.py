"""Registration of the step runners and health checkers that ship with promoter."""
import logging

from promoter.core.config import settings
from promoter.services.argocd_health import ArgoCDHealthChecker
from promoter.services.argocd_updater import ArgoCDUpdater
from promoter.services.step_registry import StepRunnerPermissions, StepRunnerRegistry

logger = logging.getLogger(__name__)


def create_default_registry() -> StepRunnerRegistry:
    """Build a registry holding every built-in step runner and health checker."""
    registry = StepRunnerRegistry()
    # The updater reads Warehouses to find the origin of Freight images
    registry.register_promotion_step_runner(
        ArgoCDUpdater(initiator=settings.OPERATION_INITIATOR),
        StepRunnerPermissions(allow_kargo_client=True, allow_argocd_client=True),
    )
    registry.register_health_check_step_runner(
        ArgoCDHealthChecker(), StepRunnerPermissions(allow_argocd_client=True)
    )
    logger.debug(
        f"Registered step runners {registry.promotion_step_kinds()} and "
        f"health checkers {registry.health_check_kinds()}"
    )
    return registry
