"""Registry of step runners and health checkers.

This module provides the StepRunnerRegistry class which maps a step kind to
the runner that executes it, along with the permissions that decide which
privileged clients the engine hands to that runner.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from promoter.schemas.health import HealthResult
from promoter.schemas.promotion import StepResult
from promoter.services.kube_client import ClusterClient, CredentialsDatabase


@dataclass
class StepRunnerPermissions:
    """Privileged clients a runner may receive."""
    allow_kargo_client: bool = False
    allow_argocd_client: bool = False
    allow_credentials_db: bool = False


@dataclass
class StepContext:
    """Everything a step runner gets to see while it runs."""
    alias: str
    config: Dict[str, Any]
    project: str
    stage: str
    promotion: str
    work_dir: str
    shared_state: Dict[str, Any] = field(default_factory=dict)
    freight_requests: List[Dict[str, Any]] = field(default_factory=list)
    freight: Dict[str, Any] = field(default_factory=dict)
    secrets: Dict[str, Dict[str, str]] = field(default_factory=dict)
    kargo_client: Optional[ClusterClient] = None
    argocd_client: Optional[ClusterClient] = None
    credentials_db: Optional[CredentialsDatabase] = None


@dataclass
class HealthStepContext:
    project: str
    stage: str
    input: Dict[str, Any] = field(default_factory=dict)
    kargo_client: Optional[ClusterClient] = None
    argocd_client: Optional[ClusterClient] = None
    credentials_db: Optional[CredentialsDatabase] = None


class StepRunner:
    """Base class for promotion step runners.

    Subclasses set ``name`` to the step kind they handle and implement
    ``run``. A runner may also declare a default timeout, a default error
    threshold and a JSON schema for its configuration.
    """

    name: str = ""
    default_timeout: Optional[timedelta] = None
    default_error_threshold: int = 0
    config_schema: Optional[Dict[str, Any]] = None

    async def run(self, step_ctx: StepContext) -> StepResult:
        raise NotImplementedError


class HealthChecker:
    """Base class for health check step runners."""

    name: str = ""

    async def check(self, health_ctx: HealthStepContext) -> HealthResult:
        raise NotImplementedError


@dataclass
class StepRunnerRegistration:
    runner: Any
    permissions: StepRunnerPermissions


class StepRunnerRegistry:
    """Registry for promotion step runners and health checkers.

    Example:
        registry = StepRunnerRegistry()
        registry.register_promotion_step_runner(
            ArgoCDUpdater(),
            StepRunnerPermissions(allow_argocd_client=True),
        )
        engine = PromotionEngine(registry, kargo_client=client)
    """

    def __init__(self):
        self._promotion_step_runners: Dict[str, StepRunnerRegistration] = {}
        self._health_checkers: Dict[str, StepRunnerRegistration] = {}

    def register_promotion_step_runner(
        self,
        runner: StepRunner,
        permissions: Optional[StepRunnerPermissions] = None,
    ) -> None:
        """Register a promotion step runner under its name.

        Raises:
            ValueError: If the runner has no name or the name is taken
        """
        self._register(self._promotion_step_runners, runner, permissions)

    def register_health_check_step_runner(
        self,
        checker: HealthChecker,
        permissions: Optional[StepRunnerPermissions] = None,
    ) -> None:
        """Register a health checker under its name.

        Raises:
            ValueError: If the checker has no name or the name is taken
        """
        self._register(self._health_checkers, checker, permissions)

    def get_promotion_step_runner(self, kind: str) -> Optional[StepRunnerRegistration]:
        return self._promotion_step_runners.get(kind)

    def get_health_check_step_runner(self, kind: str) -> Optional[StepRunnerRegistration]:
        return self._health_checkers.get(kind)

    def promotion_step_kinds(self) -> List[str]:
        return sorted(self._promotion_step_runners.keys())

    def health_check_kinds(self) -> List[str]:
        return sorted(self._health_checkers.keys())

    @staticmethod
    def _register(
        registrations: Dict[str, StepRunnerRegistration],
        runner: Any,
        permissions: Optional[StepRunnerPermissions],
    ) -> None:
        if not runner.name:
            raise ValueError("Cannot register a step runner without a name")
        if runner.name in registrations:
            raise ValueError(f"A step runner named {runner.name!r} is already registered")
        registrations[runner.name] = StepRunnerRegistration(
            runner=runner,
            permissions=permissions or StepRunnerPermissions(),
        )
