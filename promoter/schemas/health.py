from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from enum import Enum


class HealthState(str, Enum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    UNHEALTHY = "Unhealthy"
    UNKNOWN = "Unknown"
    NOT_APPLICABLE = "NotApplicable"

    def merge(self, other: "HealthState") -> "HealthState":
        """Return the worse of two health states."""
        if _HEALTH_STATE_ORDER[self] > _HEALTH_STATE_ORDER[other]:
            return self
        return other


# NotApplicable ranks alongside Healthy
_HEALTH_STATE_ORDER = {
    HealthState.NOT_APPLICABLE: 0,
    HealthState.HEALTHY: 0,
    HealthState.PROGRESSING: 1,
    HealthState.UNKNOWN: 2,
    HealthState.UNHEALTHY: 3,
}


class HealthCheckStep(BaseModel):
    """Criteria for a post-promotion health check, produced by a step."""
    kind: str
    input: Dict[str, Any] = {}


class HealthCheckContext(BaseModel):
    project: str
    stage: str


class HealthResult(BaseModel):
    """Verdict of a single health check step."""
    status: HealthState
    issues: List[str] = []
    output: Optional[Dict[str, Any]] = None


class Health(BaseModel):
    """Merged verdict of all health check steps."""
    status: HealthState
    issues: List[str] = []
    output: Optional[List[Dict[str, Any]]] = None
