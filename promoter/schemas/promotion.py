from pydantic import BaseModel, field_validator
from typing import List, Optional, Dict, Any, Union
from datetime import datetime, timedelta
from enum import Enum
import re

from promoter.schemas.health import HealthCheckStep


class PromotionPhase(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ERRORED = "Errored"
    RUNNING = "Running"


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
}


def parse_duration(value: Union[str, int, float, timedelta, None]) -> Optional[timedelta]:
    """Parse a duration given as seconds or as a string like "5m" or "1h30m".

    Raises:
        ValueError: If the string is not a valid duration
    """
    if value is None or isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = value.strip()
    if text in ("", "0"):
        return timedelta(0)
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=total)


def format_duration(value: timedelta) -> str:
    """Render a duration as e.g. "5m0s" or "1h0m0s"."""
    total = int(value.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


class StepRetry(BaseModel):
    """Per-step overrides of a step runner's retry policy."""
    timeout: Optional[timedelta] = None
    error_threshold: Optional[int] = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value):
        return parse_duration(value)

    def get_timeout(self, fallback: Optional[timedelta]) -> Optional[timedelta]:
        if self.timeout is None:
            return fallback
        return self.timeout

    def get_error_threshold(self, fallback: int) -> int:
        if not self.error_threshold:
            return fallback
        return self.error_threshold


class Step(BaseModel):
    kind: str
    alias: str = ""
    config: Dict[str, Any] = {}
    retry: Optional[StepRetry] = None


class StepExecutionMetadata(BaseModel):
    alias: str
    status: Optional[PromotionPhase] = None
    message: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_count: int = 0


class PromotionContext(BaseModel):
    """Everything a single reconciliation pass of a promotion needs."""
    work_dir: Optional[str] = None
    project: str
    stage: str
    promotion: str
    freight_requests: List[Dict[str, Any]] = []
    freight: Dict[str, Any] = {}
    start_from_step: int = 0
    state: Dict[str, Any] = {}
    step_execution_metadata: List[StepExecutionMetadata] = []


class StepResult(BaseModel):
    """What a step runner reports back to the engine."""
    status: PromotionPhase
    message: str = ""
    output: Optional[Dict[str, Any]] = None
    health_check: Optional[HealthCheckStep] = None
    retry_after: Optional[timedelta] = None


class PromotionResult(BaseModel):
    status: PromotionPhase
    message: str = ""
    current_step: int = 0
    step_execution_metadata: List[StepExecutionMetadata] = []
    state: Dict[str, Any] = {}
    health_check_steps: List[HealthCheckStep] = []
    retry_after: Optional[timedelta] = None


class PromotionRunRequest(BaseModel):
    context: PromotionContext
    steps: List[Step]


class HealthCheckRunRequest(BaseModel):
    project: str
    stage: str
    steps: List[HealthCheckStep]
