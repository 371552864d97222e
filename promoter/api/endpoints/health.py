"""
Health check API endpoints - assess a stage after promotion.
"""
from fastapi import APIRouter, HTTPException, Request, status
import logging

from promoter.schemas.health import Health, HealthCheckContext
from promoter.schemas.promotion import HealthCheckRunRequest
from promoter.services.health_engine import HealthEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def get_health_engine(request: Request) -> HealthEngine:
    engine = getattr(request.app.state, "health_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Health engine is not configured"
        )
    return engine


@router.post("/check", response_model=Health)
async def check_health(body: HealthCheckRunRequest, request: Request):
    """Run the given health check steps and return the merged verdict."""
    engine = get_health_engine(request)
    health = await engine.check(
        HealthCheckContext(project=body.project, stage=body.stage),
        body.steps,
    )
    logger.info(f"Health of stage {body.project}/{body.stage}: {health.status.value}")
    return health
