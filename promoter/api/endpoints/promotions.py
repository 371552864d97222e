"""
Promotions API endpoints - run one reconciliation pass of a promotion.
"""
from fastapi import APIRouter, HTTPException, Request, status
import logging

from promoter.schemas.promotion import PromotionResult, PromotionRunRequest
from promoter.services.promotion_engine import PromotionEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def get_promotion_engine(request: Request) -> PromotionEngine:
    engine = getattr(request.app.state, "promotion_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Promotion engine is not configured"
        )
    return engine


@router.post("/run", response_model=PromotionResult)
async def run_promotion(body: PromotionRunRequest, request: Request):
    """
    Run the steps of a promotion, starting from context.start_from_step.

    The response carries the state, step metadata and current step to send
    back on the next pass while the status is Running.
    """
    engine = get_promotion_engine(request)
    try:
        result = await engine.promote(body.context, body.steps)
    except TypeError as e:
        # Shared state that is not JSON-serializable
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid promotion state: {str(e)}"
        )
    logger.info(
        f"Promotion {body.context.promotion} pass finished with {result.status.value} "
        f"at step {result.current_step}"
    )
    return result
