from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from promoter.core.config import settings
from promoter.api.endpoints import health, promotions
from promoter.services.builtin_steps import create_default_registry
from promoter.services.health_engine import HealthEngine
from promoter.services.kube_client import KubernetesClient
from promoter.services.promotion_engine import PromotionEngine
import logging

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json"
)

# Include routers
app.include_router(
    promotions.router,
    prefix=f"{settings.API_V1_PREFIX}/promotions",
    tags=["promotions"]
)

app.include_router(
    health.router,
    prefix=f"{settings.API_V1_PREFIX}/health",
    tags=["health"]
)


@app.get("/")
async def root():
    return {
        "message": f"{settings.PROJECT_NAME} API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.on_event("startup")
async def startup_event():
    """
    Build the cluster client, step registry and engines used by the API.
    """
    kube_client = KubernetesClient()
    argocd_client = kube_client if settings.ALLOW_ARGOCD_CLIENT else None
    if argocd_client is None:
        logger.info("Argo CD integration is disabled")

    registry = create_default_registry()
    app.state.promotion_engine = PromotionEngine(
        registry,
        kargo_client=kube_client,
        argocd_client=argocd_client,
    )
    app.state.health_engine = HealthEngine(
        registry,
        kargo_client=kube_client,
        argocd_client=argocd_client,
    )
    logger.info(
        f"Promoter started with step kinds {registry.promotion_step_kinds()} "
        f"against {kube_client.base_url}"
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for anything the endpoints did not turn into an HTTP error.
    """
    # Skip HTTPExceptions as they are already handled
    if isinstance(exc, HTTPException):
        raise exc

    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {str(exc)}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("promoter.main:app", host="0.0.0.0", port=4000, reload=True)
