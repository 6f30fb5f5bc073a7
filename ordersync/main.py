"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .database import init_db
from .deps import ShopifyConfigError, get_settings, get_task_queue
from .routers import metrics as metrics_router
from .routers import orders as orders_router
from .routers import webhooks as webhooks_router
from .telemetry import init_observability
from . import schemas


def create_app() -> FastAPI:
    app = FastAPI(
        title="ordersync API",
        description="""
        Shopify order sync backend.

        This API provides endpoints for:
        - Listing stored orders and single-order lookup/refresh
        - Triggering bulk or incremental syncs and polling bulk progress
        - Daily order metrics
        - Shopify order webhooks (HMAC verified)
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders_router.router)
    app.include_router(metrics_router.router)
    app.include_router(webhooks_router.router)

    @app.exception_handler(ShopifyConfigError)
    async def shopify_config_error_handler(request: Request, exc: ShopifyConfigError):
        logger.error(f"[CONFIG] {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc)},
        )

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Initialize error tracking and make sure tables exist."""
        status_by_tool = init_observability()
        logger.info(f"[STARTUP] Observability: {status_by_tool}")
        init_db()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the task queue (cancels in-process jobs, closes the Redis pool)."""
        await get_task_queue().close()

    return app


app = create_app()
