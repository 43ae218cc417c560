"""
Main FastAPI application
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request

from flagrollout.api import admin_flag_cache, admin_rollouts, feature_flags, metrics
from flagrollout.core.api_envelope import success_response
from flagrollout.core.config import settings
from flagrollout.core.logging import configure_logging, get_logger
from flagrollout.services.feature_flags import FlagEvaluationService
from flagrollout.services.flag_cache import FlagCache
from flagrollout.services.flag_store import FlagStore, InMemoryFlagStore
from flagrollout.services.metrics_source import MetricsSource
from flagrollout.services.notification_service import LoggingNotifier, Notifier
from flagrollout.services.rollout_orchestrator import RolloutOrchestrator

# Configure structured logging
configure_logging()
logger = get_logger(__name__)


def create_app(
    store: Optional[FlagStore] = None,
    metrics_source: Optional[MetricsSource] = None,
    notifier: Optional[Notifier] = None,
    flag_cache: Optional[FlagCache] = None,
) -> FastAPI:
    """Wire the engine around a flag store and build the FastAPI app.

    The cache refresh loop starts with the application and stops, together
    with every rollout timer, on shutdown.
    """
    store = store if store is not None else InMemoryFlagStore()
    cache = flag_cache if flag_cache is not None else FlagCache(store)
    flag_service = FlagEvaluationService(cache, store)
    orchestrator = RolloutOrchestrator(flag_service, metrics_source, notifier or LoggingNotifier())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "application_startup",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            debug=settings.DEBUG,
        )
        await cache.start()
        logger.info("flag_cache_warmed", flags_cached=cache.stats()["size"])
        try:
            yield
        finally:
            logger.info("application_shutdown", app_name=settings.APP_NAME, version=settings.APP_VERSION)
            await orchestrator.shutdown()
            await cache.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        description="""
    Feature flag evaluation and progressive rollout engine

    ## Features
    - Deterministic percentage bucketing and ordered targeting rules
    - Staged rollouts with success criteria and automatic rollback
    - Emergency kill switch
    - Prometheus metrics and structured logging
    """,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.state.flag_store = store
    app.state.flag_cache = cache
    app.state.flag_service = flag_service
    app.state.orchestrator = orchestrator

    # Include routers
    app.include_router(metrics.router)  # Prometheus metrics endpoint
    app.include_router(feature_flags.router)  # Flag evaluation
    app.include_router(admin_rollouts.router)  # Rollout operations
    app.include_router(admin_flag_cache.router)  # Flag cache management

    @app.get("/health", tags=["health"])
    async def health(request: Request):
        stats = request.app.state.flag_cache.stats()
        status = "degraded" if stats["expired"] else "healthy"
        return success_response(data={"status": status, "flag_cache": stats})

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "flagrollout.main:app",
        host="0.0.0.0",  # nosec B104 - intentional for Docker container
        port=8000,
        reload=settings.DEBUG,
    )
