"""
ASGI entry point: uvicorn estimateai.main:app
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from estimateai.api.router import api_router
from estimateai.config import settings
from estimateai.dependencies import get_worker_pool
from estimateai.models.database import close_db, init_db
from estimateai.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def _init_sentry() -> None:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        release=settings.APP_VERSION,
        integrations=[FastApiIntegration()],
        traces_sample_rate=0.1,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.SENTRY_DSN:
        _init_sentry()
    # create_all skips tables that already exist.
    await init_db()

    # Inline mode runs extraction jobs in this process; rq mode leaves them to worker.runner.
    pool = get_worker_pool() if settings.DISPATCH_MODE == "inline" else None
    if pool is not None:
        pool.start()
    logger.info(
        "orchestrator_started",
        version=settings.APP_VERSION,
        dispatch_mode=settings.DISPATCH_MODE,
        model_provider=settings.MODEL_PROVIDER,
    )
    try:
        yield
    finally:
        if pool is not None:
            await pool.stop()
        await close_db()
        logger.info("orchestrator_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Extraction and comparison jobs for drawings, schedules and bills of quantities.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app

        app.mount("/metrics", make_asgi_app())
    app.include_router(api_router)
    return app


app = create_app()
