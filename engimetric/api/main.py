"""
Engimetric Sync - FastAPI Application

Provides:
- User-triggered integration syncs (single month / full history)
- Sync state inspection
- Aggregated team metrics
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from engimetric import __version__
from engimetric.api.routes import health, integrations, metrics
from engimetric.config import get_settings
from engimetric.db.client import close_db, init_db
from engimetric.kernel.errors import EngimetricError
from engimetric.kernel.logging import configure_logging
from engimetric.scheduling.scheduler import init_scheduler, shutdown_scheduler

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown."""
    settings = get_settings()
    logger.info("Starting Engimetric sync service", version=__version__, environment=settings.environment)

    await init_db()
    logger.info("PostgreSQL connection initialized")

    run_scheduler = settings.scheduler_enabled and settings.environment != "test"
    if run_scheduler:
        await init_scheduler()
        logger.info("Sync scheduler initialized")
    else:
        logger.info("Sync scheduler disabled in API process")

    yield

    logger.info("Shutting down Engimetric sync service")
    if run_scheduler:
        await shutdown_scheduler()
    await close_db()


app = FastAPI(
    title="Engimetric Sync API",
    description="Integration sync scheduler and team metrics",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(EngimetricError)
async def engimetric_error_handler(request: Request, exc: EngimetricError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())


app.include_router(health.router, tags=["Health"])
app.include_router(integrations.router, prefix="/api/v1")
app.include_router(metrics.router, prefix="/api/v1")
