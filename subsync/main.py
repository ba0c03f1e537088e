"""FastAPI application for the subscription sync service.

Routes:
    /api/v1/sync/*, /api/v1/channels*, /api/v1/alerts*  (routes/sync.py)
    /api/v1/cron/*                                       (routes/cron.py)
    /health, /
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from aiolimiter import AsyncLimiter
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from subsync.config import get_youtube_requests_per_second
from subsync.database import async_session_factory, engine
from subsync.routes import cron, sync
from subsync.services.sync_lock import SyncLockManager
from subsync.utils.logging import configure_logging

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of process-wide sync resources.

    Startup:
    - Configure structured logging
    - Create the shared SyncLockManager (owns forced-release timers)
    - Create the shared YouTube request rate limiter

    Shutdown:
    - Cancel pending forced-release timers
    - Dispose the database engine
    """
    configure_logging()

    app.state.youtube_rate_limiter = AsyncLimiter(
        max_rate=get_youtube_requests_per_second(), time_period=1
    )

    if async_session_factory is not None:
        app.state.lock_manager = SyncLockManager(async_session_factory)
    else:
        app.state.lock_manager = None
        log.warning(
            "sync_service_disabled",
            message="DATABASE_URL not set, sync endpoints will return 503",
        )

    yield  # Application runs here

    if app.state.lock_manager is not None:
        log.info("shutting_down_sync_lock_manager")
        await app.state.lock_manager.shutdown()

    if engine is not None:
        await engine.dispose()


app = FastAPI(
    title="Subscription Sync",
    description="Mirrors YouTube subscriptions and channel uploads into a private library",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sync.router)
app.include_router(cron.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "subscription-sync",
            "database_configured": engine is not None,
        }
    )


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> JSONResponse:
    """Root endpoint with API information."""
    return JSONResponse(
        content={
            "service": "Subscription Sync",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/health",
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "subsync.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
