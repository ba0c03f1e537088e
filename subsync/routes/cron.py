"""Cron-triggered maintenance routes.

- POST /api/v1/cron/retry-dead-channels     Dead-channel retry pass
- POST /api/v1/cron/update-activity-levels  Activity-level reclassification
- POST /api/v1/cron/cleanup-progress        Progress retention for every user
- POST /api/v1/cron/refresh/{activity_level} Tiered refresh of subscribed channels
- POST /api/v1/cron/resume-paused-syncs     Announce quota-paused syncs once quota resets

Callers authenticate with ``Authorization: Bearer <CRON_SECRET>``. When
CRON_SECRET is unset every request is rejected.

These jobs run outside any user's sync lock; see services/dead_channel_retry.py.
"""

import hmac
from collections.abc import AsyncIterator

import structlog
from aiolimiter import AsyncLimiter
from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.clients.youtube import VideoProvider, YouTubeClient
from subsync.config import get_cron_secret, get_youtube_api_key
from subsync.database import get_session, get_session_factory
from subsync.models import ActivityLevel
from subsync.routes.sync import get_rate_limiter
from subsync.services.channel_health import update_channel_activity_levels
from subsync.services.channel_refresh import refresh_channels
from subsync.services.dead_channel_retry import run_dead_channel_retry
from subsync.services.sync_alerts import notify_resumable_syncs
from subsync.services.sync_progress import cleanup_all_sync_progress

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1/cron", tags=["cron"])


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    secret = get_cron_secret()
    if not secret:
        log.warning("cron_secret_not_configured")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    if not hmac.compare_digest((authorization or "").encode(), f"Bearer {secret}".encode()):
        log.warning("cron_unauthorized")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def get_cron_youtube_client(
    rate_limiter: AsyncLimiter | None = Depends(get_rate_limiter),
) -> AsyncIterator[VideoProvider]:
    """API-key client for jobs that run without a user token."""
    api_key = get_youtube_api_key()
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="YOUTUBE_API_KEY not configured",
        )
    async with YouTubeClient(api_key=api_key, rate_limiter=rate_limiter) as client:
        yield client


@router.post("/retry-dead-channels", dependencies=[Depends(verify_cron_secret)])
async def retry_dead_channels(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    provider: VideoProvider = Depends(get_cron_youtube_client),
) -> dict:
    report = await run_dead_channel_retry(session_factory, provider)
    return {"success": True, **report.to_dict()}


@router.post("/update-activity-levels", dependencies=[Depends(verify_cron_secret)])
async def update_activity_levels(db: AsyncSession = Depends(get_session)) -> dict:
    stats = await update_channel_activity_levels(db)
    log.info("cron_activity_levels_updated", **stats.to_dict())
    return {"success": True, "stats": stats.to_dict()}


@router.post("/cleanup-progress", dependencies=[Depends(verify_cron_secret)])
async def cleanup_progress(db: AsyncSession = Depends(get_session)) -> dict:
    deleted = await cleanup_all_sync_progress(db)
    return {"success": True, "deleted": deleted}


@router.post("/refresh/{activity_level}", dependencies=[Depends(verify_cron_secret)])
async def refresh_activity_tier(
    activity_level: ActivityLevel,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    provider: VideoProvider = Depends(get_cron_youtube_client),
) -> dict:
    report = await refresh_channels(session_factory, provider, activity_level)
    return {"success": True, **report.to_dict()}


@router.post("/resume-paused-syncs", dependencies=[Depends(verify_cron_secret)])
async def resume_paused_syncs(db: AsyncSession = Depends(get_session)) -> dict:
    notified = await notify_resumable_syncs(db)
    if notified:
        log.info("cron_paused_syncs_announced", notified=notified)
    return {"success": True, "notified": notified}
