"""Sync status and trigger routes.

This module provides FastAPI routes for the sync core:
- GET    /api/v1/sync/progress          Current progress, is_active, ETA
- POST   /api/v1/sync/cancel            Cooperative cancel + scheduled forced release
- GET    /api/v1/sync/lock              Stuck-lock inspection
- DELETE /api/v1/sync/lock              Manual lock clear (operator escape hatch)
- POST   /api/v1/sync/subscriptions     Import subscriptions
- POST   /api/v1/sync/videos            Sync channel uploads
- GET    /api/v1/sync/quota             Shared quota status
- POST   /api/v1/channels               Add a single channel
- GET    /api/v1/channels/health        Unhealthy subscribed channels
- POST   /api/v1/channels/health/revive Revive dead channels
- GET    /api/v1/alerts                 Open alerts
- POST   /api/v1/alerts/acknowledge     Acknowledge alerts

Identity:
    Authentication happens upstream. The authenticated user id arrives in
    the X-User-Id header and the user's YouTube OAuth token in
    X-YouTube-Token (only the trigger routes need it).

Run outcomes map to status codes: completed/cancelled 200, busy 409,
quota_denied 429, not_found 404, failed 500.
"""

from collections.abc import AsyncIterator
from uuid import UUID

import structlog
from aiolimiter import AsyncLimiter
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.clients.youtube import VideoProvider, YouTubeClient
from subsync.config import get_forced_release_seconds
from subsync.database import get_session, get_session_factory
from subsync.models import HealthStatus
from subsync.schemas.sync import (
    AcknowledgeAlertsRequest,
    AcknowledgeAlertsResponse,
    AddChannelRequest,
    AlertItem,
    ChannelHealthItem,
    ChannelHealthResponse,
    LockStatusResponse,
    MessageResponse,
    QuotaStatusResponse,
    ReviveChannelsRequest,
    ReviveChannelsResponse,
    SyncProgressResponse,
    SyncRunResponse,
    VideoSyncRequest,
)
from subsync.services.channel_health import get_unhealthy_channels, revive_dead_channels
from subsync.services.quota_manager import get_quota_status
from subsync.services.sync_alerts import acknowledge_alerts, get_unacknowledged_alerts
from subsync.services.sync_lock import SyncLockManager
from subsync.services.sync_orchestrator import SyncOrchestrator, SyncOutcome, SyncRunResult
from subsync.services.sync_progress import (
    estimate_eta,
    get_current_sync_progress,
    is_sync_in_progress,
    mark_active_progress_cancelled,
)

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["sync"])

OUTCOME_STATUS_CODES = {
    SyncOutcome.COMPLETED: status.HTTP_200_OK,
    SyncOutcome.CANCELLED: status.HTTP_200_OK,
    SyncOutcome.BUSY: status.HTTP_409_CONFLICT,
    SyncOutcome.QUOTA_DENIED: status.HTTP_429_TOO_MANY_REQUESTS,
    SyncOutcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SyncOutcome.FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> UUID:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        return UUID(x_user_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user id"
        ) from e


def get_youtube_token(x_youtube_token: str | None = Header(default=None)) -> str:
    if not x_youtube_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="YouTube account not connected",
        )
    return x_youtube_token


def get_lock_manager(request: Request) -> SyncLockManager:
    lock_manager = getattr(request.app.state, "lock_manager", None)
    if lock_manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync service unavailable"
        )
    return lock_manager


def get_rate_limiter(request: Request) -> AsyncLimiter | None:
    return getattr(request.app.state, "youtube_rate_limiter", None)


async def get_youtube_client(
    token: str = Depends(get_youtube_token),
    rate_limiter: AsyncLimiter | None = Depends(get_rate_limiter),
) -> AsyncIterator[VideoProvider]:
    """Per-request client for the user's token, sharing the app-wide rate limiter."""
    async with YouTubeClient(access_token=token, rate_limiter=rate_limiter) as client:
        yield client


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    lock_manager: SyncLockManager = Depends(get_lock_manager),
    provider: VideoProvider = Depends(get_youtube_client),
) -> SyncOrchestrator:
    return SyncOrchestrator(session_factory, lock_manager, provider)


def _run_response(result: SyncRunResult) -> JSONResponse:
    body = SyncRunResponse(
        outcome=result.outcome.value,
        message=result.message,
        sync_id=result.sync_id,
        channels_processed=result.channels_processed,
        channels_failed=result.channels_failed,
        videos_added=result.videos_added,
        quota_used=result.quota_used,
        errors=result.errors,
        resume_after=result.resume_after,
        quota_status=(
            QuotaStatusResponse.model_validate(result.quota_status)
            if result.quota_status
            else None
        ),
    )
    return JSONResponse(
        status_code=OUTCOME_STATUS_CODES[result.outcome],
        content=body.model_dump(mode="json"),
    )


# ----------------------------------------------------------------------
# Status API
# ----------------------------------------------------------------------


@router.get("/sync/progress", response_model=SyncProgressResponse)
async def get_progress(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
    lock_manager: SyncLockManager = Depends(get_lock_manager),
) -> SyncProgressResponse:
    progress = await get_current_sync_progress(db, user_id)
    is_active = await is_sync_in_progress(db, user_id, lock_manager)
    eta = estimate_eta(progress) if progress is not None and is_active else None
    return SyncProgressResponse(progress=progress, is_active=is_active, eta=eta)


@router.post("/sync/cancel", response_model=MessageResponse)
async def cancel_sync(
    user_id: UUID = Depends(get_current_user_id),
    lock_manager: SyncLockManager = Depends(get_lock_manager),
) -> MessageResponse:
    """Request cooperative cancellation of the user's running sync.

    Returns:
        200 OK: Cancellation flagged; the lock is force-released after
            SYNC_FORCED_RELEASE_SECONDS if the run has not stopped by then
        404 Not Found: No sync is running
    """
    lock = await lock_manager.get_status(user_id)
    if not lock.has_lock or not await lock_manager.request_cancellation(user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sync in progress")

    delay = get_forced_release_seconds()
    lock_manager.schedule_forced_release(user_id, lock.lock_id, delay)
    log.info("sync_cancel_requested", user_id=str(user_id), forced_release_seconds=delay)

    return MessageResponse(
        success=True,
        message="Cancellation requested. The sync will stop after the current channel.",
    )


@router.get("/sync/lock", response_model=LockStatusResponse)
async def get_lock(
    user_id: UUID = Depends(get_current_user_id),
    lock_manager: SyncLockManager = Depends(get_lock_manager),
) -> LockStatusResponse:
    return LockStatusResponse.model_validate(await lock_manager.get_status(user_id))


@router.delete("/sync/lock", response_model=MessageResponse)
async def clear_lock(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
    lock_manager: SyncLockManager = Depends(get_lock_manager),
) -> MessageResponse:
    """Force-clear a stuck lock and mark the user's active progress as cancelled."""
    released = await lock_manager.release(user_id)
    cancelled_runs = await mark_active_progress_cancelled(db, user_id)
    log.warning(
        "sync_lock_manually_cleared",
        user_id=str(user_id),
        released=released,
        cancelled_runs=cancelled_runs,
    )
    return MessageResponse(
        success=True,
        message="Sync lock cleared" if released else "No sync lock was held",
    )


@router.get("/sync/quota", response_model=QuotaStatusResponse)
async def get_quota(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> QuotaStatusResponse:
    return QuotaStatusResponse.model_validate(await get_quota_status(db))


# ----------------------------------------------------------------------
# Sync triggers
# ----------------------------------------------------------------------


@router.post("/sync/subscriptions", response_model=SyncRunResponse)
async def sync_subscriptions(
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    return _run_response(await orchestrator.sync_subscriptions(user_id))


@router.post("/sync/videos", response_model=SyncRunResponse)
async def sync_videos(
    body: VideoSyncRequest,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    result = await orchestrator.sync_videos(
        user_id,
        channel_ids=body.channel_ids,
        import_mode=body.import_mode,
        limit=body.limit,
        resume_sync_id=body.resume_sync_id,
    )
    return _run_response(result)


@router.post("/channels", response_model=SyncRunResponse)
async def add_channel(
    body: AddChannelRequest,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    result = await orchestrator.add_channel(
        user_id,
        body.youtube_channel_id,
        import_mode=body.import_mode,
        limit=body.limit,
    )
    return _run_response(result)


# ----------------------------------------------------------------------
# Channel health
# ----------------------------------------------------------------------


@router.get("/channels/health", response_model=ChannelHealthResponse)
async def list_channel_health(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> ChannelHealthResponse:
    channels = await get_unhealthy_channels(db, user_id)
    summary = {
        level.value: sum(1 for channel in channels if channel.health_status is level)
        for level in (HealthStatus.WARNING, HealthStatus.UNHEALTHY, HealthStatus.DEAD)
    }
    summary["total"] = len(channels)
    return ChannelHealthResponse(
        channels=[ChannelHealthItem.model_validate(channel) for channel in channels],
        summary=summary,
    )


@router.post("/channels/health/revive", response_model=ReviveChannelsResponse)
async def revive_channels(
    body: ReviveChannelsRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> ReviveChannelsResponse:
    """Revive channels, limited to the caller's own unhealthy subscriptions."""
    owned = {channel.id for channel in await get_unhealthy_channels(db, user_id)}
    revived = await revive_dead_channels(db, [cid for cid in body.channel_ids if cid in owned])
    return ReviveChannelsResponse(revived=revived)


# ----------------------------------------------------------------------
# Alerts
# ----------------------------------------------------------------------


@router.get("/alerts", response_model=list[AlertItem])
async def list_alerts(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> list[AlertItem]:
    alerts = await get_unacknowledged_alerts(db, user_id)
    return [AlertItem.model_validate(alert) for alert in alerts]


@router.post("/alerts/acknowledge", response_model=AcknowledgeAlertsResponse)
async def acknowledge(
    body: AcknowledgeAlertsRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> AcknowledgeAlertsResponse:
    if not body.all and not body.alert_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide alert_ids or set all to true",
        )
    count = await acknowledge_alerts(db, user_id, None if body.all else body.alert_ids)
    return AcknowledgeAlertsResponse(acknowledged=count)
