"""Idempotent writes of channels, subscriptions and videos into the library.

Every write is an upsert on a natural key, so re-running any step of a sync
with the same input produces no duplicate rows:
    channels            youtube_id
    user_subscriptions  (user_id, channel_id), duplicates ignored
    videos              (user_id, youtube_id)

Channel upserts refresh metadata only. Health state and activity level are
owned by the health tracker and are never reset by an import.
"""

from collections.abc import Iterator, Sequence
from datetime import datetime
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.clients.youtube import ChannelDetails, VideoItem
from subsync.database import dialect_insert
from subsync.models import (
    ActivityLevel,
    Channel,
    HealthStatus,
    SyncHistory,
    SyncType,
    UserSubscription,
    Video,
    VideoImportMode,
    utcnow,
)
from subsync.utils.logging import get_logger

log = get_logger(__name__)

SHORTS_MAX_SECONDS = 60
ALL_VIDEOS_CAP = 50000
DEFAULT_VIDEO_LIMIT = 100

# Rows per INSERT statement (keeps bind parameter counts portable)
UPSERT_CHUNK_SIZE = 500

T = TypeVar("T")


def _chunks(items: Sequence[T], size: int = UPSERT_CHUNK_SIZE) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def is_short(duration_seconds: int | None) -> bool:
    """A video is a Short when it runs 60 seconds or less.

    Unknown or zero durations (premieres, broken metadata) are not Shorts.
    """
    return duration_seconds is not None and 0 < duration_seconds <= SHORTS_MAX_SECONDS


def video_limit_for(mode: VideoImportMode, limit: int | None = None) -> int:
    """Maximum number of videos to import for a channel under ``mode``."""
    if mode is VideoImportMode.NEW_ONLY:
        return 0
    if mode is VideoImportMode.ALL:
        return ALL_VIDEOS_CAP
    return limit or DEFAULT_VIDEO_LIMIT


async def upsert_channels(
    db: AsyncSession, channels: Sequence[ChannelDetails]
) -> dict[str, UUID]:
    """Insert or refresh channel rows keyed by YouTube channel id.

    New channels start healthy at medium activity. Existing channels keep
    their health and activity; a missing uploads playlist or thumbnail in
    the input never erases a known one.

    Args:
        db: Database session (committed by this call)
        channels: Channel metadata from the provider

    Returns:
        Mapping of YouTube channel id to internal channel UUID.
    """
    if not channels:
        return {}

    now = utcnow()
    unique = {channel.channel_id: channel for channel in channels}

    for batch in _chunks(list(unique.values())):
        stmt = dialect_insert(db, Channel).values(
            [
                {
                    "id": uuid4(),
                    "youtube_id": channel.channel_id,
                    "title": channel.title[:255],
                    "thumbnail_url": channel.thumbnail_url,
                    "uploads_playlist_id": channel.uploads_playlist_id,
                    "activity_level": ActivityLevel.MEDIUM,
                    "health_status": HealthStatus.HEALTHY,
                    "consecutive_failures": 0,
                    "created_at": now,
                    "updated_at": now,
                }
                for channel in batch
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Channel.youtube_id],
            set_={
                "title": stmt.excluded.title,
                "thumbnail_url": func.coalesce(stmt.excluded.thumbnail_url, Channel.thumbnail_url),
                "uploads_playlist_id": func.coalesce(
                    stmt.excluded.uploads_playlist_id, Channel.uploads_playlist_id
                ),
                "updated_at": now,
            },
        )
        await db.execute(stmt)

    await db.commit()
    return await get_channel_ids(db, list(unique))


async def get_channel_ids(db: AsyncSession, youtube_ids: Sequence[str]) -> dict[str, UUID]:
    mapping: dict[str, UUID] = {}
    for batch in _chunks(youtube_ids):
        rows = await db.execute(
            select(Channel.youtube_id, Channel.id).where(Channel.youtube_id.in_(batch))
        )
        mapping.update({youtube_id: channel_id for youtube_id, channel_id in rows.all()})
    return mapping


async def upsert_subscriptions(
    db: AsyncSession, user_id: UUID, channel_ids: Sequence[UUID]
) -> None:
    """Link channels to a user, ignoring links that already exist.

    Channels are linked without any group assignment.
    """
    if not channel_ids:
        return

    now = utcnow()
    for batch in _chunks(list(dict.fromkeys(channel_ids))):
        stmt = dialect_insert(db, UserSubscription).values(
            [
                {"id": uuid4(), "user_id": user_id, "channel_id": channel_id, "created_at": now}
                for channel_id in batch
            ]
        )
        await db.execute(
            stmt.on_conflict_do_nothing(
                index_elements=[UserSubscription.user_id, UserSubscription.channel_id]
            )
        )
    await db.commit()


async def upsert_videos(
    db: AsyncSession,
    user_id: UUID,
    channel_id: UUID,
    videos: Sequence[VideoItem],
) -> int:
    """Insert or refresh a user's copies of a channel's videos.

    Args:
        db: Database session (committed by this call)
        user_id: Owner of the video rows
        channel_id: Internal channel UUID
        videos: Items from the provider

    Returns:
        Number of videos that were new for this user.
    """
    unique = {video.video_id: video for video in videos}
    if not unique:
        return 0

    existing: set[str] = set()
    for batch in _chunks(list(unique)):
        rows = await db.execute(
            select(Video.youtube_id).where(Video.user_id == user_id, Video.youtube_id.in_(batch))
        )
        existing.update(rows.scalars().all())

    now = utcnow()
    for batch in _chunks(list(unique.values())):
        stmt = dialect_insert(db, Video).values(
            [
                {
                    "id": uuid4(),
                    "user_id": user_id,
                    "channel_id": channel_id,
                    "youtube_id": video.video_id,
                    "title": video.title[:500],
                    "thumbnail_url": video.thumbnail_url,
                    "duration_seconds": video.duration_seconds,
                    "is_short": is_short(video.duration_seconds),
                    "published_at": video.published_at,
                    "created_at": now,
                }
                for video in batch
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Video.user_id, Video.youtube_id],
            set_={
                "title": stmt.excluded.title,
                "thumbnail_url": stmt.excluded.thumbnail_url,
                "duration_seconds": stmt.excluded.duration_seconds,
                "is_short": stmt.excluded.is_short,
                "published_at": stmt.excluded.published_at,
            },
        )
        await db.execute(stmt)

    await db.commit()
    return len(unique) - len(existing)


async def get_subscriber_ids(db: AsyncSession, channel_id: UUID) -> list[UUID]:
    rows = await db.execute(
        select(UserSubscription.user_id).where(UserSubscription.channel_id == channel_id)
    )
    return list(rows.scalars().all())


async def mark_channel_fetched(
    db: AsyncSession,
    channel_id: UUID,
    uploads_playlist_id: str | None = None,
) -> None:
    """Stamp last_fetched_at, optionally storing a refreshed uploads playlist."""
    channel = await db.get(Channel, channel_id)
    if channel is None:
        return
    channel.last_fetched_at = utcnow()
    if uploads_playlist_id:
        channel.uploads_playlist_id = uploads_playlist_id
    await db.commit()


async def set_uploads_playlist(db: AsyncSession, channel_id: UUID, playlist_id: str | None) -> None:
    channel = await db.get(Channel, channel_id)
    if channel is None:
        return
    channel.uploads_playlist_id = playlist_id
    await db.commit()


async def record_sync_history(
    db: AsyncSession,
    user_id: UUID,
    sync_type: SyncType,
    started_at: datetime,
    success: bool,
    channels_synced: int = 0,
    channels_failed: int = 0,
    videos_added: int = 0,
    quota_used: int = 0,
    error_message: str | None = None,
) -> SyncHistory:
    """Write the audit row for a finished run."""
    history = SyncHistory(
        user_id=user_id,
        sync_type=sync_type,
        started_at=started_at,
        completed_at=utcnow(),
        channels_synced=channels_synced,
        channels_failed=channels_failed,
        videos_added=videos_added,
        quota_used=quota_used,
        success=success,
        error_message=error_message[:1000] if error_message else None,
    )
    db.add(history)
    await db.commit()

    log.info(
        "sync_history_recorded",
        user_id=user_id,
        sync_type=sync_type.value,
        success=success,
        channels_synced=channels_synced,
        channels_failed=channels_failed,
        videos_added=videos_added,
        quota_used=quota_used,
    )
    return history
