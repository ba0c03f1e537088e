"""Scheduled retry of dead channels with widening backoff.

A dead channel (10+ consecutive failures) is excluded from user syncs. This
job gives each dead channel an occasional second chance: if one bounded
fetch succeeds, the channel is revived and its new uploads are stored for
every subscriber; if it fails again, the failure is recorded and the next
retry moves further out.

Backoff (hours since last failure before the next attempt):
    failures  10   11   12   13+
    hours     24   48   96   192 (cap)

The job runs outside any user's sync lock. It only mutates channel and
video rows, which user syncs also write through idempotent upserts and
atomic counters, so the two can interleave safely.

Usage:
    async with YouTubeClient(api_key=get_youtube_api_key()) as client:
        report = await DeadChannelRetryJob(async_session_factory, client).run()
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.clients.youtube import VideoItem, VideoProvider
from subsync.exceptions import YouTubeAPIError, YouTubeErrorCode
from subsync.models import Channel, HealthStatus, as_utc, utcnow
from subsync.services.channel_health import (
    DEAD_THRESHOLD,
    record_channel_failure,
    record_channel_success,
)
from subsync.services.library import (
    get_subscriber_ids,
    mark_channel_fetched,
    set_uploads_playlist,
    upsert_videos,
)
from subsync.services.quota_manager import consume_quota, record_quota_usage
from subsync.utils.logging import get_logger

log = get_logger(__name__)

RETRY_BATCH_SIZE = 25
RETRY_FETCH_VIDEOS = 10
QUOTA_PER_CHANNEL = 3
BASE_BACKOFF_HOURS = 24
MAX_BACKOFF_HOURS = 192

PLAYLIST_REFRESHED_REASON = "Playlist refreshed, will retry next run"


def retry_backoff_hours(consecutive_failures: int) -> int:
    """Hours to wait after the last failure before retrying a dead channel.

    Example:
        >>> retry_backoff_hours(10), retry_backoff_hours(12), retry_backoff_hours(20)
        (24, 96, 192)
    """
    exponent = max(0, consecutive_failures - DEAD_THRESHOLD)
    return min(BASE_BACKOFF_HOURS * 2**exponent, MAX_BACKOFF_HOURS)


def is_eligible_for_retry(channel: Channel, now: datetime | None = None) -> bool:
    last_failure = as_utc(channel.last_failure_at)
    if last_failure is None:
        return True
    wait = timedelta(hours=retry_backoff_hours(channel.consecutive_failures))
    return (now or utcnow()) - last_failure >= wait


async def get_dead_channels_for_retry(
    db: AsyncSession,
    now: datetime | None = None,
    limit: int = RETRY_BATCH_SIZE,
) -> list[Channel]:
    """Dead channels whose backoff has elapsed, oldest failure first."""
    stmt = (
        select(Channel)
        .where(Channel.health_status == HealthStatus.DEAD)
        .order_by(Channel.last_failure_at.asc().nulls_first())
    )
    dead = (await db.execute(stmt)).scalars().all()
    return [channel for channel in dead if is_eligible_for_retry(channel, now)][:limit]


@dataclass
class RetryDetail:
    youtube_id: str
    title: str
    result: str  # "recovered" | "still_dead" | "skipped"
    videos_added: int = 0
    error: str | None = None


@dataclass
class RetryReport:
    channels_checked: int = 0
    recovered: int = 0
    still_dead: int = 0
    skipped: int = 0
    videos_added: int = 0
    quota_used: int = 0
    duration_ms: int = 0
    details: list[RetryDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DeadChannelRetryJob:
    """One pass of the dead-channel retry job.

    Args:
        session_factory: Factory for short per-step transactions.
        provider: Video provider authenticated with the project API key.
        batch_size: Maximum channels attempted per pass.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: VideoProvider,
        batch_size: int = RETRY_BATCH_SIZE,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.batch_size = batch_size
        self.report = RetryReport()
        self._units = 0

    async def run(self, now: datetime | None = None) -> RetryReport:
        started = time.monotonic()
        async with self.session_factory() as db:
            channels = await get_dead_channels_for_retry(db, now, self.batch_size)

        log.info("dead_channel_retry_started", candidates=len(channels))

        for index, channel in enumerate(channels):
            async with self.session_factory() as db:
                admitted = await consume_quota(db, QUOTA_PER_CHANNEL)
            if not admitted:
                self._skip(channels[index:], "YouTube API quota exhausted")
                break

            self.report.channels_checked += 1
            spent_before = self._units
            try:
                added = await self._retry_channel(channel)
            except YouTubeAPIError as e:
                await self._settle(spent_before)
                if e.is_quota_exceeded:
                    self.report.channels_checked -= 1
                    self._skip(channels[index:], e.message)
                    break
                async with self.session_factory() as db:
                    await record_channel_failure(db, channel.id, e.message)
                self.report.still_dead += 1
                self.report.details.append(
                    RetryDetail(channel.youtube_id, channel.title, "still_dead", error=e.message)
                )
                continue

            await self._settle(spent_before)
            self.report.recovered += 1
            self.report.videos_added += added
            self.report.details.append(
                RetryDetail(channel.youtube_id, channel.title, "recovered", videos_added=added)
            )
            log.info(
                "dead_channel_recovered",
                channel_id=channel.youtube_id,
                videos_added=added,
            )

        self.report.duration_ms = int((time.monotonic() - started) * 1000)
        log.info(
            "dead_channel_retry_complete",
            channels_checked=self.report.channels_checked,
            recovered=self.report.recovered,
            still_dead=self.report.still_dead,
            skipped=self.report.skipped,
            quota_used=self.report.quota_used,
        )
        return self.report

    async def _retry_channel(self, channel: Channel) -> int:
        """Attempt one bounded fetch. Returns videos added across all subscribers.

        Raises:
            YouTubeAPIError: The channel is still failing.
        """
        playlist_id = channel.uploads_playlist_id or await self._refresh_playlist(channel)

        try:
            videos = await self._fetch(playlist_id)
        except YouTubeAPIError as e:
            if not e.is_not_found:
                raise
            await self._refresh_playlist(channel)
            raise YouTubeAPIError(
                PLAYLIST_REFRESHED_REASON,
                code=YouTubeErrorCode.NOT_FOUND,
                status_code=e.status_code,
            ) from e

        async with self.session_factory() as db:
            await record_channel_success(db, channel.id)
            added = 0
            for user_id in await get_subscriber_ids(db, channel.id):
                added += await upsert_videos(db, user_id, channel.id, videos)
            await mark_channel_fetched(db, channel.id, playlist_id)
        return added

    async def _fetch(self, playlist_id: str) -> list[VideoItem]:
        try:
            videos, units = await self.provider.list_channel_videos(
                playlist_id, RETRY_FETCH_VIDEOS, exclude_live=True
            )
        except YouTubeAPIError as e:
            self._units += e.units_used
            raise
        self._units += units
        return videos

    async def _refresh_playlist(self, channel: Channel) -> str:
        try:
            details, units = await self.provider.get_channel_details([channel.youtube_id])
        except YouTubeAPIError as e:
            self._units += e.units_used
            raise
        self._units += units

        found = details.get(channel.youtube_id)
        if found is None or not found.uploads_playlist_id:
            raise YouTubeAPIError(
                "Channel no longer exists on YouTube",
                code=YouTubeErrorCode.NOT_FOUND,
            )

        async with self.session_factory() as db:
            await set_uploads_playlist(db, channel.id, found.uploads_playlist_id)
        channel.uploads_playlist_id = found.uploads_playlist_id
        return found.uploads_playlist_id

    async def _settle(self, spent_before: int) -> None:
        spent = self._units - spent_before
        self.report.quota_used += spent
        if spent > QUOTA_PER_CHANNEL:
            async with self.session_factory() as db:
                await record_quota_usage(db, spent - QUOTA_PER_CHANNEL)

    def _skip(self, channels: list[Channel], reason: str) -> None:
        log.warning("dead_channel_retry_stopped", reason=reason, skipped=len(channels))
        self.report.skipped += len(channels)
        self.report.details.extend(
            RetryDetail(channel.youtube_id, channel.title, "skipped", error=reason)
            for channel in channels
        )


async def run_dead_channel_retry(
    session_factory: async_sessionmaker[AsyncSession],
    provider: VideoProvider,
    now: datetime | None = None,
) -> RetryReport:
    return await DeadChannelRetryJob(session_factory, provider).run(now)
