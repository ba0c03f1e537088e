"""Scheduled refresh of subscribed channels, tiered by activity level.

Busy channels are polled often with a small fetch; quiet ones rarely with a
larger fetch. Activity levels come from update_channel_activity_levels().

Tiers:
    level   stale after   channels per run   videos per channel
    high    2h            50                 20
    medium  6h            75                 30
    low     24h           100                50

The low tier does not filter on activity level: it picks up every channel
that the faster tiers left stale for a day.

Architecture Pattern:
    - Candidates: subscribed, not dead, uploads playlist known, never fetched
      or fetched before the tier's cutoff; least recently fetched first
    - Admission: one check_quota_available for the whole batch, then an
      atomic per-channel reservation (consume_quota) so a concurrent user
      sync cannot push the shared counter past the limit
    - Incremental fetch: only uploads newer than last_fetched_at
    - Channels are shared, so new uploads are stored for every subscriber
    - Each channel's outcome feeds channel health; a failed channel still
      gets last_fetched_at so the next run moves on to other channels
    - The finished run goes through alert analysis as a system run

The job runs outside any user's sync lock (see dead_channel_retry.py for why
that is safe).

Usage:
    async with YouTubeClient(api_key=get_youtube_api_key()) as client:
        report = await refresh_channels(async_session_factory, client, ActivityLevel.HIGH)
"""

import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import exists, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from subsync.clients.youtube import PAGE_SIZE, VideoItem, VideoProvider
from subsync.exceptions import YouTubeAPIError
from subsync.models import (
    ActivityLevel,
    Channel,
    HealthStatus,
    SyncType,
    UserSubscription,
    as_utc,
    utcnow,
)
from subsync.schemas.sync import SyncError
from subsync.services.channel_health import record_channel_failure, record_channel_success
from subsync.services.library import get_subscriber_ids, mark_channel_fetched, upsert_videos
from subsync.services.quota_manager import (
    check_quota_available,
    consume_quota,
    estimate_quota_needed,
    record_quota_usage,
)
from subsync.services.sync_alerts import RunSummary, check_and_create_alerts
from subsync.services.sync_orchestrator import is_retryable
from subsync.utils.logging import get_logger

log = get_logger(__name__)

FETCH_ATTEMPTS = 3


@dataclass(frozen=True)
class RefreshTier:
    activity_level: ActivityLevel
    stale_after: timedelta
    max_channels: int
    videos_per_channel: int
    sync_type: SyncType


REFRESH_TIERS: dict[ActivityLevel, RefreshTier] = {
    ActivityLevel.HIGH: RefreshTier(
        ActivityLevel.HIGH, timedelta(hours=2), 50, 20, SyncType.CRON_HIGH
    ),
    ActivityLevel.MEDIUM: RefreshTier(
        ActivityLevel.MEDIUM, timedelta(hours=6), 75, 30, SyncType.CRON_MEDIUM
    ),
    ActivityLevel.LOW: RefreshTier(
        ActivityLevel.LOW, timedelta(hours=24), 100, 50, SyncType.CRON_LOW
    ),
}


@dataclass
class RefreshReport:
    activity_level: str
    message: str = ""
    channels_processed: int = 0
    channels_failed: int = 0
    channels_skipped: int = 0
    videos_added: int = 0
    quota_used: int = 0
    duration_ms: int = 0
    errors: list[SyncError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["errors"] = [error.model_dump(mode="json") for error in self.errors]
        return data


async def get_channels_due_for_refresh(
    db: AsyncSession, tier: RefreshTier, now: datetime | None = None
) -> list[Channel]:
    """Channels this tier should fetch now, least recently fetched first."""
    cutoff = (now or utcnow()) - tier.stale_after
    stmt = (
        select(Channel)
        .where(
            Channel.health_status != HealthStatus.DEAD,
            Channel.uploads_playlist_id.is_not(None),
            or_(Channel.last_fetched_at.is_(None), Channel.last_fetched_at < cutoff),
            exists().where(UserSubscription.channel_id == Channel.id),
        )
        .order_by(Channel.last_fetched_at.asc().nulls_first(), Channel.title)
        .limit(tier.max_channels)
    )
    if tier.activity_level is not ActivityLevel.LOW:
        stmt = stmt.where(Channel.activity_level == tier.activity_level)
    return list((await db.execute(stmt)).scalars().all())


class ChannelRefreshJob:
    """One pass of the refresh job for one tier.

    Args:
        session_factory: Factory for short per-step transactions.
        provider: Video provider authenticated with the project API key.
        tier: Which channels to pick and how much to fetch.
        retry_attempts: Total attempts for a retryable fetch.
        retry_wait_min: Minimum backoff between attempts, in seconds.
        retry_wait_max: Maximum backoff between attempts, in seconds.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: VideoProvider,
        tier: RefreshTier,
        retry_attempts: int = FETCH_ATTEMPTS,
        retry_wait_min: float = 1.0,
        retry_wait_max: float = 8.0,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.tier = tier
        self.retry_attempts = retry_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.report = RefreshReport(activity_level=tier.activity_level.value)
        self.log = log.bind(activity_level=tier.activity_level.value)
        self._units = 0

    @property
    def reservation(self) -> int:
        # playlistItems.list + videos.list per page
        return 2 * math.ceil(min(self.tier.videos_per_channel, PAGE_SIZE) / PAGE_SIZE)

    async def run(self, now: datetime | None = None) -> RefreshReport:
        started = time.monotonic()
        level = self.tier.activity_level.value

        async with self.session_factory() as db:
            channels = await get_channels_due_for_refresh(db, self.tier, now)

        if not channels:
            self.report.message = f"No {level}-activity channels need refreshing"
            return self._done(started)

        async with self.session_factory() as db:
            check = await check_quota_available(
                db,
                estimate_quota_needed(
                    channel_count=len(channels),
                    videos_per_channel=self.tier.videos_per_channel,
                ),
            )
        if not check.allowed:
            self.report.channels_skipped = len(channels)
            self.report.message = check.reason or "YouTube API quota exhausted"
            self.log.warning("channel_refresh_quota_denied", reason=check.reason)
            return self._done(started)

        self.log.info("channel_refresh_started", candidates=len(channels))

        for index, channel in enumerate(channels):
            async with self.session_factory() as db:
                admitted = await consume_quota(db, self.reservation)
            if not admitted:
                self._skip_rest(channels[index:], "YouTube API quota exhausted")
                break

            spent_before = self._units
            try:
                added = await self._refresh_channel(channel)
            except YouTubeAPIError as e:
                await self._settle(spent_before)
                if e.is_quota_exceeded:
                    self._skip_rest(channels[index:], e.message)
                    break
                await self._channel_failed(channel, e)
                continue

            await self._settle(spent_before)
            self.report.channels_processed += 1
            self.report.videos_added += added

        self.report.message = (
            f"Processed {self.report.channels_processed} channels, "
            f"added {self.report.videos_added} videos"
        )
        report = self._done(started)
        await self._analyze()
        return report

    async def _refresh_channel(self, channel: Channel) -> int:
        """Fetch new uploads and store them for every subscriber.

        Raises:
            YouTubeAPIError: Terminal failure, or the last transient one.
        """
        videos = await self._fetch(channel)

        async with self.session_factory() as db:
            added = 0
            for user_id in await get_subscriber_ids(db, channel.id):
                added += await upsert_videos(db, user_id, channel.id, videos)
            await mark_channel_fetched(db, channel.id)
            await record_channel_success(db, channel.id)
        return added

    async def _fetch(self, channel: Channel) -> list[VideoItem]:
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                multiplier=self.retry_wait_min, min=self.retry_wait_min, max=self.retry_wait_max
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    videos, units = await self.provider.list_channel_videos(
                        channel.uploads_playlist_id,
                        self.tier.videos_per_channel,
                        exclude_live=True,
                        published_after=as_utc(channel.last_fetched_at),
                    )
                except YouTubeAPIError as e:
                    self._units += e.units_used
                    raise
                self._units += units
        return videos

    async def _channel_failed(self, channel: Channel, error: YouTubeAPIError) -> None:
        async with self.session_factory() as db:
            outcome = await record_channel_failure(db, channel.id, error.message)
            await mark_channel_fetched(db, channel.id)
        self.log.warning(
            "channel_refresh_failed",
            channel_id=channel.youtube_id,
            error_code=error.code.value,
            consecutive_failures=outcome.consecutive_failures,
        )
        self.report.channels_failed += 1
        self.report.errors.append(
            SyncError(
                code=error.code.value,
                message=error.message,
                channel_id=channel.youtube_id,
                channel_name=channel.title,
                timestamp=utcnow(),
            )
        )

    async def _settle(self, spent_before: int) -> None:
        spent = self._units - spent_before
        self.report.quota_used += spent
        if spent > self.reservation:
            async with self.session_factory() as db:
                await record_quota_usage(db, spent - self.reservation)

    def _skip_rest(self, channels: list[Channel], reason: str) -> None:
        self.log.warning("channel_refresh_stopped", reason=reason, skipped=len(channels))
        self.report.channels_skipped += len(channels)

    def _done(self, started: float) -> RefreshReport:
        self.report.duration_ms = int((time.monotonic() - started) * 1000)
        self.log.info(
            "channel_refresh_complete",
            channels_processed=self.report.channels_processed,
            channels_failed=self.report.channels_failed,
            channels_skipped=self.report.channels_skipped,
            videos_added=self.report.videos_added,
            quota_used=self.report.quota_used,
        )
        return self.report

    async def _analyze(self) -> None:
        summary = RunSummary(
            channels_processed=self.report.channels_processed,
            channels_failed=self.report.channels_failed,
            videos_added=self.report.videos_added,
            quota_used=self.report.quota_used,
            duration_ms=self.report.duration_ms,
            errors=list(self.report.errors),
        )
        try:
            async with self.session_factory() as db:
                await check_and_create_alerts(db, summary, self.tier.sync_type)
        except SQLAlchemyError as e:
            self.log.error("channel_refresh_alert_analysis_failed", error=str(e))


async def refresh_channels(
    session_factory: async_sessionmaker[AsyncSession],
    provider: VideoProvider,
    activity_level: ActivityLevel,
    now: datetime | None = None,
) -> RefreshReport:
    return await ChannelRefreshJob(
        session_factory, provider, REFRESH_TIERS[activity_level]
    ).run(now)
