"""Sync Orchestrator: top-level driver for every user-triggered sync run.

Runs:
    sync_subscriptions  Import the user's YouTube subscriptions as channels
    sync_videos         Fetch uploads for the user's subscribed channels
    add_channel         Subscribe to one channel and import its videos

Architecture Pattern: "Lock → Admission → Phases → Release"
- Every run holds the user's sync lock for its whole duration (scoped via
  SyncLockManager.hold, so release happens on every exit path)
- Admission failures (lock busy, quota denied) return immediately as
  structured SyncRunResult values; nothing is queued or retried
- Transient provider failures get bounded retry (tenacity) at the call site
- Per-channel failures are isolated: recorded against channel health and the
  run's error list, and the run moves on to the next channel
- Progress is persisted through SyncProgressTracker; lookups memoised during
  a run live on the run's own context object, never in module state

Quota Accounting:
    sync_subscriptions / add_channel  admission check up front, actual spend
                                      recorded after each provider call
    sync_videos                       admission check up front, then an atomic
                                      per-channel reservation (consume_quota);
                                      spend beyond the reservation is recorded
                                      afterwards

Usage:
    orchestrator = SyncOrchestrator(async_session_factory, lock_manager, client)
    result = await orchestrator.sync_subscriptions(user_id)
    if result.outcome is SyncOutcome.BUSY:
        ...
"""

import enum
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from subsync.clients.youtube import PAGE_SIZE, ChannelDetails, VideoProvider
from subsync.exceptions import YouTubeAPIError, YouTubeErrorCode
from subsync.models import (
    Channel,
    SyncPhase,
    SyncType,
    UserSubscription,
    VideoImportMode,
    as_utc,
    utcnow,
)
from subsync.schemas.sync import SyncError
from subsync.services.channel_health import (
    get_skippable_channel_ids,
    record_channel_failure,
    record_channel_success,
)
from subsync.services.library import (
    DEFAULT_VIDEO_LIMIT,
    mark_channel_fetched,
    record_sync_history,
    set_uploads_playlist,
    upsert_channels,
    upsert_subscriptions,
    upsert_videos,
    video_limit_for,
)
from subsync.services.quota_manager import (
    QuotaStatus,
    check_quota_available,
    consume_quota,
    estimate_quota_needed,
    next_reset_at,
    record_quota_usage,
)
from subsync.services.sync_alerts import (
    RunSummary,
    check_and_create_alerts,
    create_sync_error_alert,
)
from subsync.services.sync_lock import CancellationToken, SyncLockManager
from subsync.services.sync_progress import (
    SyncProgressTracker,
    clear_quota_pause,
    cleanup_old_sync_progress,
    get_sync_progress,
    remaining_channel_ids,
)
from subsync.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

PROVIDER_RETRY_ATTEMPTS = 3
PERSIST_EVERY_CHANNELS = 10


class SyncOutcome(enum.Enum):
    """How a run ended, as reported to the caller."""

    COMPLETED = "completed"
    BUSY = "busy"
    QUOTA_DENIED = "quota_denied"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncRunResult:
    """Structured result of a run; admission rejections are results, not exceptions."""

    outcome: SyncOutcome
    message: str
    sync_id: UUID | None = None
    channels_processed: int = 0
    channels_failed: int = 0
    videos_added: int = 0
    quota_used: int = 0
    errors: list[SyncError] = field(default_factory=list)
    quota_status: QuotaStatus | None = None
    resume_after: datetime | None = None

    @classmethod
    def from_tracker(
        cls, outcome: SyncOutcome, message: str, tracker: SyncProgressTracker
    ) -> "SyncRunResult":
        stats = tracker.progress.stats
        return cls(
            outcome=outcome,
            message=message,
            sync_id=tracker.sync_id,
            channels_processed=stats.channels_processed,
            channels_failed=stats.channels_failed,
            videos_added=stats.videos_added,
            quota_used=stats.quota_used,
            errors=list(tracker.progress.errors),
            resume_after=tracker.progress.resume_after,
        )


@dataclass
class _RunContext:
    """State owned by one run; discarded when the run ends."""

    user_id: UUID
    sync_type: SyncType
    tracker: SyncProgressTracker
    started_at: datetime = field(default_factory=utcnow)
    started_monotonic: float = field(default_factory=time.monotonic)
    units: int = 0
    # youtube channel id -> internal channel id, resolved during this run only
    channel_ids: dict[str, UUID] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)


def is_retryable(exc: BaseException) -> bool:
    """Retry predicate: only provider errors classified as transient."""
    return isinstance(exc, YouTubeAPIError) and exc.retryable


class SyncOrchestrator:
    """Drive sync runs for one provider.

    Args:
        session_factory: Factory for the short transactions each step opens.
        lock_manager: Shared per-user lock manager.
        provider: Video provider (YouTubeClient in production).
        retry_attempts: Total attempts for retryable provider calls.
        retry_wait_min: Minimum backoff between attempts, in seconds.
        retry_wait_max: Maximum backoff between attempts, in seconds.
        persist_every: Persist video-sync progress every N channels.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: SyncLockManager,
        provider: VideoProvider,
        retry_attempts: int = PROVIDER_RETRY_ATTEMPTS,
        retry_wait_min: float = 1.0,
        retry_wait_max: float = 8.0,
        persist_every: int = PERSIST_EVERY_CHANNELS,
    ) -> None:
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.provider = provider
        self.retry_attempts = retry_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.persist_every = persist_every

    # ------------------------------------------------------------------
    # Subscription import
    # ------------------------------------------------------------------

    async def sync_subscriptions(self, user_id: UUID) -> SyncRunResult:
        """Import the user's YouTube subscriptions.

        Orchestration Flow:
        1. Acquire the user's lock (busy → SyncOutcome.BUSY)
        2. Admission check for the estimated cost (denied → QUOTA_DENIED)
        3. Start progress, fetch subscriptions with bounded retry
        4. Zero subscriptions completes immediately
        5. Resolve channel details (failure tolerated, partial data kept)
        6. Upsert channels and subscription links (no group assignment)
        7. Record sync history, complete progress, run alert analysis
        8. Release the lock on every exit path
        """
        async with self.lock_manager.hold(user_id) as lock_id:
            if lock_id is None:
                return _busy_result()

            async with self.session_factory() as db:
                await cleanup_old_sync_progress(db, user_id)
                check = await check_quota_available(
                    db, estimate_quota_needed(subscription_sync=True)
                )
            if not check.allowed:
                log.warning("subscription_import_quota_denied", user_id=user_id, reason=check.reason)
                return SyncRunResult(
                    outcome=SyncOutcome.QUOTA_DENIED,
                    message=check.reason or "YouTube API quota exhausted",
                    quota_status=check.status,
                )

            token = self.lock_manager.cancellation_token(user_id, lock_id)
            ctx = self._new_context(user_id, SyncType.SUBSCRIPTION_IMPORT)
            try:
                return await self._import_subscriptions(ctx, token)
            except Exception as e:
                await self._fail_run(ctx, f"Subscription import failed: {e}")
                raise

    async def _import_subscriptions(
        self, ctx: _RunContext, token: CancellationToken
    ) -> SyncRunResult:
        tracker = ctx.tracker
        await tracker.start(message="Starting subscription import...")
        await tracker.set_phase(
            SyncPhase.FETCHING_SUBSCRIPTIONS, "Fetching your YouTube subscriptions..."
        )

        try:
            subscriptions = await self._call(
                ctx, "list_subscriptions", self.provider.list_subscriptions
            )
        except YouTubeAPIError as e:
            await self._settle_quota(ctx, reserved=0)
            message = f"Failed to fetch subscriptions: {e.message}"
            await self._fail_run(ctx, message)
            return SyncRunResult.from_tracker(SyncOutcome.FAILED, message, tracker)

        await self._settle_quota(ctx, reserved=0)

        if not subscriptions:
            message = "No subscriptions found on your YouTube account"
            await tracker.complete(message)
            await self._finish(ctx, success=True)
            return SyncRunResult.from_tracker(SyncOutcome.COMPLETED, message, tracker)

        await tracker.set_total(len(subscriptions))
        await tracker.set_phase(
            SyncPhase.FETCHING_CHANNEL_DETAILS,
            f"Fetching details for {len(subscriptions)} channels...",
        )

        spent_before = ctx.units
        try:
            details = await self._call(
                ctx,
                "get_channel_details",
                self.provider.get_channel_details,
                [sub.channel_id for sub in subscriptions],
            )
        except YouTubeAPIError as e:
            # Channels without an uploads playlist are resolved lazily at video sync
            log.warning(
                "channel_details_fetch_failed",
                user_id=ctx.user_id,
                error_code=e.code.value,
                error=e.message,
            )
            details = {}
        await self._settle_quota(ctx, reserved=0, since=spent_before)

        if await token.is_cancelled():
            message = "Sync was cancelled"
            await tracker.error(message)
            await self._finish(ctx, success=False, error_message=message)
            return SyncRunResult.from_tracker(SyncOutcome.CANCELLED, message, tracker)

        channels = [
            details.get(sub.channel_id)
            or ChannelDetails(
                channel_id=sub.channel_id,
                title=sub.title,
                uploads_playlist_id=None,
                thumbnail_url=sub.thumbnail_url,
            )
            for sub in subscriptions
        ]

        await tracker.set_phase(SyncPhase.COMPLETING, "Saving channels to your library...")
        async with self.session_factory() as db:
            ctx.channel_ids.update(await upsert_channels(db, channels))
            await upsert_subscriptions(db, ctx.user_id, list(ctx.channel_ids.values()))

        for channel in channels:
            await tracker.channel_processed(channel_id=channel.channel_id)

        message = f"Imported {len(channels)} channels from your YouTube subscriptions"
        await self._finish(ctx, success=True)
        await tracker.complete(message)
        await self._analyze(ctx)
        return SyncRunResult.from_tracker(SyncOutcome.COMPLETED, message, tracker)

    # ------------------------------------------------------------------
    # Per-channel video sync
    # ------------------------------------------------------------------

    async def sync_videos(
        self,
        user_id: UUID,
        channel_ids: list[UUID] | None = None,
        import_mode: VideoImportMode = VideoImportMode.LIMITED,
        limit: int | None = None,
        resume_sync_id: UUID | None = None,
        sync_type: SyncType = SyncType.MANUAL,
    ) -> SyncRunResult:
        """Fetch uploads for the user's subscribed channels.

        Args:
            user_id: Owner of the run
            channel_ids: Internal channel ids to sync; every subscribed channel when None
            import_mode: History depth per channel (see VideoImportMode)
            limit: Cap for VideoImportMode.LIMITED
            resume_sync_id: Sync only the channels a previous run left unprocessed
            sync_type: Trigger recorded in sync history

        Returns:
            SyncRunResult; per-channel failures appear in ``errors``.
        """
        async with self.lock_manager.hold(user_id) as lock_id:
            if lock_id is None:
                return _busy_result()

            ctx = self._new_context(user_id, sync_type)

            async with self.session_factory() as db:
                resume_ids: list[str] | None = None
                if resume_sync_id is not None:
                    previous = await get_sync_progress(db, user_id, resume_sync_id)
                    if previous is None:
                        return SyncRunResult(
                            outcome=SyncOutcome.NOT_FOUND,
                            message=f"Sync {resume_sync_id} not found",
                        )
                    resume_ids = remaining_channel_ids(previous)

                channels = await _load_subscribed_channels(db, user_id, channel_ids, resume_ids)
                dead = await get_skippable_channel_ids(db, [channel.id for channel in channels])
                runnable = [channel for channel in channels if channel.id not in dead]

                max_items = video_limit_for(import_mode, limit)
                first_page = min(max(max_items, 1), PAGE_SIZE)
                check = await check_quota_available(
                    db,
                    estimate_quota_needed(
                        channel_count=len(runnable), videos_per_channel=first_page
                    ),
                )

            if dead:
                log.info("video_sync_skipping_dead_channels", user_id=user_id, count=len(dead))

            if not check.allowed:
                log.warning("video_sync_quota_denied", user_id=user_id, reason=check.reason)
                return SyncRunResult(
                    outcome=SyncOutcome.QUOTA_DENIED,
                    message=check.reason or "YouTube API quota exhausted",
                    quota_status=check.status,
                )

            if resume_sync_id is not None:
                async with self.session_factory() as db:
                    await clear_quota_pause(db, resume_sync_id)

            token = self.lock_manager.cancellation_token(user_id, lock_id)
            ctx.channel_ids.update({channel.youtube_id: channel.id for channel in runnable})
            try:
                return await self._sync_channels(ctx, token, runnable, import_mode, limit)
            except Exception as e:
                await self._fail_run(ctx, f"Video sync failed: {e}")
                raise

    async def _sync_channels(
        self,
        ctx: _RunContext,
        token: CancellationToken,
        channels: list[Channel],
        import_mode: VideoImportMode,
        limit: int | None,
    ) -> SyncRunResult:
        tracker = ctx.tracker
        await tracker.start(total=len(channels), message=f"Syncing {len(channels)} channels...")
        await tracker.set_queued_channels([channel.youtube_id for channel in channels])

        if not channels:
            message = "No channels to sync"
            await tracker.complete(message)
            await self._finish(ctx, success=True)
            return SyncRunResult.from_tracker(SyncOutcome.COMPLETED, message, tracker)

        await tracker.set_phase(SyncPhase.SYNCING_VIDEOS, "Syncing videos...")

        stop_reason: SyncOutcome | None = None
        quota_exhausted = False

        for channel in channels:
            if await token.is_cancelled() or not await token.heartbeat():
                stop_reason = SyncOutcome.CANCELLED
                break

            max_items, published_after = _fetch_plan(channel, import_mode, limit)
            reserved = _reservation_for(channel, max_items)
            async with self.session_factory() as db:
                admitted = await consume_quota(db, reserved)
            if not admitted:
                quota_exhausted = True
                break

            spent_before = ctx.units
            try:
                added = await self._sync_channel(ctx, channel, max_items, published_after)
            except YouTubeAPIError as e:
                await self._settle_quota(ctx, reserved, since=spent_before)
                if e.is_quota_exceeded:
                    # Provider-side exhaustion is not the channel's fault
                    await tracker.channel_failed(
                        e.code.value, e.message, channel.youtube_id, channel.title
                    )
                    quota_exhausted = True
                    break
                await self._channel_failed(ctx, channel, e.code.value, e.message)
                continue
            except SQLAlchemyError as e:
                await self._settle_quota(ctx, reserved, since=spent_before)
                await self._channel_failed(ctx, channel, "database_error", str(e)[:500])
                continue

            await self._settle_quota(ctx, reserved, since=spent_before)
            async with self.session_factory() as db:
                await record_channel_success(db, channel.id)
            await tracker.channel_processed(
                videos_added=added, channel_id=channel.youtube_id, channel_name=channel.title
            )

        stats = tracker.progress.stats
        done = stats.channels_processed + stats.channels_failed

        if stop_reason is SyncOutcome.CANCELLED:
            message = f"Sync was cancelled after {done} of {len(channels)} channels"
            log.info("video_sync_cancelled", user_id=ctx.user_id, channels_done=done)
            await tracker.error(message)
            await self._finish(ctx, success=False, error_message=message)
            await self._analyze(ctx)
            return SyncRunResult.from_tracker(SyncOutcome.CANCELLED, message, tracker)

        if quota_exhausted:
            message = (
                f"Stopped early: YouTube API quota exhausted. "
                f"Synced {stats.channels_processed} of {len(channels)} channels."
            )
            tracker.pause_for_quota(next_reset_at())
        else:
            message = (
                f"Synced {stats.channels_processed} channels, "
                f"added {stats.videos_added} new videos"
            )
            if stats.channels_failed:
                message += f" ({stats.channels_failed} failed)"

        await tracker.set_phase(SyncPhase.COMPLETING, "Finishing up...")
        await self._finish(
            ctx,
            success=not quota_exhausted,
            error_message=message if quota_exhausted else None,
        )
        await tracker.complete(message)
        await self._analyze(ctx)
        return SyncRunResult.from_tracker(SyncOutcome.COMPLETED, message, tracker)

    async def _sync_channel(
        self,
        ctx: _RunContext,
        channel: Channel,
        max_items: int,
        published_after: datetime | None,
    ) -> int:
        """Fetch and store one channel's uploads. Returns the number of new videos.

        Raises:
            YouTubeAPIError: Terminal provider failure for this channel.
        """
        if max_items == 0:
            # new_only without a baseline: establish one, import nothing
            async with self.session_factory() as db:
                await mark_channel_fetched(db, channel.id)
            return 0

        playlist_id = channel.uploads_playlist_id
        if not playlist_id:
            playlist_id = await self._resolve_uploads_playlist(ctx, channel)

        try:
            videos = await self._call(
                ctx,
                "list_channel_videos",
                self.provider.list_channel_videos,
                playlist_id,
                max_items,
                exclude_live=True,
                published_after=published_after,
            )
        except YouTubeAPIError as e:
            if not e.is_not_found:
                raise
            # Uploads playlist ids occasionally change; refresh once and retry
            refreshed = await self._resolve_uploads_playlist(ctx, channel)
            if refreshed == playlist_id:
                raise
            playlist_id = refreshed
            videos = await self._call(
                ctx,
                "list_channel_videos",
                self.provider.list_channel_videos,
                playlist_id,
                max_items,
                exclude_live=True,
                published_after=published_after,
            )

        async with self.session_factory() as db:
            added = await upsert_videos(db, ctx.user_id, channel.id, videos)
            await mark_channel_fetched(db, channel.id, playlist_id)

        log.debug(
            "channel_videos_synced",
            user_id=ctx.user_id,
            channel_id=channel.youtube_id,
            fetched=len(videos),
            added=added,
        )
        return added

    async def _resolve_uploads_playlist(self, ctx: _RunContext, channel: Channel) -> str:
        details = await self._call(
            ctx, "get_channel_details", self.provider.get_channel_details, [channel.youtube_id]
        )
        found = details.get(channel.youtube_id)
        if found is None or not found.uploads_playlist_id:
            raise YouTubeAPIError(
                f"Channel {channel.youtube_id} has no uploads playlist",
                code=YouTubeErrorCode.NOT_FOUND,
                units_used=0,
            )

        async with self.session_factory() as db:
            await set_uploads_playlist(db, channel.id, found.uploads_playlist_id)
        channel.uploads_playlist_id = found.uploads_playlist_id
        return found.uploads_playlist_id

    async def _channel_failed(
        self, ctx: _RunContext, channel: Channel, code: str, message: str
    ) -> None:
        async with self.session_factory() as db:
            outcome = await record_channel_failure(db, channel.id, message)
        log.warning(
            "channel_sync_failed",
            user_id=ctx.user_id,
            channel_id=channel.youtube_id,
            error_code=code,
            consecutive_failures=outcome.consecutive_failures,
            health_status=outcome.status.value,
        )
        await ctx.tracker.channel_failed(code, message, channel.youtube_id, channel.title)

    # ------------------------------------------------------------------
    # Add single channel
    # ------------------------------------------------------------------

    async def add_channel(
        self,
        user_id: UUID,
        youtube_channel_id: str,
        import_mode: VideoImportMode = VideoImportMode.NEW_ONLY,
        limit: int | None = None,
    ) -> SyncRunResult:
        """Subscribe the user to one channel and import its videos by mode.

        new_only imports no history; limited and all fetch up to their caps.
        """
        async with self.lock_manager.hold(user_id) as lock_id:
            if lock_id is None:
                return _busy_result()

            max_items = video_limit_for(import_mode, limit)
            async with self.session_factory() as db:
                check = await check_quota_available(
                    db, estimate_quota_needed(channel_count=1, videos_per_channel=max_items)
                )
            if not check.allowed:
                return SyncRunResult(
                    outcome=SyncOutcome.QUOTA_DENIED,
                    message=check.reason or "YouTube API quota exhausted",
                    quota_status=check.status,
                )

            ctx = self._new_context(user_id, SyncType.CHANNEL_ADD)
            try:
                return await self._add_channel(ctx, youtube_channel_id, max_items)
            except Exception as e:
                await self._fail_run(ctx, f"Adding channel failed: {e}")
                raise

    async def _add_channel(
        self, ctx: _RunContext, youtube_channel_id: str, max_items: int
    ) -> SyncRunResult:
        tracker = ctx.tracker
        await tracker.start(total=1, message="Adding channel...")
        await tracker.set_phase(SyncPhase.FETCHING_CHANNEL_DETAILS, "Fetching channel details...")

        try:
            details = await self._call(
                ctx, "get_channel_details", self.provider.get_channel_details, [youtube_channel_id]
            )
        except YouTubeAPIError as e:
            await self._settle_quota(ctx, reserved=0)
            message = f"Failed to fetch channel details: {e.message}"
            await self._fail_run(ctx, message)
            return SyncRunResult.from_tracker(SyncOutcome.FAILED, message, tracker)

        channel_details = details.get(youtube_channel_id)
        if channel_details is None:
            await self._settle_quota(ctx, reserved=0)
            message = f"Channel {youtube_channel_id} was not found on YouTube"
            await tracker.error(message)
            await self._finish(ctx, success=False, error_message=message)
            return SyncRunResult.from_tracker(SyncOutcome.NOT_FOUND, message, tracker)

        async with self.session_factory() as db:
            ctx.channel_ids.update(await upsert_channels(db, [channel_details]))
            channel_id = ctx.channel_ids[youtube_channel_id]
            await upsert_subscriptions(db, ctx.user_id, [channel_id])
            channel = await db.get(Channel, channel_id)

        await tracker.set_phase(
            SyncPhase.SYNCING_VIDEOS, f"Importing videos from {channel_details.title}..."
        )
        try:
            added = await self._sync_channel(ctx, channel, max_items, published_after=None)
        except YouTubeAPIError as e:
            await self._settle_quota(ctx, reserved=0, since=0)
            await self._channel_failed(ctx, channel, e.code.value, e.message)
            message = f"Added {channel_details.title}, but importing its videos failed: {e.message}"
        else:
            await self._settle_quota(ctx, reserved=0, since=0)
            async with self.session_factory() as db:
                await record_channel_success(db, channel.id)
            await tracker.channel_processed(
                videos_added=added, channel_id=youtube_channel_id, channel_name=channel_details.title
            )
            message = f"Added {channel_details.title}"
            if added:
                message += f" with {added} videos"
        await tracker.set_phase(SyncPhase.COMPLETING)
        await self._finish(ctx, success=True)
        await tracker.complete(message)
        await self._analyze(ctx)
        return SyncRunResult.from_tracker(SyncOutcome.COMPLETED, message, tracker)

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _new_context(self, user_id: UUID, sync_type: SyncType) -> _RunContext:
        tracker = SyncProgressTracker(self.session_factory, user_id, persist_every=self.persist_every)
        return _RunContext(user_id=user_id, sync_type=sync_type, tracker=tracker)

    def _retrying(self, operation: str, user_id: UUID) -> AsyncRetrying:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            log.warning(
                "youtube_call_retry",
                operation=operation,
                user_id=user_id,
                attempt=retry_state.attempt_number,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
                error=str(error) if error else None,
            )

        return AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(
                multiplier=self.retry_wait_min, min=self.retry_wait_min, max=self.retry_wait_max
            ),
            before_sleep=before_sleep,
            reraise=True,
        )

    async def _call(
        self,
        ctx: _RunContext,
        operation: str,
        fn: Callable[..., Awaitable[tuple[T, int]]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Invoke a provider operation with bounded retry, accumulating spent units.

        Raises:
            YouTubeAPIError: Terminal error, or the last transient error once
                attempts are exhausted.
        """
        async for attempt in self._retrying(operation, ctx.user_id):
            with attempt:
                try:
                    result, units = await fn(*args, **kwargs)
                except YouTubeAPIError as e:
                    ctx.units += e.units_used
                    raise
                ctx.units += units
        return result

    async def _settle_quota(self, ctx: _RunContext, reserved: int, since: int = 0) -> None:
        """Account for units spent since ``since``, beyond what was reserved."""
        spent = ctx.units - since
        ctx.tracker.add_quota_usage(spent)
        if spent > reserved:
            async with self.session_factory() as db:
                await record_quota_usage(db, spent - reserved)

    async def _finish(
        self, ctx: _RunContext, success: bool, error_message: str | None = None
    ) -> None:
        stats = ctx.tracker.progress.stats
        async with self.session_factory() as db:
            await record_sync_history(
                db,
                user_id=ctx.user_id,
                sync_type=ctx.sync_type,
                started_at=ctx.started_at,
                success=success,
                channels_synced=stats.channels_processed,
                channels_failed=stats.channels_failed,
                videos_added=stats.videos_added,
                quota_used=stats.quota_used,
                error_message=error_message,
            )

    async def _analyze(self, ctx: _RunContext) -> None:
        stats = ctx.tracker.progress.stats
        summary = RunSummary(
            channels_processed=stats.channels_processed,
            channels_failed=stats.channels_failed,
            videos_added=stats.videos_added,
            quota_used=stats.quota_used,
            duration_ms=ctx.duration_ms,
            errors=list(ctx.tracker.progress.errors),
        )
        try:
            async with self.session_factory() as db:
                await check_and_create_alerts(db, summary, ctx.sync_type, ctx.user_id)
        except SQLAlchemyError as e:
            log.error("sync_alert_analysis_failed", user_id=ctx.user_id, error=str(e))

    async def _fail_run(self, ctx: _RunContext, message: str) -> None:
        """Terminal failure: progress error, failed history row, sync_error alert.

        Never raises for database errors, so the caller's original exception
        (if any) is the one that propagates.
        """
        await ctx.tracker.error(message)
        try:
            await self._finish(ctx, success=False, error_message=message)
            async with self.session_factory() as db:
                await create_sync_error_alert(db, ctx.user_id, ctx.sync_type, message)
        except SQLAlchemyError as e:
            log.error("sync_failure_recording_failed", user_id=ctx.user_id, error=str(e))


def _busy_result() -> SyncRunResult:
    return SyncRunResult(
        outcome=SyncOutcome.BUSY,
        message="A sync is already in progress. Please wait for it to complete.",
    )


def _fetch_plan(
    channel: Channel, import_mode: VideoImportMode, limit: int | None
) -> tuple[int, datetime | None]:
    """Decide how many uploads to fetch for ``channel`` and from when.

    new_only fetches uploads newer than the channel's last fetch; a channel
    never fetched before has no baseline and imports nothing.
    """
    if import_mode is VideoImportMode.NEW_ONLY:
        last_fetched = as_utc(channel.last_fetched_at)
        if last_fetched is None:
            return 0, None
        return DEFAULT_VIDEO_LIMIT, last_fetched
    return video_limit_for(import_mode, limit), None


def _reservation_for(channel: Channel, max_items: int) -> int:
    """Units reserved before touching a channel: its first page, plus detail lookup."""
    if max_items == 0:
        return 0
    # playlistItems.list + videos.list for the first page
    units = 2 * math.ceil(min(max_items, PAGE_SIZE) / PAGE_SIZE)
    if not channel.uploads_playlist_id:
        units += 1
    return units


async def _load_subscribed_channels(
    db: AsyncSession,
    user_id: UUID,
    channel_ids: list[UUID] | None = None,
    youtube_ids: list[str] | None = None,
) -> list[Channel]:
    """The user's subscribed channels, least recently fetched first."""
    stmt = (
        select(Channel)
        .join(UserSubscription, UserSubscription.channel_id == Channel.id)
        .where(UserSubscription.user_id == user_id)
        .order_by(Channel.last_fetched_at.asc().nulls_first(), Channel.title)
    )
    if channel_ids is not None:
        stmt = stmt.where(Channel.id.in_(channel_ids))
    if youtube_ids is not None:
        stmt = stmt.where(Channel.youtube_id.in_(youtube_ids))
    return list((await db.execute(stmt)).scalars().all())
