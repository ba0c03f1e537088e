"""Persisted, resumable progress state for sync runs.

One tracker instance belongs to one run (single writer). Every meaningful
transition is written to sync_progress so status pollers in other processes
see it within one update.

Architecture Pattern:
    - Closed state machine: SyncPhase + PHASE_TRANSITIONS (models.py); an
      illegal transition raises InvalidPhaseTransitionError
    - Counter-derived position: ``current`` is always recomputed as
      channels_processed + channels_failed (capped at total), never
      incremented independently
    - Best-effort persistence: a failed write is logged and the run goes on;
      sync correctness never depends on progress rows
    - Read side: latest progress, in-progress check (lock first, then
      phase + staleness), ETA, retention cleanup
    - Quota pause: a run stopped by quota records resume_after (next quota
      reset); get_resumable_syncs finds those whose reset has passed

Usage:
    tracker = SyncProgressTracker(async_session_factory, user_id)
    await tracker.start(total=0)
    await tracker.set_phase(SyncPhase.FETCHING_SUBSCRIPTIONS, "Fetching subscriptions...")
    ...
    await tracker.complete("Imported 42 channels")
"""

import math
import uuid
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.exceptions import InvalidPhaseTransitionError
from subsync.models import PHASE_TRANSITIONS, SyncPhase, SyncProgress, as_utc, utcnow
from subsync.schemas.sync import SyncError, SyncEta, SyncProgressData, SyncStats
from subsync.services.sync_lock import SyncLockManager
from subsync.utils.logging import get_logger

log = get_logger(__name__)

STALE_WINDOW = timedelta(minutes=5)
PROGRESS_RETENTION = 10

ETA_MIN_CHANNELS = 3
ETA_MAX_AVERAGE_SECONDS = 300
ETA_SAFETY_MARGIN = 1.1

ACTIVE_PHASES = tuple(phase for phase in SyncPhase if phase.is_active)


class SyncProgressTracker:
    """Single-writer progress state machine for one sync run.

    Args:
        session_factory: Factory for the tracker's own short transactions.
        user_id: Owner of the run.
        sync_id: Progress row id; generated when omitted.
        persist_every: Persist channel_processed/channel_failed every N
            channels (phase changes and terminal states always persist).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_id: UUID,
        sync_id: UUID | None = None,
        persist_every: int = 1,
    ) -> None:
        now = utcnow()
        self._session_factory = session_factory
        self._persist_every = max(1, persist_every)
        self.progress = SyncProgressData(
            sync_id=sync_id or uuid.uuid4(),
            user_id=user_id,
            started_at=now,
            updated_at=now,
        )
        self.log = log.bind(user_id=str(user_id), sync_id=str(self.progress.sync_id))

    @property
    def sync_id(self) -> UUID:
        return self.progress.sync_id

    @property
    def phase(self) -> SyncPhase:
        return self.progress.phase

    async def start(self, total: int = 0, message: str = "Starting sync...") -> None:
        """Begin a new run. Resets every counter regardless of the previous phase."""
        now = utcnow()
        self.progress = SyncProgressData(
            sync_id=self.progress.sync_id,
            user_id=self.progress.user_id,
            phase=SyncPhase.STARTING,
            message=message,
            total=max(0, total),
            started_at=now,
            updated_at=now,
        )
        self.log.info("sync_progress_started", total=total)
        await self.persist()

    async def set_phase(self, phase: SyncPhase, message: str | None = None) -> None:
        """Move to ``phase``.

        Raises:
            InvalidPhaseTransitionError: If PHASE_TRANSITIONS forbids it.
        """
        self._transition(phase)
        if message is not None:
            self.progress.message = message
        self.log.info("sync_phase_changed", phase=phase.value)
        await self.persist()

    async def update_progress(
        self,
        current: int | None = None,
        current_item: str | None = None,
        message: str | None = None,
    ) -> None:
        """Update the position label.

        Once any channel has been counted, ``current`` comes from the
        counters and the argument is ignored. Before that (e.g. while
        paging subscriptions) the argument is clamped into [0, total].
        """
        if current is not None and self._counted() == 0:
            upper = self.progress.total if self.progress.total > 0 else max(current, 0)
            self.progress.current = min(max(current, 0), upper)
        if current_item is not None:
            self.progress.current_item = current_item
        if message is not None:
            self.progress.message = message
        await self.persist()

    async def set_total(self, total: int) -> None:
        self.progress.total = max(0, total)
        self._recompute_current()
        await self.persist()

    async def set_queued_channels(self, channel_ids: list[str]) -> None:
        """Record the channels this run will process and reset the processed list."""
        self.progress.queued_channel_ids = list(channel_ids)
        self.progress.processed_channel_ids = []
        await self.persist()

    async def channel_processed(
        self,
        videos_added: int = 0,
        channel_id: str | None = None,
        channel_name: str | None = None,
    ) -> None:
        stats = self.progress.stats
        stats.channels_processed += 1
        stats.videos_added += max(0, videos_added)
        if channel_id is not None:
            if self.progress.processed_channel_ids is None:
                self.progress.processed_channel_ids = []
            self.progress.processed_channel_ids.append(channel_id)
        if channel_name is not None:
            self.progress.current_item = channel_name
        self._recompute_current()
        await self._persist_periodically()

    async def channel_failed(
        self,
        code: str,
        message: str,
        channel_id: str | None = None,
        channel_name: str | None = None,
    ) -> None:
        self.progress.stats.channels_failed += 1
        self.progress.errors.append(
            SyncError(
                code=code,
                message=message,
                channel_id=channel_id,
                channel_name=channel_name,
                timestamp=utcnow(),
            )
        )
        if channel_name is not None:
            self.progress.current_item = channel_name
        self._recompute_current()
        await self._persist_periodically()

    def add_quota_usage(self, units: int) -> None:
        """Accumulate quota spend; written with the next persisted change."""
        self.progress.stats.quota_used += max(0, units)

    def pause_for_quota(self, resume_after: datetime) -> None:
        """Mark the run as stopped by quota; written with the next persisted change."""
        self.progress.paused_for_quota = True
        self.progress.resume_after = resume_after
        self.log.info("sync_paused_for_quota", resume_after=resume_after.isoformat())

    async def complete(self, message: str | None = None) -> None:
        self._transition(SyncPhase.COMPLETE)
        self.progress.message = message or "Sync complete"
        self.progress.current_item = None
        self.progress.completed_at = utcnow()
        self.log.info(
            "sync_progress_complete",
            channels_processed=self.progress.stats.channels_processed,
            channels_failed=self.progress.stats.channels_failed,
            videos_added=self.progress.stats.videos_added,
            quota_used=self.progress.stats.quota_used,
        )
        await self.persist()

    async def error(self, message: str) -> None:
        """Terminate the run as failed. A no-op if the run already ended."""
        if self.progress.phase.is_terminal:
            self.log.warning(
                "sync_progress_error_after_terminal",
                phase=self.progress.phase.value,
                message=message[:200],
            )
            return
        self._transition(SyncPhase.ERROR)
        self.progress.message = message
        self.progress.completed_at = utcnow()
        self.log.error("sync_progress_error", message=message[:500])
        await self.persist()

    def remaining_channel_ids(self) -> list[str]:
        """Queued channels not yet processed successfully (for resume)."""
        return remaining_channel_ids(self.progress)

    async def persist(self) -> bool:
        """Write the current state. Never raises for database errors.

        Returns:
            True if the row was written.
        """
        self.progress.updated_at = utcnow()
        try:
            async with self._session_factory() as db:
                row = await db.get(SyncProgress, self.progress.sync_id)
                if row is None:
                    row = SyncProgress(id=self.progress.sync_id, user_id=self.progress.user_id)
                    db.add(row)
                _apply(row, self.progress)
                await db.commit()
        except SQLAlchemyError as e:
            self.log.error("sync_progress_persist_failed", error=str(e))
            return False
        return True

    def _transition(self, phase: SyncPhase) -> None:
        current = self.progress.phase
        if phase not in PHASE_TRANSITIONS[current]:
            raise InvalidPhaseTransitionError(
                f"Invalid phase transition: {current.value} → {phase.value}",
                from_phase=current,
                to_phase=phase,
            )
        self.progress.phase = phase

    def _counted(self) -> int:
        return self.progress.stats.channels_processed + self.progress.stats.channels_failed

    def _recompute_current(self) -> None:
        counted = self._counted()
        total = self.progress.total
        self.progress.current = min(counted, total) if total > 0 else counted

    async def _persist_periodically(self) -> None:
        counted = self._counted()
        if counted % self._persist_every == 0 or counted >= self.progress.total:
            await self.persist()


def _apply(row: SyncProgress, data: SyncProgressData) -> None:
    row.phase = data.phase
    row.message = data.message
    row.current = data.current
    row.total = data.total
    row.current_item = data.current_item
    row.errors = [error.model_dump(mode="json") for error in data.errors]
    row.channels_processed = data.stats.channels_processed
    row.channels_failed = data.stats.channels_failed
    row.videos_added = data.stats.videos_added
    row.quota_used = data.stats.quota_used
    row.queued_channel_ids = (
        list(data.queued_channel_ids) if data.queued_channel_ids is not None else None
    )
    row.processed_channel_ids = (
        list(data.processed_channel_ids) if data.processed_channel_ids is not None else None
    )
    row.paused_for_quota = data.paused_for_quota
    row.resume_after = data.resume_after
    row.started_at = data.started_at
    row.updated_at = data.updated_at
    row.completed_at = data.completed_at


def progress_from_row(row: SyncProgress) -> SyncProgressData:
    return SyncProgressData(
        sync_id=row.id,
        user_id=row.user_id,
        phase=row.phase,
        message=row.message,
        current=row.current,
        total=row.total,
        current_item=row.current_item,
        errors=[SyncError.model_validate(error) for error in row.errors or []],
        stats=SyncStats(
            channels_processed=row.channels_processed,
            channels_failed=row.channels_failed,
            videos_added=row.videos_added,
            quota_used=row.quota_used,
        ),
        queued_channel_ids=row.queued_channel_ids,
        processed_channel_ids=row.processed_channel_ids,
        paused_for_quota=row.paused_for_quota,
        resume_after=as_utc(row.resume_after),
        started_at=as_utc(row.started_at),
        updated_at=as_utc(row.updated_at),
        completed_at=as_utc(row.completed_at),
    )


def remaining_channel_ids(progress: SyncProgressData) -> list[str]:
    processed = set(progress.processed_channel_ids or [])
    return [cid for cid in progress.queued_channel_ids or [] if cid not in processed]


async def get_current_sync_progress(
    db: AsyncSession, user_id: UUID
) -> SyncProgressData | None:
    """Return the user's most recently updated progress row."""
    row = (
        await db.execute(
            select(SyncProgress)
            .where(SyncProgress.user_id == user_id)
            .order_by(SyncProgress.updated_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    return progress_from_row(row) if row else None


async def get_sync_progress(
    db: AsyncSession, user_id: UUID, sync_id: UUID
) -> SyncProgressData | None:
    row = (
        await db.execute(
            select(SyncProgress).where(
                SyncProgress.id == sync_id, SyncProgress.user_id == user_id
            )
        )
    ).scalar_one_or_none()
    return progress_from_row(row) if row else None


def is_stale(progress: SyncProgressData, now: datetime | None = None) -> bool:
    """True if the run has not written progress within STALE_WINDOW."""
    return (now or utcnow()) - progress.updated_at > STALE_WINDOW


async def is_sync_in_progress(
    db: AsyncSession,
    user_id: UUID,
    lock_manager: SyncLockManager,
    now: datetime | None = None,
) -> bool:
    """Decide whether the user has a running sync.

    The lock table is authoritative. Only if it cannot be read does the
    check fall back to the latest progress row: an active phase that was
    updated within STALE_WINDOW counts as running.
    """
    live = await lock_manager.has_live_lock(user_id)
    if live is not None:
        return live

    progress = await get_current_sync_progress(db, user_id)
    if progress is None or is_stale(progress, now):
        return False
    return progress.phase.is_active


def estimate_eta(progress: SyncProgressData, now: datetime | None = None) -> SyncEta | None:
    """Estimate time to completion from the average time per processed channel.

    Returns None until ETA_MIN_CHANNELS channels have been processed. The
    per-channel average is capped at ETA_MAX_AVERAGE_SECONDS so one slow
    channel cannot dominate, and the result carries a 10% margin.
    """
    processed = progress.stats.channels_processed
    if processed < ETA_MIN_CHANNELS:
        return None

    now = now or utcnow()
    elapsed = max(0.0, (now - progress.started_at).total_seconds())
    average = min(elapsed / processed, ETA_MAX_AVERAGE_SECONDS)
    remaining = max(0, progress.total - progress.current)
    seconds = math.ceil(round(average * remaining * ETA_SAFETY_MARGIN, 2))

    return SyncEta(
        estimated_seconds_remaining=seconds,
        estimated_completion_time=now + timedelta(seconds=seconds),
        average_channel_time_seconds=math.ceil(average),
    )


async def cleanup_old_sync_progress(
    db: AsyncSession, user_id: UUID, keep: int = PROGRESS_RETENTION
) -> int:
    """Delete all but the ``keep`` most recent progress rows for a user.

    Returns:
        Number of rows deleted.
    """
    stale_ids = (
        await db.execute(
            select(SyncProgress.id)
            .where(SyncProgress.user_id == user_id)
            .order_by(SyncProgress.updated_at.desc())
            .offset(keep)
        )
    ).scalars().all()

    if not stale_ids:
        return 0

    await db.execute(delete(SyncProgress).where(SyncProgress.id.in_(stale_ids)))
    await db.commit()

    log.info("sync_progress_cleaned", user_id=user_id, deleted=len(stale_ids))
    return len(stale_ids)


async def cleanup_all_sync_progress(db: AsyncSession, keep: int = PROGRESS_RETENTION) -> int:
    """Apply cleanup_old_sync_progress to every user with progress rows."""
    user_ids = (await db.execute(select(SyncProgress.user_id).distinct())).scalars().all()
    deleted = 0
    for user_id in user_ids:
        deleted += await cleanup_old_sync_progress(db, user_id, keep)
    return deleted


async def mark_active_progress_cancelled(
    db: AsyncSession,
    user_id: UUID,
    message: str = "Sync was manually cancelled",
) -> int:
    """Move the user's non-terminal progress rows to ``error``.

    Used by the manual lock clear so pollers stop showing a run that no
    longer holds a lock.
    """
    now = utcnow()
    result = await db.execute(
        update(SyncProgress)
        .where(SyncProgress.user_id == user_id, SyncProgress.phase.in_(ACTIVE_PHASES))
        .values(phase=SyncPhase.ERROR, message=message, completed_at=now, updated_at=now)
    )
    await db.commit()
    return result.rowcount


async def get_resumable_syncs(
    db: AsyncSession, now: datetime | None = None
) -> list[SyncProgressData]:
    """Runs paused for quota whose resume time has passed, oldest first."""
    rows = (
        await db.execute(
            select(SyncProgress)
            .where(
                SyncProgress.paused_for_quota.is_(True),
                SyncProgress.resume_after <= (now or utcnow()),
            )
            .order_by(SyncProgress.resume_after.asc())
        )
    ).scalars().all()
    return [progress_from_row(row) for row in rows]


async def clear_quota_pause(db: AsyncSession, sync_id: UUID) -> bool:
    """Drop the paused marker so the run is reported as resumable only once.

    Returns:
        True if the run was still marked paused.
    """
    result = await db.execute(
        update(SyncProgress)
        .where(SyncProgress.id == sync_id, SyncProgress.paused_for_quota.is_(True))
        .values(paused_for_quota=False, resume_after=None)
    )
    await db.commit()
    return result.rowcount > 0
