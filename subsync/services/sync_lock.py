"""Per-user sync lock with expiry-based crash recovery and cooperative cancellation.

A sync can be triggered concurrently from several surfaces (manual UI
action, scheduled job, browser extension). The lock serializes runs per user
while letting different users sync in parallel.

Architecture Pattern:
    - Storage-enforced exclusivity: sync_locks.user_id is UNIQUE, so of two
      concurrent inserts exactly one commits; the loser gets IntegrityError
      and acquire() returns None (no blocking wait)
    - Lazy crash recovery: acquire() first deletes this user's expired lock
    - Heartbeat: long runs push expires_at forward via CancellationToken
    - Cooperative cancellation: request_cancellation() sets a flag that the
      run polls at per-channel boundaries through its CancellationToken
    - Forced release: a supervising timer task deletes the lock if the run
      never observes the flag
    - Short transactions: every operation opens and commits its own session

Usage:
    locks = SyncLockManager(async_session_factory)

    async with locks.hold(user_id) as lock_id:
        if lock_id is None:
            return 409
        token = locks.cancellation_token(user_id, lock_id)
        ...
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.models import SyncLock, as_utc, utcnow
from subsync.utils.logging import get_logger

log = get_logger(__name__)

LOCK_TIMEOUT = timedelta(minutes=30)
HEARTBEAT_INTERVAL = timedelta(minutes=5)


@dataclass(frozen=True)
class LockStatus:
    """What the lock table says about a user, for stuck-lock inspection."""

    has_lock: bool
    is_expired: bool = False
    cancelled: bool = False
    lock_id: UUID | None = None
    locked_at: datetime | None = None
    expires_at: datetime | None = None


class SyncLockManager:
    """Acquire, heartbeat, cancel and release per-user sync locks.

    One instance is shared by the application (held on app.state); it keeps
    references to pending forced-release tasks so they are not garbage
    collected before they fire.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: timedelta = LOCK_TIMEOUT,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout
        self._release_tasks: set[asyncio.Task[None]] = set()

    async def acquire(self, user_id: UUID) -> UUID | None:
        """Try to take the user's lock.

        Returns:
            New lock id, or None if a live lock already exists.
        """
        now = utcnow()
        lock_id = uuid.uuid4()

        async with self._session_factory() as db:
            await db.execute(
                delete(SyncLock).where(SyncLock.user_id == user_id, SyncLock.expires_at < now)
            )
            db.add(
                SyncLock(
                    id=lock_id,
                    user_id=user_id,
                    locked_at=now,
                    expires_at=now + self._timeout,
                    cancelled=False,
                )
            )
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                log.info("sync_lock_busy", user_id=user_id, detail=str(e.orig)[:200])
                return None

        log.info("sync_lock_acquired", user_id=user_id, lock_id=lock_id)
        return lock_id

    async def release(self, user_id: UUID, lock_id: UUID | None = None) -> bool:
        """Delete the user's lock.

        With ``lock_id`` only that specific lock is removed, so a slow caller
        whose lock expired and was re-acquired by someone else cannot release
        the newer lock.

        Returns:
            True if a lock row was deleted.
        """
        stmt = delete(SyncLock).where(SyncLock.user_id == user_id)
        if lock_id is not None:
            stmt = stmt.where(SyncLock.id == lock_id)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        released = result.rowcount > 0
        log.info("sync_lock_released", user_id=user_id, lock_id=lock_id, released=released)
        return released

    async def extend(self, user_id: UUID, lock_id: UUID) -> bool:
        """Push the lock's expiry to now + timeout.

        Returns:
            False if the lock no longer exists (released or superseded).
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(SyncLock)
                .where(SyncLock.user_id == user_id, SyncLock.id == lock_id)
                .values(expires_at=utcnow() + self._timeout)
            )
            await db.commit()

        extended = result.rowcount > 0
        log.debug("sync_lock_extended", user_id=user_id, lock_id=lock_id, extended=extended)
        return extended

    async def request_cancellation(self, user_id: UUID) -> bool:
        """Flag the user's running sync for cooperative cancellation.

        Returns:
            False if the user has no lock.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(SyncLock).where(SyncLock.user_id == user_id).values(cancelled=True)
            )
            await db.commit()

        requested = result.rowcount > 0
        log.info("sync_cancellation_requested", user_id=user_id, requested=requested)
        return requested

    async def is_cancelled(self, user_id: UUID, lock_id: UUID) -> bool:
        """Poll the cancellation flag.

        Fails safe: a missing lock row (released, force-cleared, superseded)
        or a database error both read as cancelled, so a run can never keep
        going without a lock.
        """
        try:
            async with self._session_factory() as db:
                cancelled = (
                    await db.execute(
                        select(SyncLock.cancelled).where(
                            SyncLock.user_id == user_id, SyncLock.id == lock_id
                        )
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            log.error("sync_lock_cancel_check_failed", user_id=user_id, error=str(e))
            return True

        if cancelled is None:
            log.warning("sync_lock_missing_during_run", user_id=user_id, lock_id=lock_id)
            return True
        return cancelled

    async def get_status(self, user_id: UUID) -> LockStatus:
        async with self._session_factory() as db:
            lock = (
                await db.execute(select(SyncLock).where(SyncLock.user_id == user_id))
            ).scalar_one_or_none()

        if lock is None:
            return LockStatus(has_lock=False)

        expires_at = as_utc(lock.expires_at)
        return LockStatus(
            has_lock=True,
            is_expired=expires_at is not None and expires_at < utcnow(),
            cancelled=lock.cancelled,
            lock_id=lock.id,
            locked_at=as_utc(lock.locked_at),
            expires_at=expires_at,
        )

    async def has_live_lock(self, user_id: UUID) -> bool | None:
        """Authoritative in-progress check.

        Returns:
            True for a live lock, False when the lock table says no run is
            active (an expired lock is deleted on the way), or None when the
            lock table could not be read.
        """
        try:
            status = await self.get_status(user_id)
            if status.has_lock and status.is_expired:
                await self.release(user_id, status.lock_id)
                return False
        except SQLAlchemyError as e:
            log.error("sync_lock_status_failed", user_id=user_id, error=str(e))
            return None
        return status.has_lock

    def schedule_forced_release(
        self,
        user_id: UUID,
        lock_id: UUID | None,
        delay_seconds: float,
    ) -> asyncio.Task[None]:
        """Start a supervising timer that deletes the lock after ``delay_seconds``.

        Only ``lock_id`` is released, so a new run that started after the
        cancelled one is left alone.
        """
        task = asyncio.create_task(self._forced_release(user_id, lock_id, delay_seconds))
        self._release_tasks.add(task)
        task.add_done_callback(self._release_tasks.discard)
        return task

    async def _forced_release(
        self, user_id: UUID, lock_id: UUID | None, delay_seconds: float
    ) -> None:
        await asyncio.sleep(delay_seconds)
        try:
            released = await self.release(user_id, lock_id)
        except SQLAlchemyError as e:
            log.error("sync_lock_forced_release_failed", user_id=user_id, error=str(e))
            return
        if released:
            log.warning("sync_lock_force_released", user_id=user_id, lock_id=lock_id)

    async def shutdown(self) -> None:
        """Cancel pending forced-release timers (application shutdown)."""
        for task in list(self._release_tasks):
            task.cancel()
        if self._release_tasks:
            await asyncio.gather(*self._release_tasks, return_exceptions=True)

    @asynccontextmanager
    async def hold(self, user_id: UUID) -> AsyncIterator[UUID | None]:
        """Scoped acquisition: yields the lock id (or None if busy), always releases.

        Release runs on every exit path, including unexpected exceptions and
        task cancellation.
        """
        lock_id = await self.acquire(user_id)
        try:
            yield lock_id
        finally:
            if lock_id is not None:
                try:
                    await self.release(user_id, lock_id)
                except SQLAlchemyError as e:
                    # Expiry still frees the lock after LOCK_TIMEOUT
                    log.error("sync_lock_release_failed", user_id=user_id, error=str(e))

    def cancellation_token(self, user_id: UUID, lock_id: UUID) -> "CancellationToken":
        return CancellationToken(self, user_id, lock_id)


class CancellationToken:
    """Cancellation and heartbeat context for one run.

    Passed down the orchestrator's call chain and checked at per-channel
    boundaries. Once cancellation is observed it stays observed.
    """

    def __init__(
        self,
        lock_manager: SyncLockManager,
        user_id: UUID,
        lock_id: UUID,
        heartbeat_interval: timedelta = HEARTBEAT_INTERVAL,
    ) -> None:
        self.user_id = user_id
        self.lock_id = lock_id
        self._lock_manager = lock_manager
        self._heartbeat_interval = heartbeat_interval
        self._last_heartbeat = utcnow()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel locally, e.g. on process shutdown."""
        self._cancelled = True

    async def is_cancelled(self) -> bool:
        if not self._cancelled:
            self._cancelled = await self._lock_manager.is_cancelled(self.user_id, self.lock_id)
        return self._cancelled

    async def heartbeat(self, force: bool = False) -> bool:
        """Extend the lock if the heartbeat interval has elapsed.

        Returns:
            False if the lock is gone; the token is then marked cancelled.
        """
        if not force and utcnow() - self._last_heartbeat < self._heartbeat_interval:
            return True

        extended = await self._lock_manager.extend(self.user_id, self.lock_id)
        self._last_heartbeat = utcnow()
        if not extended:
            self._cancelled = True
        return extended
