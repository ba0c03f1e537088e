"""Scheduler process for the periodic maintenance jobs.

Alternative to an external cron hitting /api/v1/cron/*: a long-running
process that runs each job on its own interval.

Jobs:
    retry_dead_channels     every SCHEDULER_DEAD_CHANNEL_INTERVAL_HOURS (24)
    update_activity_levels  every SCHEDULER_ACTIVITY_INTERVAL_HOURS (168)
    cleanup_progress        every SCHEDULER_PROGRESS_CLEANUP_INTERVAL_HOURS (24)
    refresh_high            every SCHEDULER_REFRESH_HIGH_INTERVAL_HOURS (2)
    refresh_medium          every SCHEDULER_REFRESH_MEDIUM_INTERVAL_HOURS (6)
    refresh_low             every SCHEDULER_REFRESH_LOW_INTERVAL_HOURS (24)
    resume_paused_syncs     every SCHEDULER_RESUME_PAUSED_INTERVAL_HOURS (1)

Every job runs once at startup, then on its interval.

Architecture Pattern:
    - Separate Process: runs independently of the API service
    - Short Transactions: each job opens its own sessions
    - Job Isolation: a failing job is logged and rescheduled; others keep running
    - Graceful Shutdown: SIGTERM/SIGINT set a flag checked between jobs

Usage:
    python -m subsync.scheduler
"""

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from aiolimiter import AsyncLimiter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.clients.youtube import YouTubeClient
from subsync.config import (
    get_database_url,
    get_scheduler_intervals,
    get_youtube_api_key,
    get_youtube_requests_per_second,
)
from subsync.database import async_session_factory, engine
from subsync.models import ActivityLevel, utcnow
from subsync.services.channel_health import update_channel_activity_levels
from subsync.services.channel_refresh import refresh_channels
from subsync.services.dead_channel_retry import run_dead_channel_retry
from subsync.services.sync_alerts import notify_resumable_syncs
from subsync.services.sync_progress import cleanup_all_sync_progress
from subsync.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

# Shutdown flag (set by SIGTERM handler)
shutdown_requested = False

POLL_SECONDS = 30


@dataclass
class ScheduledJob:
    name: str
    interval: timedelta
    run: Callable[[], Awaitable[dict[str, Any]]]
    next_run_at: datetime


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT: finish the current job, then exit."""
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


def build_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: AsyncLimiter,
    now: datetime | None = None,
) -> list[ScheduledJob]:
    intervals = get_scheduler_intervals()
    start = now or utcnow()

    async def retry_dead_channels() -> dict[str, Any]:
        api_key = get_youtube_api_key()
        if not api_key:
            log.warning("dead_channel_retry_skipped", reason="YOUTUBE_API_KEY not configured")
            return {"skipped": True}
        async with YouTubeClient(api_key=api_key, rate_limiter=rate_limiter) as client:
            report = await run_dead_channel_retry(session_factory, client)
        return report.to_dict()

    def refresh(activity_level: ActivityLevel) -> Callable[[], Awaitable[dict[str, Any]]]:
        async def run() -> dict[str, Any]:
            api_key = get_youtube_api_key()
            if not api_key:
                log.warning(
                    "channel_refresh_skipped",
                    activity_level=activity_level.value,
                    reason="YOUTUBE_API_KEY not configured",
                )
                return {"skipped": True}
            async with YouTubeClient(api_key=api_key, rate_limiter=rate_limiter) as client:
                report = await refresh_channels(session_factory, client, activity_level)
            return report.to_dict()

        return run

    async def update_activity_levels() -> dict[str, Any]:
        async with session_factory() as db:
            stats = await update_channel_activity_levels(db)
        return stats.to_dict()

    async def cleanup_progress() -> dict[str, Any]:
        async with session_factory() as db:
            deleted = await cleanup_all_sync_progress(db)
        return {"deleted": deleted}

    async def resume_paused_syncs() -> dict[str, Any]:
        async with session_factory() as db:
            notified = await notify_resumable_syncs(db)
        return {"notified": notified}

    runners = {
        "retry_dead_channels": retry_dead_channels,
        "update_activity_levels": update_activity_levels,
        "cleanup_progress": cleanup_progress,
        "refresh_high": refresh(ActivityLevel.HIGH),
        "refresh_medium": refresh(ActivityLevel.MEDIUM),
        "refresh_low": refresh(ActivityLevel.LOW),
        "resume_paused_syncs": resume_paused_syncs,
    }
    return [
        ScheduledJob(
            name=name,
            interval=timedelta(hours=intervals[name]),
            run=runner,
            next_run_at=start,
        )
        for name, runner in runners.items()
    ]


async def run_due_jobs(jobs: list[ScheduledJob], now: datetime | None = None) -> list[str]:
    """Run every job whose next_run_at has passed.

    Error Handling:
        - Catches all exceptions per job so one failing job cannot stop the scheduler
        - A failed job is rescheduled on its normal interval

    Returns:
        Names of the jobs that ran.
    """
    now = now or utcnow()
    ran = []
    for job in jobs:
        if shutdown_requested:
            break
        if job.next_run_at > now:
            continue

        log.info("scheduled_job_started", job=job.name)
        try:
            result = await job.run()
            log.info("scheduled_job_complete", job=job.name, result=result)
        except Exception as e:
            log.error(
                "scheduled_job_failed",
                job=job.name,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            job.next_run_at = now + job.interval
            ran.append(job.name)
    return ran


async def scheduler_main_loop(poll_seconds: int = POLL_SECONDS) -> None:
    if async_session_factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")

    rate_limiter = AsyncLimiter(max_rate=get_youtube_requests_per_second(), time_period=1)
    jobs = build_jobs(async_session_factory, rate_limiter)
    log.info("scheduler_started", jobs=[job.name for job in jobs])

    while not shutdown_requested:
        await run_due_jobs(jobs)
        for _ in range(poll_seconds):
            if shutdown_requested:
                break
            await asyncio.sleep(1)

    log.info("scheduler_stopped")


async def shutdown_scheduler() -> None:
    if engine is not None:
        await engine.dispose()
        log.info("sqlalchemy_engine_closed")


def main() -> None:
    """Scheduler process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    configure_logging()

    try:
        get_database_url()
    except ValueError as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)  # Also handle Ctrl+C for local dev

    exit_code = 0
    try:
        asyncio.run(scheduler_main_loop())
    except Exception as e:
        log.error("scheduler_fatal_error", error=str(e), error_type=type(e).__name__)
        exit_code = 1
    finally:
        asyncio.run(shutdown_scheduler())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
