"""Tests for the maintenance scheduler process.

This test module covers:
- Job construction and intervals
- Due-job selection and rescheduling
- Job isolation (one failing job does not stop the others)
- Graceful shutdown flag
- Job bodies against an in-memory database
"""

import signal
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiolimiter import AsyncLimiter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync import scheduler
from subsync.scheduler import ScheduledJob, build_jobs, run_due_jobs
from subsync.models import ActivityLevel
from subsync.services.channel_refresh import RefreshReport
from subsync.services.dead_channel_retry import RetryReport

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_shutdown_flag(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(scheduler, "shutdown_requested", False)


def make_job(name: str, run: AsyncMock, next_run_at: datetime = NOW) -> ScheduledJob:
    return ScheduledJob(name=name, interval=timedelta(hours=24), run=run, next_run_at=next_run_at)


def jobs_by_name(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, ScheduledJob]:
    jobs = build_jobs(session_factory, AsyncLimiter(1000, 1), now=NOW)
    return {job.name: job for job in jobs}


class TestBuildJobs:
    def test_all_jobs_due_at_startup(self) -> None:
        jobs = jobs_by_name(MagicMock())

        assert set(jobs) == {
            "retry_dead_channels",
            "update_activity_levels",
            "cleanup_progress",
            "refresh_high",
            "refresh_medium",
            "refresh_low",
            "resume_paused_syncs",
        }
        assert all(job.next_run_at == NOW for job in jobs.values())
        assert jobs["retry_dead_channels"].interval == timedelta(hours=24)
        assert jobs["update_activity_levels"].interval == timedelta(hours=168)
        assert jobs["refresh_high"].interval == timedelta(hours=2)
        assert jobs["refresh_medium"].interval == timedelta(hours=6)
        assert jobs["refresh_low"].interval == timedelta(hours=24)
        assert jobs["resume_paused_syncs"].interval == timedelta(hours=1)

    def test_interval_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCHEDULER_PROGRESS_CLEANUP_INTERVAL_HOURS", "6")

        jobs = jobs_by_name(MagicMock())

        assert jobs["cleanup_progress"].interval == timedelta(hours=6)


class TestRunDueJobs:
    async def test_runs_due_jobs_and_reschedules(self) -> None:
        due = make_job("due", AsyncMock(return_value={"ok": True}))
        later = make_job("later", AsyncMock(), next_run_at=NOW + timedelta(hours=1))

        ran = await run_due_jobs([due, later], now=NOW)

        assert ran == ["due"]
        due.run.assert_awaited_once()
        later.run.assert_not_awaited()
        assert due.next_run_at == NOW + timedelta(hours=24)

    async def test_failing_job_is_isolated(self) -> None:
        """
        GIVEN: Two due jobs, the first of which raises
        WHEN: The scheduler runs due jobs
        THEN: The second still runs and both are rescheduled
        """
        failing = make_job("failing", AsyncMock(side_effect=RuntimeError("database down")))
        healthy = make_job("healthy", AsyncMock(return_value={}))

        ran = await run_due_jobs([failing, healthy], now=NOW)

        assert ran == ["failing", "healthy"]
        healthy.run.assert_awaited_once()
        assert failing.next_run_at == NOW + timedelta(hours=24)

    async def test_shutdown_stops_before_next_job(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(scheduler, "shutdown_requested", True)
        job = make_job("due", AsyncMock())

        assert await run_due_jobs([job], now=NOW) == []
        job.run.assert_not_awaited()


class TestSignalHandling:
    def test_signal_handler_sets_shutdown_flag(self) -> None:
        scheduler.signal_handler(signal.SIGTERM, None)

        assert scheduler.shutdown_requested is True


class TestJobBodies:
    async def test_retry_skipped_without_api_key(self) -> None:
        jobs = jobs_by_name(MagicMock())

        assert await jobs["retry_dead_channels"].run() == {"skipped": True}
        assert await jobs["refresh_high"].run() == {"skipped": True}

    async def test_cleanup_and_activity_jobs_on_empty_database(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        jobs = jobs_by_name(session_factory)

        assert await jobs["cleanup_progress"].run() == {"deleted": 0}
        assert await jobs["resume_paused_syncs"].run() == {"notified": 0}
        stats = await jobs["update_activity_levels"].run()
        assert stats["updated"] == 0

    async def test_retry_runs_with_api_key_client(
        self, mocker, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("YOUTUBE_API_KEY", "project-key")
        mock_run = mocker.patch(
            "subsync.scheduler.run_dead_channel_retry",
            new_callable=AsyncMock,
            return_value=RetryReport(channels_checked=2, recovered=1),
        )
        jobs = jobs_by_name(MagicMock())

        result = await jobs["retry_dead_channels"].run()

        assert result["channels_checked"] == 2
        client = mock_run.call_args.args[1]
        assert client.api_key == "project-key"
        assert client.access_token is None

    async def test_refresh_jobs_pass_their_tier(
        self, mocker, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("YOUTUBE_API_KEY", "project-key")
        mock_refresh = mocker.patch(
            "subsync.scheduler.refresh_channels",
            new_callable=AsyncMock,
            return_value=RefreshReport(activity_level="medium", channels_processed=3),
        )
        jobs = jobs_by_name(MagicMock())

        result = await jobs["refresh_medium"].run()

        assert result["channels_processed"] == 3
        assert mock_refresh.call_args.args[2] is ActivityLevel.MEDIUM
        assert mock_refresh.call_args.args[1].api_key == "project-key"
