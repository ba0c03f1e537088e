"""Tests for the scheduled dead-channel retry job."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.exceptions import YouTubeErrorCode
from subsync.models import Channel, HealthStatus, SyncHistory, Video
from subsync.services.dead_channel_retry import (
    PLAYLIST_REFRESHED_REASON,
    DeadChannelRetryJob,
    get_dead_channels_for_retry,
    is_eligible_for_retry,
    retry_backoff_hours,
    run_dead_channel_retry,
)
from subsync.services.quota_manager import get_quota_status
from tests.support.factories import (
    BASE_TIME,
    FakeVideoProvider,
    create_channel,
    create_channel_details,
    create_dead_channel,
    create_videos,
    save_channel,
    youtube_error,
)


async def load_channel(
    session_factory: async_sessionmaker[AsyncSession], youtube_id: str
) -> Channel:
    async with session_factory() as db:
        return (
            await db.execute(select(Channel).where(Channel.youtube_id == youtube_id))
        ).scalar_one()


class TestBackoff:
    @pytest.mark.parametrize(
        ("failures", "hours"),
        [(10, 24), (11, 48), (12, 96), (13, 192), (30, 192)],
    )
    def test_backoff_doubles_up_to_cap(self, failures: int, hours: int) -> None:
        assert retry_backoff_hours(failures) == hours

    def test_eligibility_follows_backoff(self) -> None:
        """
        GIVEN: Dead channels that last failed 25 hours ago
        WHEN: Checking eligibility
        THEN: 10 failures (24h wait) is due, 11 failures (48h wait) is not
        """
        last_failure = BASE_TIME - timedelta(hours=25)

        due = create_dead_channel(consecutive_failures=10, last_failure_at=last_failure)
        waiting = create_dead_channel(consecutive_failures=11, last_failure_at=last_failure)

        assert is_eligible_for_retry(due, BASE_TIME)
        assert not is_eligible_for_retry(waiting, BASE_TIME)

    def test_never_failed_timestamp_is_due(self) -> None:
        assert is_eligible_for_retry(create_dead_channel(last_failure_at=None), BASE_TIME)


class TestGetDeadChannelsForRetry:
    async def test_selects_due_dead_channels_oldest_first(
        self, async_session: AsyncSession
    ) -> None:
        await save_channel(async_session, create_channel("UChealthy"))
        await save_channel(
            async_session,
            create_dead_channel("UCrecent", last_failure_at=BASE_TIME - timedelta(hours=30)),
        )
        await save_channel(
            async_session,
            create_dead_channel("UColder", last_failure_at=BASE_TIME - timedelta(hours=50)),
        )
        await save_channel(
            async_session,
            create_dead_channel(
                "UCbackoff",
                consecutive_failures=12,
                last_failure_at=BASE_TIME - timedelta(hours=50),
            ),
        )

        channels = await get_dead_channels_for_retry(async_session, now=BASE_TIME)

        assert [c.youtube_id for c in channels] == ["UColder", "UCrecent"]

    async def test_batch_limit(self, async_session: AsyncSession) -> None:
        for _ in range(3):
            await save_channel(async_session, create_dead_channel())

        channels = await get_dead_channels_for_retry(async_session, limit=2)

        assert len(channels) == 2


class TestDeadChannelRetryJob:
    async def test_recovered_channel_serves_every_subscriber(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        user_id: uuid.UUID,
        other_user_id: uuid.UUID,
    ) -> None:
        """
        GIVEN: A dead channel with two subscribers that now answers again
        WHEN: The retry job runs
        THEN: The channel is healthy, its uploads are stored for both users,
              and no sync history row is written
        """
        await save_channel(async_session, create_dead_channel("UCalpha"), [user_id, other_user_id])
        provider = FakeVideoProvider(videos={"UUalpha": create_videos("a", 3)})

        report = await DeadChannelRetryJob(session_factory, provider).run()

        assert report.channels_checked == 1
        assert report.recovered == 1
        assert report.videos_added == 6
        assert report.quota_used == 2
        assert report.details[0].result == "recovered"
        assert provider.calls_to("list_channel_videos") == [("UUalpha", 10, None)]

        stored = await load_channel(session_factory, "UCalpha")
        assert stored.health_status is HealthStatus.HEALTHY
        assert stored.consecutive_failures == 0
        assert stored.last_fetched_at is not None

        async with session_factory() as db:
            videos = (await db.execute(select(func.count()).select_from(Video))).scalar_one()
            history = (
                await db.execute(select(func.count()).select_from(SyncHistory))
            ).scalar_one()
            quota = await get_quota_status(db)
        assert videos == 6
        assert history == 0
        assert quota.used == 3

    async def test_still_failing_channel_backs_off_further(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await save_channel(async_session, create_dead_channel("UCalpha"))
        provider = FakeVideoProvider(videos={"UUalpha": []})
        provider.fail(
            "list_channel_videos",
            youtube_error(YouTubeErrorCode.PRIVATE_OR_DELETED, "Channel is private"),
        )

        report = await run_dead_channel_retry(session_factory, provider)

        assert report.still_dead == 1
        assert report.details[0].error == "Channel is private"
        stored = await load_channel(session_factory, "UCalpha")
        assert stored.consecutive_failures == 11
        assert stored.health_status is HealthStatus.DEAD
        assert stored.last_failure_reason == "Channel is private"

    async def test_moved_playlist_is_refreshed_for_next_run(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """
        GIVEN: A dead channel whose stored uploads playlist no longer exists
        WHEN: The retry job runs
        THEN: The new playlist is stored and the attempt still counts as a failure
        """
        await save_channel(
            async_session, create_dead_channel("UCalpha", uploads_playlist_id="UUstale")
        )
        provider = FakeVideoProvider(
            channels=[create_channel_details("UCalpha", uploads_playlist_id="UUfresh")]
        )

        report = await DeadChannelRetryJob(session_factory, provider).run()

        assert report.still_dead == 1
        assert report.details[0].error == PLAYLIST_REFRESHED_REASON
        stored = await load_channel(session_factory, "UCalpha")
        assert stored.uploads_playlist_id == "UUfresh"
        assert stored.consecutive_failures == 11

    async def test_deleted_channel(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await save_channel(async_session, create_dead_channel("UCgone"))
        provider = FakeVideoProvider()

        report = await DeadChannelRetryJob(session_factory, provider).run()

        assert report.still_dead == 1
        assert report.details[0].error == "Channel no longer exists on YouTube"

    async def test_skips_everything_without_quota(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("YOUTUBE_DAILY_QUOTA_LIMIT", "2")
        await save_channel(async_session, create_dead_channel("UCalpha"))
        await save_channel(async_session, create_dead_channel("UCbeta"))
        provider = FakeVideoProvider(
            videos={"UUalpha": create_videos("a", 1), "UUbeta": create_videos("b", 1)}
        )

        report = await DeadChannelRetryJob(session_factory, provider).run()

        assert report.channels_checked == 0
        assert report.skipped == 2
        assert provider.calls == []
        assert {d.result for d in report.details} == {"skipped"}

    async def test_provider_quota_error_stops_job(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await save_channel(async_session, create_dead_channel("UCalpha"))
        await save_channel(async_session, create_dead_channel("UCbeta"))
        provider = FakeVideoProvider(
            videos={"UUalpha": create_videos("a", 1), "UUbeta": create_videos("b", 1)}
        )
        provider.fail(
            "list_channel_videos", youtube_error(YouTubeErrorCode.QUOTA_EXCEEDED, "quotaExceeded")
        )

        report = await DeadChannelRetryJob(session_factory, provider).run()

        assert report.channels_checked == 0
        assert report.skipped == 2
        assert len(provider.calls_to("list_channel_videos")) == 1
        assert (await load_channel(session_factory, "UCalpha")).consecutive_failures == 10

    async def test_report_serializes(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        report = await DeadChannelRetryJob(session_factory, FakeVideoProvider()).run()

        data = report.to_dict()

        assert data["channels_checked"] == 0
        assert data["details"] == []
