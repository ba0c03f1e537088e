"""Tests for SQLAlchemy models and the sync phase state machine.

Tests cover:
- PHASE_TRANSITIONS is exhaustive and closed
- Terminal / active phase classification
- Enum columns persist lowercase values
- Unique constraints behind locks, subscriptions and videos
- as_utc normalization of naive timestamps
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.models import (
    PHASE_TRANSITIONS,
    HealthStatus,
    SyncLock,
    SyncPhase,
    UserSubscription,
    Video,
    as_utc,
    utcnow,
)
from tests.support.factories import create_channel, save_channel


class TestPhaseTransitions:
    """Closed state machine for sync runs."""

    def test_every_phase_has_transition_entry(self) -> None:
        """
        GIVEN: The SyncPhase enum
        WHEN: Checking PHASE_TRANSITIONS keys
        THEN: Every phase is present, so no lookup can miss
        """
        assert set(PHASE_TRANSITIONS) == set(SyncPhase)

    def test_targets_are_known_phases(self) -> None:
        for targets in PHASE_TRANSITIONS.values():
            assert targets <= set(SyncPhase)

    def test_terminal_phases_have_no_exits(self) -> None:
        assert PHASE_TRANSITIONS[SyncPhase.COMPLETE] == frozenset()
        assert PHASE_TRANSITIONS[SyncPhase.ERROR] == frozenset()

    @pytest.mark.parametrize("phase", [p for p in SyncPhase if not p.is_terminal])
    def test_error_reachable_from_every_non_terminal_phase(self, phase: SyncPhase) -> None:
        assert SyncPhase.ERROR in PHASE_TRANSITIONS[phase]

    def test_happy_path_is_allowed(self) -> None:
        """
        GIVEN: The documented happy path
        WHEN: Walking it step by step
        THEN: Every step is an allowed transition
        """
        path = [
            SyncPhase.IDLE,
            SyncPhase.STARTING,
            SyncPhase.FETCHING_SUBSCRIPTIONS,
            SyncPhase.FETCHING_CHANNEL_DETAILS,
            SyncPhase.SYNCING_VIDEOS,
            SyncPhase.COMPLETING,
            SyncPhase.COMPLETE,
        ]
        for current, following in zip(path, path[1:]):
            assert following in PHASE_TRANSITIONS[current]

    def test_no_backward_transition_into_fetching_subscriptions(self) -> None:
        assert SyncPhase.FETCHING_SUBSCRIPTIONS not in PHASE_TRANSITIONS[SyncPhase.SYNCING_VIDEOS]

    def test_phase_classification(self) -> None:
        assert SyncPhase.COMPLETE.is_terminal
        assert SyncPhase.ERROR.is_terminal
        assert not SyncPhase.IDLE.is_active
        assert SyncPhase.SYNCING_VIDEOS.is_active
        assert not SyncPhase.COMPLETE.is_active


class TestAsUtc:
    def test_none_passes_through(self) -> None:
        assert as_utc(None) is None

    def test_naive_value_gets_utc(self) -> None:
        value = as_utc(datetime(2026, 1, 1, 12, 0))
        assert value == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_aware_value_unchanged(self) -> None:
        aware = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(aware) is aware

    def test_utcnow_is_aware(self) -> None:
        assert utcnow().tzinfo is not None


class TestModelPersistence:
    async def test_enum_stored_as_lowercase_value(self, async_session: AsyncSession) -> None:
        """
        GIVEN: A dead channel
        WHEN: Reading the raw column value
        THEN: The enum value ("dead"), not the name, is stored
        """
        channel = await save_channel(async_session, create_channel(health_status=HealthStatus.DEAD))

        raw = (
            await async_session.execute(
                text("SELECT health_status FROM channels WHERE youtube_id = :yid"),
                {"yid": channel.youtube_id},
            )
        ).scalar_one()

        assert raw == "dead"

    async def test_channel_defaults(self, async_session: AsyncSession) -> None:
        channel = await save_channel(async_session, create_channel())

        assert channel.health_status is HealthStatus.HEALTHY
        assert channel.consecutive_failures == 0
        assert channel.last_fetched_at is None

    async def test_one_lock_per_user(self, async_session: AsyncSession, user_id: uuid.UUID) -> None:
        """
        GIVEN: A lock row for a user
        WHEN: Inserting a second lock for the same user
        THEN: The unique constraint rejects it
        """
        expires = utcnow() + timedelta(minutes=30)
        async_session.add(SyncLock(user_id=user_id, expires_at=expires))
        await async_session.commit()

        async_session.add(SyncLock(user_id=user_id, expires_at=expires))
        with pytest.raises(IntegrityError):
            await async_session.commit()
        await async_session.rollback()

    async def test_duplicate_subscription_rejected(
        self, async_session: AsyncSession, user_id: uuid.UUID
    ) -> None:
        channel = await save_channel(async_session, create_channel(), [user_id])

        async_session.add(UserSubscription(user_id=user_id, channel_id=channel.id))
        with pytest.raises(IntegrityError):
            await async_session.commit()
        await async_session.rollback()

    async def test_same_video_allowed_for_different_users(
        self, async_session: AsyncSession, user_id: uuid.UUID, other_user_id: uuid.UUID
    ) -> None:
        channel = await save_channel(async_session, create_channel())

        for owner in (user_id, other_user_id):
            async_session.add(
                Video(user_id=owner, channel_id=channel.id, youtube_id="vid1", title="Video")
            )
        await async_session.commit()

        async_session.add(
            Video(user_id=user_id, channel_id=channel.id, youtube_id="vid1", title="Again")
        )
        with pytest.raises(IntegrityError):
            await async_session.commit()
        await async_session.rollback()
