"""Channel health tracking and activity-level classification.

Health is a property of the channel, not of a subscription: a failed fetch
while serving one user's sync moves the shared channel toward ``dead`` for
every subscriber.

Architecture Pattern:
    - Status is a pure function of the consecutive failure count
      (0-1 healthy, 2-4 warning, 5-9 unhealthy, >=10 dead)
    - Failure increments are a single UPDATE ... RETURNING, so two syncs
      failing the same channel at once both count
    - Dead channels are skipped by sync until revived by an operator or by
      the dead-channel retry job
    - Activity levels are recomputed in bulk: one query for all recent
      videos, aggregated in memory

Usage:
    from subsync.services.channel_health import record_channel_failure

    outcome = await record_channel_failure(db, channel.id, "Playlist not found")
    if outcome.is_unhealthy:
        ...
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.models import (
    ActivityLevel,
    Channel,
    HealthStatus,
    UserSubscription,
    Video,
    as_utc,
    utcnow,
)
from subsync.utils.logging import get_logger

log = get_logger(__name__)

WARNING_THRESHOLD = 2
UNHEALTHY_THRESHOLD = 5
DEAD_THRESHOLD = 10

# Below this many consecutive failures an immediate retry is still worthwhile
RETRY_NOW_THRESHOLD = 3

UNHEALTHY_STATUSES = (HealthStatus.WARNING, HealthStatus.UNHEALTHY, HealthStatus.DEAD)


@dataclass(frozen=True)
class FailureOutcome:
    """Result of recording one channel failure.

    Attributes:
        should_retry: True while the channel has failed fewer than 3 times in a row.
        is_unhealthy: True once the channel is unhealthy or dead.
        consecutive_failures: Counter after this failure.
        status: Status after this failure.
    """

    should_retry: bool
    is_unhealthy: bool
    consecutive_failures: int
    status: HealthStatus


@dataclass
class ActivityUpdateStats:
    """Counts of level changes made by one reclassification pass."""

    updated: int = 0
    transitions: dict[str, int] = field(default_factory=dict)

    def record(self, old: ActivityLevel, new: ActivityLevel) -> None:
        key = f"{old.value}_to_{new.value}"
        self.transitions[key] = self.transitions.get(key, 0) + 1
        self.updated += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "updated": self.updated,
            "high_to_medium": self.transitions.get("high_to_medium", 0),
            "medium_to_low": self.transitions.get("medium_to_low", 0),
            "low_to_medium": self.transitions.get("low_to_medium", 0),
            "medium_to_high": self.transitions.get("medium_to_high", 0),
            "high_to_low": self.transitions.get("high_to_low", 0),
            "low_to_high": self.transitions.get("low_to_high", 0),
        }


def health_status_for(consecutive_failures: int) -> HealthStatus:
    """Map a consecutive failure count to a health status.

    Example:
        >>> health_status_for(4)
        <HealthStatus.WARNING: 'warning'>
        >>> health_status_for(10)
        <HealthStatus.DEAD: 'dead'>
    """
    if consecutive_failures >= DEAD_THRESHOLD:
        return HealthStatus.DEAD
    if consecutive_failures >= UNHEALTHY_THRESHOLD:
        return HealthStatus.UNHEALTHY
    if consecutive_failures >= WARNING_THRESHOLD:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


async def record_channel_success(db: AsyncSession, channel_id: UUID) -> None:
    """Reset a channel to healthy after a successful fetch.

    Args:
        db: Database session (committed by this call)
        channel_id: Internal channel UUID
    """
    now = utcnow()
    await db.execute(
        update(Channel)
        .where(Channel.id == channel_id)
        .values(
            consecutive_failures=0,
            health_status=HealthStatus.HEALTHY,
            last_success_at=now,
            last_failure_reason=None,
            updated_at=now,
        )
    )
    await db.commit()

    log.debug("channel_health_success", channel_id=channel_id)


async def record_channel_failure(
    db: AsyncSession,
    channel_id: UUID,
    reason: str,
) -> FailureOutcome:
    """Count one failed fetch against a channel.

    The increment is a single UPDATE ... RETURNING. The status is then
    written only if the counter still holds the value this call produced,
    so a concurrent failure that pushed it further keeps its own status.

    Args:
        db: Database session (committed by this call)
        channel_id: Internal channel UUID
        reason: Human-readable failure reason (truncated to 500 chars)

    Returns:
        FailureOutcome describing the channel after this failure.
    """
    now = utcnow()
    result = await db.execute(
        update(Channel)
        .where(Channel.id == channel_id)
        .values(
            consecutive_failures=Channel.consecutive_failures + 1,
            last_failure_at=now,
            last_failure_reason=reason[:500],
            updated_at=now,
        )
        .returning(Channel.consecutive_failures)
    )
    failures = result.scalar_one_or_none()

    if failures is None:
        await db.rollback()
        log.warning("channel_health_channel_missing", channel_id=channel_id)
        return FailureOutcome(
            should_retry=False,
            is_unhealthy=False,
            consecutive_failures=0,
            status=HealthStatus.HEALTHY,
        )

    status = health_status_for(failures)
    await db.execute(
        update(Channel)
        .where(Channel.id == channel_id, Channel.consecutive_failures == failures)
        .values(health_status=status)
    )
    await db.commit()

    log.info(
        "channel_health_failure",
        channel_id=channel_id,
        consecutive_failures=failures,
        status=status.value,
        reason=reason[:200],
    )

    return FailureOutcome(
        should_retry=failures < RETRY_NOW_THRESHOLD,
        is_unhealthy=status in (HealthStatus.UNHEALTHY, HealthStatus.DEAD),
        consecutive_failures=failures,
        status=status,
    )


async def get_unhealthy_channels(db: AsyncSession, user_id: UUID) -> list[Channel]:
    """List this user's subscribed channels in warning, unhealthy or dead status.

    Ordered worst first.
    """
    stmt = (
        select(Channel)
        .join(UserSubscription, UserSubscription.channel_id == Channel.id)
        .where(
            UserSubscription.user_id == user_id,
            Channel.health_status.in_(UNHEALTHY_STATUSES),
        )
        .order_by(Channel.consecutive_failures.desc(), Channel.title)
    )
    return list((await db.execute(stmt)).scalars().all())


async def revive_dead_channels(db: AsyncSession, channel_ids: list[UUID]) -> int:
    """Administrative reset: zero the counter and mark channels healthy.

    Args:
        db: Database session (committed by this call)
        channel_ids: Channels to revive

    Returns:
        Number of channels updated.
    """
    if not channel_ids:
        return 0

    result = await db.execute(
        update(Channel)
        .where(Channel.id.in_(channel_ids))
        .values(
            consecutive_failures=0,
            health_status=HealthStatus.HEALTHY,
            last_failure_reason=None,
            updated_at=utcnow(),
        )
    )
    await db.commit()

    log.info("channels_revived", requested=len(channel_ids), revived=result.rowcount)
    return result.rowcount


async def get_skippable_channel_ids(db: AsyncSession, channel_ids: list[UUID]) -> set[UUID]:
    """Return the subset of ``channel_ids`` that sync must skip (dead channels)."""
    if not channel_ids:
        return set()

    stmt = select(Channel.id).where(
        Channel.id.in_(channel_ids),
        Channel.health_status == HealthStatus.DEAD,
    )
    return set((await db.execute(stmt)).scalars().all())


def calculate_activity_level(videos_last_week: int, videos_last_month: int) -> ActivityLevel:
    """Classify upload frequency.

    >=2/week or >=8/month is high, >=1/week or >=4/month is medium, else low.
    """
    if videos_last_week >= 2 or videos_last_month >= 8:
        return ActivityLevel.HIGH
    if videos_last_week >= 1 or videos_last_month >= 4:
        return ActivityLevel.MEDIUM
    return ActivityLevel.LOW


async def update_channel_activity_levels(
    db: AsyncSession,
    now: datetime | None = None,
) -> ActivityUpdateStats:
    """Reclassify every healthy channel's activity level.

    Two reads (channels, recent videos) and at most one UPDATE per level.
    Videos are stored per user, so uploads are de-duplicated on youtube_id
    before counting.

    Args:
        db: Database session (committed by this call)
        now: Clock override for tests

    Returns:
        ActivityUpdateStats with the number of changes per transition.
    """
    now = now or utcnow()
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)

    channels = (
        await db.execute(
            select(Channel.id, Channel.activity_level).where(
                Channel.health_status == HealthStatus.HEALTHY
            )
        )
    ).all()

    stats = ActivityUpdateStats()
    if not channels:
        return stats

    recent = (
        await db.execute(
            select(Video.channel_id, Video.youtube_id, Video.published_at)
            .where(Video.published_at >= month_ago)
            .distinct()
        )
    ).all()

    seen: dict[UUID, dict[str, datetime]] = defaultdict(dict)
    for channel_id, youtube_id, published_at in recent:
        seen[channel_id][youtube_id] = as_utc(published_at)

    changes: dict[ActivityLevel, list[UUID]] = defaultdict(list)
    for channel_id, current_level in channels:
        uploads = seen.get(channel_id, {})
        last_week = sum(1 for published in uploads.values() if published >= week_ago)
        new_level = calculate_activity_level(last_week, len(uploads))
        if new_level is not current_level:
            changes[new_level].append(channel_id)
            stats.record(current_level, new_level)

    for level, ids in changes.items():
        await db.execute(
            update(Channel).where(Channel.id.in_(ids)).values(activity_level=level)
        )
    await db.commit()

    log.info("channel_activity_levels_updated", channels=len(channels), **stats.to_dict())
    return stats
