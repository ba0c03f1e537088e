"""YouTube API quota management with a shared daily counter.

Every sync run is admitted against one project-wide daily allowance: the
YouTube Data API bills the project, not the individual OAuth user, so the
counter is shared by all concurrent users.

Architecture Pattern:
    - Admission check: estimate a run's cost BEFORE any work starts
    - Atomic reservation: consume_quota() is a single INSERT ... ON CONFLICT
      DO UPDATE ... WHERE statement, so concurrent callers can never push
      the counter past the ceiling
    - Actual spend: record_quota_usage() adds units after calls complete
    - Alert thresholds: 90% warning, 95% critical
    - Daily reset: midnight America/Los_Angeles (YouTube API behavior)

Cost model:
    Every list call used by the sync (subscriptions, channels, playlistItems,
    videos) costs 1 unit per page of up to 50 items.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.config import get_daily_quota_limit, get_quota_reserve_units
from subsync.database import dialect_insert
from subsync.models import ApiQuotaUsage, SyncHistory, SyncType, utcnow
from subsync.utils.logging import get_logger

log = get_logger(__name__)

# YouTube Data API v3 operation costs (per call / page)
YOUTUBE_OPERATION_COSTS = {
    "subscriptions.list": 1,
    "channels.list": 1,
    "playlistItems.list": 1,
    "videos.list": 1,
}

PAGE_SIZE = 50

QUOTA_WARNING_THRESHOLD = 0.90
QUOTA_CRITICAL_THRESHOLD = 0.95

QUOTA_TIMEZONE = ZoneInfo("America/Los_Angeles")

DEFAULT_SUBSCRIPTION_COUNT = 200
ESTIMATE_SAFETY_MARGIN = 1.1
HISTORY_SAFETY_MARGIN = 1.2
HISTORY_SAMPLE_SIZE = 5


@dataclass(frozen=True)
class QuotaStatus:
    """Snapshot of today's quota counter."""

    used: int
    limit: int
    remaining: int
    percentage: float
    reset_at: datetime
    is_warning: bool
    is_critical: bool
    is_exhausted: bool


@dataclass(frozen=True)
class QuotaCheck:
    """Result of an admission check.

    Attributes:
        allowed: True if the estimated units fit under ceiling minus reserve.
        reason: Human-readable denial reason, None when allowed.
        status: Counter snapshot the decision was made on.
    """

    allowed: bool
    reason: str | None
    status: QuotaStatus


@dataclass(frozen=True)
class QuotaEstimate:
    units: int
    confidence: str  # "low" | "medium" | "high"


def quota_day(now: datetime | None = None) -> date:
    """Return the quota day containing ``now`` (provider's local calendar)."""
    return (now or utcnow()).astimezone(QUOTA_TIMEZONE).date()


def next_reset_at(now: datetime | None = None) -> datetime:
    """Return the UTC instant of the next quota reset after ``now``."""
    next_day = quota_day(now) + timedelta(days=1)
    local_midnight = datetime.combine(next_day, time.min, tzinfo=QUOTA_TIMEZONE)
    return local_midnight.astimezone(timezone.utc)


def _build_status(used: int, limit: int, now: datetime | None) -> QuotaStatus:
    percentage = used / limit
    return QuotaStatus(
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        percentage=round(percentage * 100, 1),
        reset_at=next_reset_at(now),
        is_warning=percentage >= QUOTA_WARNING_THRESHOLD,
        is_critical=percentage >= QUOTA_CRITICAL_THRESHOLD,
        is_exhausted=used >= limit,
    )


async def get_quota_status(db: AsyncSession, now: datetime | None = None) -> QuotaStatus:
    """Read today's counter.

    Selects the column rather than the entity so a value changed by an
    upsert in another session is never served from the identity map.

    Args:
        db: Database session
        now: Clock override for tests

    Returns:
        QuotaStatus for the current quota day.
    """
    stmt = select(ApiQuotaUsage.units_used).where(ApiQuotaUsage.usage_date == quota_day(now))
    used = (await db.execute(stmt)).scalar_one_or_none() or 0
    return _build_status(used, get_daily_quota_limit(), now)


async def check_quota_available(
    db: AsyncSession,
    estimated_units: int,
    now: datetime | None = None,
) -> QuotaCheck:
    """Check if ``estimated_units`` can be admitted right now.

    Admission rule: ``used + estimated_units <= limit - reserve``.

    Args:
        db: Database session
        estimated_units: Projected cost of the operation
        now: Clock override for tests

    Returns:
        QuotaCheck with allowed flag, reason and the status snapshot.

    Example:
        >>> check = await check_quota_available(db, 20)
        >>> if not check.allowed:
        ...     return 429, check.reason
    """
    status = await get_quota_status(db, now)
    available = max(0, status.limit - get_quota_reserve_units() - status.used)

    reason = None
    if status.is_exhausted:
        reason = (
            "Daily YouTube API quota exhausted. "
            f"Resets at {status.reset_at.isoformat()}."
        )
    elif estimated_units > available:
        reason = (
            f"Insufficient quota remaining. This operation needs ~{estimated_units} units "
            f"but only {available} are available. Resets at {status.reset_at.isoformat()}."
        )

    log.info(
        "youtube_quota_check",
        estimated_units=estimated_units,
        current_usage=status.used,
        daily_limit=status.limit,
        available=available,
        allowed=reason is None,
    )

    return QuotaCheck(allowed=reason is None, reason=reason, status=status)


async def consume_quota(db: AsyncSession, units: int, now: datetime | None = None) -> bool:
    """Atomically reserve ``units`` if they fit under the admission ceiling.

    A single upsert increments the counter only when the result stays within
    ``limit - reserve``; when it would not, the conflict branch's WHERE clause
    filters the update out and no row is returned.

    Args:
        db: Database session (committed by this call)
        units: Units to reserve
        now: Clock override for tests

    Returns:
        True if the units were reserved, False if admission was denied.
    """
    if units <= 0:
        return True

    limit = get_daily_quota_limit()
    ceiling = limit - get_quota_reserve_units()
    if units > ceiling:
        return False

    stmt = dialect_insert(db, ApiQuotaUsage).values(
        usage_date=quota_day(now),
        units_used=units,
        daily_limit=limit,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ApiQuotaUsage.usage_date],
        set_={
            "units_used": ApiQuotaUsage.units_used + units,
            "updated_at": utcnow(),
        },
        where=(ApiQuotaUsage.units_used + units) <= ceiling,
    ).returning(ApiQuotaUsage.units_used)

    result = await db.execute(stmt)
    total = result.scalar_one_or_none()
    await db.commit()

    if total is None:
        log.warning("youtube_quota_reservation_denied", units=units, ceiling=ceiling)
        return False

    log.debug("youtube_quota_reserved", units=units, total_usage=total)
    return True


async def record_quota_usage(db: AsyncSession, units: int, now: datetime | None = None) -> int:
    """Add units actually spent to today's counter.

    Unlike consume_quota this never refuses: the calls already happened
    and the provider has already billed them.

    Args:
        db: Database session (committed by this call)
        units: Units spent
        now: Clock override for tests

    Returns:
        New total for the day.
    """
    limit = get_daily_quota_limit()
    stmt = dialect_insert(db, ApiQuotaUsage).values(
        usage_date=quota_day(now),
        units_used=max(0, units),
        daily_limit=limit,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ApiQuotaUsage.usage_date],
        set_={
            "units_used": ApiQuotaUsage.units_used + max(0, units),
            "updated_at": utcnow(),
        },
    ).returning(ApiQuotaUsage.units_used)

    total = (await db.execute(stmt)).scalar_one()
    await db.commit()

    log.info(
        "youtube_quota_recorded",
        units=units,
        total_usage=total,
        daily_limit=limit,
        percentage=f"{total / limit * 100:.1f}%",
    )
    return total


def estimate_quota_needed(
    channel_count: int = 0,
    subscription_count: int | None = None,
    videos_per_channel: int | None = None,
    subscription_sync: bool = False,
    full_sync: bool = False,
) -> int:
    """Estimate units for a sync before running it.

    Subscription import pages through subscriptions.list and then resolves
    channel details in batches of 50. Video sync costs one channels.list
    call plus one playlistItems.list page per 50 videos for each channel.

    Args:
        channel_count: Channels whose videos will be fetched
        subscription_count: Known subscription count (default 200)
        videos_per_channel: Videos fetched per channel (default 50 full, 10 incremental)
        subscription_sync: Include the subscription import cost
        full_sync: Use the full-history default for videos_per_channel

    Returns:
        Estimated units, including a 10% safety margin.

    Example:
        >>> estimate_quota_needed(subscription_sync=True, subscription_count=100)
        5
    """
    total = 0

    if subscription_sync:
        subs = subscription_count if subscription_count is not None else DEFAULT_SUBSCRIPTION_COUNT
        pages = math.ceil(subs / PAGE_SIZE)
        # subscriptions.list pages + channels.list detail batches
        total += pages * 2

    if channel_count > 0:
        per_channel_videos = (
            videos_per_channel
            if videos_per_channel is not None
            else (50 if full_sync else 10)
        )
        per_channel = 1 + math.ceil(per_channel_videos / PAGE_SIZE)
        total += channel_count * per_channel

    return math.ceil(round(total * ESTIMATE_SAFETY_MARGIN, 2))


async def estimate_quota_from_history(
    db: AsyncSession,
    user_id: UUID,
    sync_type: SyncType,
) -> QuotaEstimate:
    """Estimate units for a run from this user's recent successful runs.

    Averages the last five successful runs of the same type and adds a
    20% margin. Falls back to fixed defaults with low confidence when the
    user has no usable history.
    """
    stmt = (
        select(SyncHistory.quota_used)
        .where(
            SyncHistory.user_id == user_id,
            SyncHistory.sync_type == sync_type,
            SyncHistory.success.is_(True),
            SyncHistory.quota_used > 0,
        )
        .order_by(SyncHistory.started_at.desc())
        .limit(HISTORY_SAMPLE_SIZE)
    )
    samples = list((await db.execute(stmt)).scalars().all())

    if not samples:
        default = 10 if sync_type is SyncType.SUBSCRIPTION_IMPORT else 100
        return QuotaEstimate(units=default, confidence="low")

    average = sum(samples) / len(samples)
    return QuotaEstimate(
        units=math.ceil(round(average * HISTORY_SAFETY_MARGIN, 2)),
        confidence="high" if len(samples) >= 3 else "medium",
    )
