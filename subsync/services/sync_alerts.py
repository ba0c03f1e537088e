"""Post-run anomaly detection and stored alerts.

After each sync run the orchestrator hands a RunSummary to
check_and_create_alerts(), which stores one sync_alerts row per anomaly and,
when anything was stored, sends one Discord summary.

Alert Rules:
    high_failure_rate  >=50% critical, >=20% error, >=10% (and >=3 failures) warning
    channel_died       a channel that failed in this run now sits at exactly
                       10 consecutive failures (it just crossed the threshold)
    quota_warning      quota at >=90% after the run (once per quota day)
    quota_exhausted    quota exhausted after the run (once per quota day)
    sync_error         a run ended in a fatal error
    sync_resumable     a run paused for quota can resume (quota has reset)

Runs that processed nothing produce no failure-rate or channel alerts.
Alerts are mutated only by acknowledgement and never deleted here. A user's
own alerts carry the acknowledged flag; system-wide alerts (user_id NULL) are
acknowledged per user in sync_alert_acknowledgements, so one user dismissing
a quota alert leaves it open for everyone else.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.database import dialect_insert
from subsync.models import (
    AlertSeverity,
    AlertType,
    Channel,
    HealthStatus,
    SyncAlert,
    SyncAlertAcknowledgement,
    SyncType,
    utcnow,
)
from subsync.schemas.sync import SyncError
from subsync.services.channel_health import DEAD_THRESHOLD
from subsync.services.quota_manager import get_quota_status
from subsync.services.sync_progress import (
    clear_quota_pause,
    get_resumable_syncs,
    remaining_channel_ids,
)
from subsync.utils.alerts import send_alert
from subsync.utils.logging import get_logger

log = get_logger(__name__)

FAILURE_RATE_WARNING = 0.1
FAILURE_RATE_ERROR = 0.2
FAILURE_RATE_CRITICAL = 0.5
MIN_FAILURES_FOR_WARNING = 3

DISCORD_LEVELS = {
    AlertSeverity.CRITICAL: "CRITICAL",
    AlertSeverity.ERROR: "ERROR",
    AlertSeverity.WARNING: "WARNING",
    AlertSeverity.INFO: "INFO",
}
_SEVERITY_ORDER = [
    AlertSeverity.INFO,
    AlertSeverity.WARNING,
    AlertSeverity.ERROR,
    AlertSeverity.CRITICAL,
]


@dataclass
class RunSummary:
    """Outcome of one run, as seen by alerting."""

    channels_processed: int = 0
    channels_failed: int = 0
    videos_added: int = 0
    quota_used: int = 0
    duration_ms: int = 0
    errors: list[SyncError] = field(default_factory=list)

    @property
    def failure_rate(self) -> float:
        total = self.channels_processed + self.channels_failed
        return self.channels_failed / total if total else 0.0


async def create_alert(
    db: AsyncSession,
    alert_type: AlertType,
    severity: AlertSeverity,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
    user_id: UUID | None = None,
) -> SyncAlert:
    alert = SyncAlert(
        user_id=user_id,
        alert_type=alert_type,
        severity=severity,
        title=title[:255],
        message=message,
        data=data or {},
        acknowledged=False,
    )
    db.add(alert)
    await db.commit()

    log.info(
        "sync_alert_created",
        alert_id=alert.id,
        alert_type=alert_type.value,
        severity=severity.value,
        user_id=user_id,
    )
    return alert


def _errors_payload(errors: list[SyncError], limit: int) -> list[dict[str, Any]]:
    return [error.model_dump(mode="json") for error in errors[:limit]]


async def _failure_rate_alert(
    db: AsyncSession, summary: RunSummary, sync_type: SyncType, user_id: UUID | None
) -> SyncAlert | None:
    rate = summary.failure_rate
    total = summary.channels_processed + summary.channels_failed
    data: dict[str, Any] = {
        "sync_type": sync_type.value,
        "failure_rate": rate,
        "channels_failed": summary.channels_failed,
        "channels_processed": summary.channels_processed,
    }

    if rate >= FAILURE_RATE_CRITICAL:
        data["errors"] = _errors_payload(summary.errors, 10)
        return await create_alert(
            db,
            AlertType.HIGH_FAILURE_RATE,
            AlertSeverity.CRITICAL,
            f"Critical: {round(rate * 100)}% of channels failed",
            f"{summary.channels_failed} out of {total} channels failed during "
            f"{sync_type.value} sync. This may indicate a system-wide issue.",
            data,
            user_id,
        )
    if rate >= FAILURE_RATE_ERROR:
        data["errors"] = _errors_payload(summary.errors, 5)
        return await create_alert(
            db,
            AlertType.HIGH_FAILURE_RATE,
            AlertSeverity.ERROR,
            f"High failure rate: {round(rate * 100)}% of channels failed",
            f"{summary.channels_failed} out of {total} channels failed during "
            f"{sync_type.value} sync.",
            data,
            user_id,
        )
    if rate >= FAILURE_RATE_WARNING and summary.channels_failed >= MIN_FAILURES_FOR_WARNING:
        return await create_alert(
            db,
            AlertType.HIGH_FAILURE_RATE,
            AlertSeverity.WARNING,
            f"{summary.channels_failed} channels failed during sync",
            f"{round(rate * 100)}% failure rate during {sync_type.value} sync.",
            data,
            user_id,
        )
    return None


async def _channel_died_alerts(
    db: AsyncSession, summary: RunSummary, user_id: UUID | None
) -> list[SyncAlert]:
    youtube_ids = {error.channel_id for error in summary.errors if error.channel_id}
    if not youtube_ids:
        return []

    newly_dead = (
        await db.execute(
            select(Channel).where(
                Channel.youtube_id.in_(youtube_ids),
                Channel.health_status == HealthStatus.DEAD,
                Channel.consecutive_failures == DEAD_THRESHOLD,
            )
        )
    ).scalars().all()

    alerts = []
    for channel in newly_dead:
        alerts.append(
            await create_alert(
                db,
                AlertType.CHANNEL_DIED,
                AlertSeverity.WARNING,
                f"Channel marked as dead: {channel.title or channel.youtube_id}",
                f"Channel has failed {DEAD_THRESHOLD}+ consecutive times and will no "
                "longer be synced automatically.",
                {
                    "channel_id": str(channel.id),
                    "youtube_id": channel.youtube_id,
                    "channel_title": channel.title,
                    "consecutive_failures": channel.consecutive_failures,
                    "last_error": channel.last_failure_reason,
                },
                user_id,
            )
        )
    return alerts


async def _already_alerted_today(db: AsyncSession, alert_type: AlertType) -> bool:
    status = await get_quota_status(db)
    day_start = status.reset_at - timedelta(days=1)
    existing = (
        await db.execute(
            select(SyncAlert.id)
            .where(SyncAlert.alert_type == alert_type, SyncAlert.created_at >= day_start)
            .limit(1)
        )
    ).scalar_one_or_none()
    return existing is not None


async def check_quota_alerts(db: AsyncSession) -> list[SyncAlert]:
    """Raise a system-wide quota alert when the shared counter crosses a threshold.

    At most one alert of each quota type per quota day.
    """
    status = await get_quota_status(db)
    data = {
        "used": status.used,
        "limit": status.limit,
        "percentage": status.percentage,
        "reset_at": status.reset_at.isoformat(),
    }

    if status.is_exhausted:
        if await _already_alerted_today(db, AlertType.QUOTA_EXHAUSTED):
            return []
        return [
            await create_alert(
                db,
                AlertType.QUOTA_EXHAUSTED,
                AlertSeverity.CRITICAL,
                "YouTube API quota exhausted",
                f"All {status.limit} daily units are used. Syncs are paused until "
                f"{status.reset_at.isoformat()}.",
                data,
            )
        ]

    if status.is_warning:
        if await _already_alerted_today(db, AlertType.QUOTA_WARNING):
            return []
        return [
            await create_alert(
                db,
                AlertType.QUOTA_WARNING,
                AlertSeverity.WARNING,
                f"YouTube API quota at {status.percentage:.0f}%",
                f"{status.remaining} of {status.limit} daily units remain.",
                data,
            )
        ]

    return []


async def check_and_create_alerts(
    db: AsyncSession,
    summary: RunSummary,
    sync_type: SyncType,
    user_id: UUID | None = None,
) -> list[UUID]:
    """Analyze a finished run and store alerts for notable events.

    Args:
        db: Database session (committed per alert)
        summary: Run counters and errors
        sync_type: What kind of run this was
        user_id: Owner of the run, None for system jobs

    Returns:
        Ids of the alerts created.
    """
    if summary.channels_processed == 0 and summary.channels_failed == 0:
        return []

    alerts: list[SyncAlert] = []

    failure_alert = await _failure_rate_alert(db, summary, sync_type, user_id)
    if failure_alert is not None:
        alerts.append(failure_alert)

    alerts.extend(await _channel_died_alerts(db, summary, user_id))
    alerts.extend(await check_quota_alerts(db))

    if alerts:
        await send_sync_summary(summary, sync_type, alerts)

    return [alert.id for alert in alerts]


async def create_sync_error_alert(
    db: AsyncSession,
    user_id: UUID | None,
    sync_type: SyncType,
    message: str,
) -> UUID:
    """Store and announce a fatal run error."""
    alert = await create_alert(
        db,
        AlertType.SYNC_ERROR,
        AlertSeverity.ERROR,
        f"{sync_type.value} sync failed",
        message[:2000],
        {"sync_type": sync_type.value},
        user_id,
    )
    await send_alert(
        level="ERROR",
        title=alert.title,
        message=message,
        details={"Sync Type": sync_type.value},
    )
    return alert.id


async def send_sync_summary(
    summary: RunSummary, sync_type: SyncType, alerts: list[SyncAlert]
) -> bool:
    """Post one Discord embed summarizing the run and its alerts."""
    worst = max((alert.severity for alert in alerts), key=_SEVERITY_ORDER.index)
    details: dict[str, object] = {
        "Channels Processed": summary.channels_processed,
        "Channels Failed": summary.channels_failed,
        "Failure Rate": f"{summary.failure_rate * 100:.1f}%",
        "Videos Added": summary.videos_added,
        "Quota Used": summary.quota_used,
        "Duration": f"{summary.duration_ms / 1000:.1f}s",
    }
    if summary.errors:
        details["Errors"] = "\n".join(
            f"{error.channel_name or error.channel_id or 'unknown'}: {error.message}"
            for error in summary.errors[:5]
        )

    return await send_alert(
        level=DISCORD_LEVELS[worst],
        title=f"Sync alert: {sync_type.value}",
        message="\n".join(f"- {alert.title}" for alert in alerts),
        details=details,
    )


def _open_for(user_id: UUID):
    """Filter for alerts still open for ``user_id``: own unacknowledged plus
    system alerts this user has not dismissed."""
    dismissed = exists().where(
        SyncAlertAcknowledgement.alert_id == SyncAlert.id,
        SyncAlertAcknowledgement.user_id == user_id,
    )
    return or_(
        and_(SyncAlert.user_id == user_id, SyncAlert.acknowledged.is_(False)),
        and_(SyncAlert.user_id.is_(None), ~dismissed),
    )


async def get_unacknowledged_alerts(
    db: AsyncSession, user_id: UUID, limit: int = 50
) -> list[SyncAlert]:
    """This user's open alerts plus system-wide ones they have not dismissed, newest first."""
    stmt = (
        select(SyncAlert)
        .where(_open_for(user_id))
        .order_by(SyncAlert.created_at.desc())
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())


async def acknowledge_alerts(
    db: AsyncSession,
    user_id: UUID,
    alert_ids: list[UUID] | None = None,
) -> int:
    """Acknowledge specific alerts, or every open alert visible to the user.

    Own alerts are flagged acknowledged. System alerts get a per-user
    acknowledgement row and stay open for other users.

    Returns:
        Number of alerts acknowledged.
    """
    if alert_ids is not None and not alert_ids:
        return 0

    now = utcnow()
    own = (
        update(SyncAlert)
        .where(SyncAlert.user_id == user_id, SyncAlert.acknowledged.is_(False))
        .values(acknowledged=True, acknowledged_at=now)
    )
    system = select(SyncAlert.id).where(SyncAlert.user_id.is_(None), _open_for(user_id))
    if alert_ids is not None:
        own = own.where(SyncAlert.id.in_(alert_ids))
        system = system.where(SyncAlert.id.in_(alert_ids))

    count = (await db.execute(own)).rowcount
    system_ids = (await db.execute(system)).scalars().all()
    if system_ids:
        stmt = dialect_insert(db, SyncAlertAcknowledgement).values(
            [
                {"id": uuid4(), "alert_id": alert_id, "user_id": user_id, "acknowledged_at": now}
                for alert_id in system_ids
            ]
        )
        await db.execute(
            stmt.on_conflict_do_nothing(index_elements=["alert_id", "user_id"])
        )
        count += len(system_ids)
    await db.commit()

    log.info("sync_alerts_acknowledged", user_id=user_id, count=count)
    return count


async def notify_resumable_syncs(db: AsyncSession, now: datetime | None = None) -> int:
    """Tell users whose video sync stopped on quota that it can resume.

    Stores one info alert per paused run (carrying its sync_id for
    resume_sync_id) and clears the paused marker so the run is announced
    once.

    Returns:
        Number of runs announced.
    """
    announced = 0
    for progress in await get_resumable_syncs(db, now):
        if not await clear_quota_pause(db, progress.sync_id):
            continue
        remaining = len(remaining_channel_ids(progress))
        await create_alert(
            db,
            AlertType.SYNC_RESUMABLE,
            AlertSeverity.INFO,
            "Sync ready to resume",
            "Your video sync was paused because the daily YouTube API quota ran out. "
            f"The quota has reset, so you can resume it to sync the remaining "
            f"{remaining} channels.",
            {"sync_id": str(progress.sync_id), "remaining_channels": remaining},
            progress.user_id,
        )
        announced += 1

    if announced:
        log.info("resumable_syncs_announced", count=announced)
    return announced
