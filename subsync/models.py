"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the subscription sync core.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0,
so every column read by the services is statically typed.

Tables:
    users               Minimal identity row; authentication lives elsewhere
    channels            YouTube channel shared by every subscriber, carries health state
    user_subscriptions  User ↔ channel link (unique per pair)
    videos              Per-user copy of a channel upload (unique per user + video)
    sync_locks          One live lock per user (unique user_id)
    sync_progress       One row per sync attempt, polled by status clients
    sync_history        Audit row written when a run finishes
    api_quota_usage     Shared daily YouTube quota counter
    sync_alerts         Anomalies detected after a run
    sync_alert_acknowledgements  Per-user acknowledgement of system-wide alerts

Timestamps:
    All timestamps are written timezone-aware (UTC). SQLite drops tzinfo on
    read, so code comparing timestamps in Python passes them through as_utc().
"""

import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SyncPhase(enum.Enum):
    """Phase of one sync run.

    Happy path:
        idle → starting → fetching_subscriptions → fetching_channel_details
        → syncing_videos → completing → complete

    error is reachable from every non-terminal phase. complete and error are
    terminal. See PHASE_TRANSITIONS for the full table.
    """

    IDLE = "idle"
    STARTING = "starting"
    FETCHING_SUBSCRIPTIONS = "fetching_subscriptions"
    FETCHING_CHANNEL_DETAILS = "fetching_channel_details"
    SYNCING_VIDEOS = "syncing_videos"
    COMPLETING = "completing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncPhase.COMPLETE, SyncPhase.ERROR)

    @property
    def is_active(self) -> bool:
        """True while a run in this phase is doing work."""
        return not self.is_terminal and self is not SyncPhase.IDLE


# Every SyncPhase must appear as a key; tests enforce exhaustiveness.
PHASE_TRANSITIONS: dict[SyncPhase, frozenset[SyncPhase]] = {
    SyncPhase.IDLE: frozenset({SyncPhase.STARTING, SyncPhase.ERROR}),
    SyncPhase.STARTING: frozenset(
        {
            SyncPhase.FETCHING_SUBSCRIPTIONS,
            SyncPhase.FETCHING_CHANNEL_DETAILS,
            SyncPhase.SYNCING_VIDEOS,
            SyncPhase.COMPLETE,
            SyncPhase.ERROR,
        }
    ),
    SyncPhase.FETCHING_SUBSCRIPTIONS: frozenset(
        {
            SyncPhase.FETCHING_CHANNEL_DETAILS,
            SyncPhase.COMPLETING,
            SyncPhase.COMPLETE,
            SyncPhase.ERROR,
        }
    ),
    SyncPhase.FETCHING_CHANNEL_DETAILS: frozenset(
        {
            SyncPhase.SYNCING_VIDEOS,
            SyncPhase.COMPLETING,
            SyncPhase.COMPLETE,
            SyncPhase.ERROR,
        }
    ),
    SyncPhase.SYNCING_VIDEOS: frozenset(
        {SyncPhase.COMPLETING, SyncPhase.COMPLETE, SyncPhase.ERROR}
    ),
    SyncPhase.COMPLETING: frozenset({SyncPhase.COMPLETE, SyncPhase.ERROR}),
    SyncPhase.COMPLETE: frozenset(),
    SyncPhase.ERROR: frozenset(),
}


class HealthStatus(enum.Enum):
    """Channel health, derived from the consecutive failure count."""

    HEALTHY = "healthy"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"
    DEAD = "dead"


class ActivityLevel(enum.Enum):
    """Upload frequency bucket used to pick cron sync cadence."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AlertType(enum.Enum):
    HIGH_FAILURE_RATE = "high_failure_rate"
    CHANNEL_DIED = "channel_died"
    QUOTA_WARNING = "quota_warning"
    QUOTA_EXHAUSTED = "quota_exhausted"
    SYNC_ERROR = "sync_error"
    SYNC_RESUMABLE = "sync_resumable"


class AlertSeverity(enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SyncType(enum.Enum):
    """What triggered a run, recorded in sync_history."""

    SUBSCRIPTION_IMPORT = "subscription_import"
    MANUAL = "manual"
    CHANNEL_ADD = "channel_add"
    DEAD_CHANNEL_RETRY = "dead_channel_retry"
    CRON_HIGH = "cron_high"
    CRON_MEDIUM = "cron_medium"
    CRON_LOW = "cron_low"


class VideoImportMode(enum.Enum):
    """How much history to pull for a channel.

    new_only: no historical videos (a fresh channel has no baseline)
    limited: up to a caller-supplied cap
    all: effectively unbounded
    """

    NEW_ONLY = "new_only"
    LIMITED = "limited"
    ALL = "all"


def _enum_type(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase) not enum.name (UPPERCASE)
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id})>"


class Channel(Base):
    """A YouTube channel, shared by every user subscribed to it.

    Health fields live here rather than on the subscription: a failed fetch
    is a property of the channel, so it affects all subscribers.
    """

    __tablename__ = "channels"
    __table_args__ = (
        CheckConstraint(
            "consecutive_failures >= 0",
            name="ck_channels_consecutive_failures_non_negative",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    youtube_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    thumbnail_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Uploads playlist ("UU..."), resolved lazily via channels.list
    uploads_playlist_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    activity_level: Mapped[ActivityLevel] = mapped_column(
        _enum_type(ActivityLevel, "activitylevel"),
        nullable=False,
        default=ActivityLevel.MEDIUM,
    )

    health_status: Mapped[HealthStatus] = mapped_column(
        _enum_type(HealthStatus, "healthstatus"),
        nullable=False,
        default=HealthStatus.HEALTHY,
        index=True,
    )
    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_failure_reason: Mapped[str | None] = mapped_column(Text)
    last_fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Channel(youtube_id={self.youtube_id!r}, title={self.title!r}, "
            f"health={self.health_status.value if self.health_status else None}, "
            f"failures={self.consecutive_failures})>"
        )


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "channel_id", name="uq_user_subscriptions_user_channel"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Video(Base):
    """A channel upload as seen by one user.

    Keyed by (user_id, youtube_id) so the same video exists independently per
    user (watch state and notes are per-user concerns).
    """

    __tablename__ = "videos"
    __table_args__ = (
        UniqueConstraint("user_id", "youtube_id", name="uq_videos_user_youtube_id"),
        Index("ix_videos_channel_published", "channel_id", "published_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    youtube_id: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    thumbnail_url: Mapped[str | None] = mapped_column(String(500))
    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    is_short: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SyncLock(Base):
    """Per-user mutual exclusion for sync runs.

    The unique constraint on user_id is the serialization point: two
    concurrent inserts for the same user cannot both succeed.
    """

    __tablename__ = "sync_locks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cancelled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    def __repr__(self) -> str:
        return (
            f"<SyncLock(user_id={self.user_id}, expires_at={self.expires_at}, "
            f"cancelled={self.cancelled})>"
        )


class SyncProgress(Base):
    """Persisted state of one sync attempt.

    ``current`` is derived from channels_processed + channels_failed by the
    tracker; it is stored only so pollers can read it without recomputing.
    """

    __tablename__ = "sync_progress"
    __table_args__ = (Index("ix_sync_progress_user_updated", "user_id", "updated_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    phase: Mapped[SyncPhase] = mapped_column(
        _enum_type(SyncPhase, "syncphase"), nullable=False, default=SyncPhase.IDLE
    )
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_item: Mapped[str | None] = mapped_column(String(500))
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    channels_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    channels_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    videos_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    queued_channel_ids: Mapped[list[str] | None] = mapped_column(JSON)
    processed_channel_ids: Mapped[list[str] | None] = mapped_column(JSON)

    # Set when a run stopped on quota; cleared once the user is told it can resume
    paused_for_quota: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    resume_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return (
            f"<SyncProgress(id={self.id}, phase={self.phase.value if self.phase else None}, "
            f"current={self.current}/{self.total})>"
        )


class SyncHistory(Base):
    __tablename__ = "sync_history"
    __table_args__ = (Index("ix_sync_history_user_started", "user_id", "started_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    sync_type: Mapped[SyncType] = mapped_column(_enum_type(SyncType, "synctype"), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    channels_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    channels_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    videos_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text)


class ApiQuotaUsage(Base):
    """Daily YouTube API quota counter, shared by all users.

    One row per quota day. The day boundary follows the provider's reset
    (midnight America/Los_Angeles).
    """

    __tablename__ = "api_quota_usage"
    __table_args__ = (
        CheckConstraint("units_used >= 0", name="ck_api_quota_usage_units_non_negative"),
        CheckConstraint("daily_limit > 0", name="ck_api_quota_usage_limit_positive"),
    )

    usage_date: Mapped[date] = mapped_column(Date, primary_key=True)
    units_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=10000)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<ApiQuotaUsage(date={self.usage_date}, "
            f"used={self.units_used}/{self.daily_limit})>"
        )


class SyncAlert(Base):
    __tablename__ = "sync_alerts"
    __table_args__ = (Index("ix_sync_alerts_user_acknowledged", "user_id", "acknowledged"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # NULL for system-wide alerts raised by cron jobs
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    alert_type: Mapped[AlertType] = mapped_column(
        _enum_type(AlertType, "alerttype"), nullable=False
    )
    severity: Mapped[AlertSeverity] = mapped_column(
        _enum_type(AlertSeverity, "alertseverity"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    acknowledged: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SyncAlertAcknowledgement(Base):
    """One user's acknowledgement of a system-wide alert.

    User-owned alerts carry their own ``acknowledged`` flag. A system alert
    (user_id NULL) is shown to every user, so each user dismisses it here
    without hiding it from the others.
    """

    __tablename__ = "sync_alert_acknowledgements"
    __table_args__ = (
        UniqueConstraint("alert_id", "user_id", name="uq_sync_alert_acknowledgements_alert_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    alert_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("sync_alerts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    acknowledged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
