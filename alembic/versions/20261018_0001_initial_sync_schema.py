"""Initial subscription sync schema.

Creates the tables behind the sync core:
    - users, channels, user_subscriptions, videos (library)
    - sync_locks (unique user_id is the per-user mutual exclusion point)
    - sync_progress, sync_history (run state and audit)
    - api_quota_usage (shared daily counter, one row per quota day)
    - sync_alerts (post-run anomalies)

Enum columns store lowercase values (matching values_callable in models.py).

Revision ID: 0001_initial_sync_schema
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial_sync_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

activity_level = postgresql.ENUM("high", "medium", "low", name="activitylevel")
health_status = postgresql.ENUM("healthy", "warning", "unhealthy", "dead", name="healthstatus")
sync_phase = postgresql.ENUM(
    "idle",
    "starting",
    "fetching_subscriptions",
    "fetching_channel_details",
    "syncing_videos",
    "completing",
    "complete",
    "error",
    name="syncphase",
)
sync_type = postgresql.ENUM(
    "subscription_import",
    "manual",
    "channel_add",
    "dead_channel_retry",
    "cron_high",
    "cron_medium",
    "cron_low",
    name="synctype",
)
alert_type = postgresql.ENUM(
    "high_failure_rate",
    "channel_died",
    "quota_warning",
    "quota_exhausted",
    "sync_error",
    name="alerttype",
)
alert_severity = postgresql.ENUM("info", "warning", "error", "critical", name="alertseverity")

ENUMS = (activity_level, health_status, sync_phase, sync_type, alert_type, alert_severity)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "channels",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("youtube_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("thumbnail_url", sa.String(500), nullable=True),
        sa.Column("uploads_playlist_id", sa.String(64), nullable=True),
        sa.Column(
            "activity_level",
            postgresql.ENUM(name="activitylevel", create_type=False),
            nullable=False,
            server_default="medium",
        ),
        sa.Column(
            "health_status",
            postgresql.ENUM(name="healthstatus", create_type=False),
            nullable=False,
            server_default="healthy",
        ),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_success_at"),
        _timestamp("last_failure_at"),
        sa.Column("last_failure_reason", sa.Text(), nullable=True),
        _timestamp("last_fetched_at"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "consecutive_failures >= 0",
            name="ck_channels_consecutive_failures_non_negative",
        ),
    )
    op.create_index("ix_channels_youtube_id", "channels", ["youtube_id"], unique=True)
    op.create_index("ix_channels_health_status", "channels", ["health_status"])

    op.create_table(
        "user_subscriptions",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("channel_id", _uuid(), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "channel_id", name="uq_user_subscriptions_user_channel"),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index("ix_user_subscriptions_channel_id", "user_subscriptions", ["channel_id"])

    op.create_table(
        "videos",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("channel_id", _uuid(), nullable=False),
        sa.Column("youtube_id", sa.String(32), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("thumbnail_url", sa.String(500), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("is_short", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("published_at"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["channel_id"], ["channels.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "youtube_id", name="uq_videos_user_youtube_id"),
    )
    op.create_index("ix_videos_channel_published", "videos", ["channel_id", "published_at"])

    op.create_table(
        "sync_locks",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        _timestamp("locked_at"),
        _timestamp("expires_at", nullable=False),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id"),
    )

    op.create_table(
        "sync_progress",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column(
            "phase",
            postgresql.ENUM(name="syncphase", create_type=False),
            nullable=False,
            server_default="idle",
        ),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_item", sa.String(500), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("channels_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("channels_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("videos_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quota_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("queued_channel_ids", sa.JSON(), nullable=True),
        sa.Column("processed_channel_ids", sa.JSON(), nullable=True),
        _timestamp("started_at"),
        _timestamp("updated_at"),
        _timestamp("completed_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_sync_progress_user_updated", "sync_progress", ["user_id", "updated_at"])

    op.create_table(
        "sync_history",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column(
            "sync_type",
            postgresql.ENUM(name="synctype", create_type=False),
            nullable=False,
        ),
        _timestamp("started_at", nullable=False),
        _timestamp("completed_at"),
        sa.Column("channels_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("channels_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("videos_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quota_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_sync_history_user_started", "sync_history", ["user_id", "started_at"])

    op.create_table(
        "api_quota_usage",
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("units_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_limit", sa.Integer(), nullable=False, server_default="10000"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("usage_date"),
        sa.CheckConstraint("units_used >= 0", name="ck_api_quota_usage_units_non_negative"),
        sa.CheckConstraint("daily_limit > 0", name="ck_api_quota_usage_limit_positive"),
    )

    op.create_table(
        "sync_alerts",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=True),
        sa.Column(
            "alert_type",
            postgresql.ENUM(name="alerttype", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "severity",
            postgresql.ENUM(name="alertseverity", create_type=False),
            nullable=False,
        ),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("acknowledged_at"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_sync_alerts_user_acknowledged", "sync_alerts", ["user_id", "acknowledged"]
    )


def downgrade() -> None:
    op.drop_index("ix_sync_alerts_user_acknowledged", table_name="sync_alerts")
    op.drop_table("sync_alerts")
    op.drop_table("api_quota_usage")
    op.drop_index("ix_sync_history_user_started", table_name="sync_history")
    op.drop_table("sync_history")
    op.drop_index("ix_sync_progress_user_updated", table_name="sync_progress")
    op.drop_table("sync_progress")
    op.drop_table("sync_locks")
    op.drop_index("ix_videos_channel_published", table_name="videos")
    op.drop_table("videos")
    op.drop_index("ix_user_subscriptions_channel_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_index("ix_channels_health_status", table_name="channels")
    op.drop_index("ix_channels_youtube_id", table_name="channels")
    op.drop_table("channels")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
