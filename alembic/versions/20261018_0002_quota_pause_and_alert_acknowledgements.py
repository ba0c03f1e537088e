"""Quota pause state and per-user acknowledgement of system alerts.

Changes:
    - sync_progress.paused_for_quota / resume_after: a video sync stopped by
      quota records when the next quota day starts
    - alerttype gains "sync_resumable" (sent once a paused run can resume)
    - sync_alert_acknowledgements: system-wide alerts (user_id NULL) are
      dismissed per user instead of for everyone

Revision ID: 0002_quota_pause_alert_acks
Revises: 0001_initial_sync_schema
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002_quota_pause_alert_acks"
down_revision: str | None = "0001_initial_sync_schema"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("ALTER TYPE alerttype ADD VALUE IF NOT EXISTS 'sync_resumable'")

    op.add_column(
        "sync_progress",
        sa.Column("paused_for_quota", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.add_column(
        "sync_progress",
        sa.Column("resume_after", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "sync_alert_acknowledgements",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("alert_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["alert_id"], ["sync_alerts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "alert_id", "user_id", name="uq_sync_alert_acknowledgements_alert_user"
        ),
    )
    op.create_index(
        "ix_sync_alert_acknowledgements_user_id", "sync_alert_acknowledgements", ["user_id"]
    )


def downgrade() -> None:
    # PostgreSQL cannot drop a single enum value; "sync_resumable" stays in alerttype
    op.drop_index(
        "ix_sync_alert_acknowledgements_user_id", table_name="sync_alert_acknowledgements"
    )
    op.drop_table("sync_alert_acknowledgements")
    op.drop_column("sync_progress", "resume_after")
    op.drop_column("sync_progress", "paused_for_quota")
