"""Pydantic schemas for sync progress, status and trigger endpoints.

SyncProgressData is both the tracker's in-memory state and the body
returned to polling clients, so the two can never drift apart.

Schema Naming Convention:
    - *Data / SyncError / SyncStats: value objects shared with services
    - *Request: POST bodies
    - *Response: API responses

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from subsync.models import (
    ActivityLevel,
    AlertSeverity,
    AlertType,
    HealthStatus,
    SyncPhase,
    VideoImportMode,
)


class SyncError(BaseModel):
    """One failure recorded during a run (usually a single channel)."""

    code: str = Field(..., description="Classified error code, e.g. not_found")
    message: str
    channel_id: str | None = Field(default=None, description="YouTube channel id")
    channel_name: str | None = None
    timestamp: datetime


class SyncStats(BaseModel):
    channels_processed: int = 0
    channels_failed: int = 0
    videos_added: int = 0
    quota_used: int = 0


class SyncProgressData(BaseModel):
    """State of one sync run as seen by the tracker and by pollers."""

    model_config = ConfigDict(from_attributes=True)

    sync_id: UUID
    user_id: UUID
    phase: SyncPhase = SyncPhase.IDLE
    message: str = ""
    current: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    current_item: str | None = None
    errors: list[SyncError] = Field(default_factory=list)
    stats: SyncStats = Field(default_factory=SyncStats)
    queued_channel_ids: list[str] | None = None
    processed_channel_ids: list[str] | None = None
    paused_for_quota: bool = False
    resume_after: datetime | None = None
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class SyncEta(BaseModel):
    estimated_seconds_remaining: int = Field(..., ge=0)
    estimated_completion_time: datetime
    average_channel_time_seconds: int = Field(..., ge=0)


class SyncProgressResponse(BaseModel):
    """GET /api/v1/sync/progress"""

    progress: SyncProgressData | None
    is_active: bool
    eta: SyncEta | None = None


class LockStatusResponse(BaseModel):
    """GET /api/v1/sync/lock"""

    model_config = ConfigDict(from_attributes=True)

    has_lock: bool
    is_expired: bool = False
    cancelled: bool = False
    locked_at: datetime | None = None
    expires_at: datetime | None = None


class MessageResponse(BaseModel):
    success: bool
    message: str


class QuotaStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    used: int
    limit: int
    remaining: int
    percentage: float
    reset_at: datetime
    is_warning: bool
    is_critical: bool
    is_exhausted: bool


class SyncRunResponse(BaseModel):
    """Result of a triggered sync run (subscriptions, videos, channel add)."""

    model_config = ConfigDict(from_attributes=True)

    outcome: str
    message: str
    sync_id: UUID | None = None
    channels_processed: int = 0
    channels_failed: int = 0
    videos_added: int = 0
    quota_used: int = 0
    errors: list[SyncError] = Field(default_factory=list)
    quota_status: QuotaStatusResponse | None = None
    resume_after: datetime | None = Field(
        default=None,
        description="Set when the run stopped on quota: when it can be resumed",
    )


class VideoSyncRequest(BaseModel):
    """POST /api/v1/sync/videos"""

    channel_ids: list[UUID] | None = Field(
        default=None,
        description="Internal channel ids to sync; all subscribed channels when omitted",
    )
    import_mode: VideoImportMode = VideoImportMode.LIMITED
    limit: int | None = Field(default=None, ge=1, le=50000)
    resume_sync_id: UUID | None = Field(
        default=None,
        description="Continue a previous run, syncing only its unprocessed channels",
    )


class AddChannelRequest(BaseModel):
    """POST /api/v1/channels"""

    youtube_channel_id: str = Field(..., min_length=1, max_length=64)
    import_mode: VideoImportMode = VideoImportMode.NEW_ONLY
    limit: int | None = Field(default=None, ge=1, le=50000)


class ChannelHealthItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    youtube_id: str
    title: str
    health_status: HealthStatus
    consecutive_failures: int
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    last_success_at: datetime | None = None
    activity_level: ActivityLevel


class ChannelHealthResponse(BaseModel):
    """GET /api/v1/channels/health"""

    channels: list[ChannelHealthItem]
    summary: dict[str, int]


class ReviveChannelsRequest(BaseModel):
    channel_ids: list[UUID] = Field(..., min_length=1)


class ReviveChannelsResponse(BaseModel):
    revived: int


class AlertItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    data: dict[str, Any]
    acknowledged: bool
    created_at: datetime


class AcknowledgeAlertsRequest(BaseModel):
    """Either explicit ids or all=True."""

    alert_ids: list[UUID] | None = None
    all: bool = False


class AcknowledgeAlertsResponse(BaseModel):
    acknowledged: int
