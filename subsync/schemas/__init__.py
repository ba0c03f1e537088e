"""Pydantic schemas for validation and serialization."""

from subsync.schemas.sync import (
    SyncError,
    SyncEta,
    SyncProgressData,
    SyncProgressResponse,
    SyncStats,
)

__all__ = [
    "SyncError",
    "SyncEta",
    "SyncProgressData",
    "SyncProgressResponse",
    "SyncStats",
]
