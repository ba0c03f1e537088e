# Data factories for test data generation

from tests.support.factories.channel_factory import (
    create_channel,
    create_dead_channel,
    save_channel,
    uploads_playlist_for,
)
from tests.support.factories.youtube_factory import (
    BASE_TIME,
    FakeVideoProvider,
    create_channel_details,
    create_video,
    create_videos,
    youtube_error,
)

__all__ = [
    # Channel rows
    "create_channel",
    "create_dead_channel",
    "save_channel",
    "uploads_playlist_for",
    # Provider payloads
    "BASE_TIME",
    "FakeVideoProvider",
    "create_channel_details",
    "create_video",
    "create_videos",
    "youtube_error",
]
