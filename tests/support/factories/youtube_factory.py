"""In-memory video provider and provider payload factories.

FakeVideoProvider implements the VideoProvider protocol without HTTP. Tests
seed subscriptions, channel details and uploads per playlist, queue errors
per operation, and inspect ``calls`` afterwards.

Quota units follow the real client: one unit per 50-item page for
subscriptions and channel details, and ``video_units`` per uploads fetch
(playlistItems.list + videos.list by default).
"""

import math
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from subsync.clients.youtube import ChannelDetails, SubscriptionItem, VideoItem
from subsync.exceptions import YouTubeAPIError, YouTubeErrorCode
from tests.support.factories.channel_factory import uploads_playlist_for

BASE_TIME = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def create_video(
    video_id: str,
    published_at: datetime | None = None,
    duration_seconds: int | None = 300,
    title: str | None = None,
) -> VideoItem:
    return VideoItem(
        video_id=video_id,
        title=title or f"Video {video_id}",
        thumbnail_url=f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
        duration_seconds=duration_seconds,
        published_at=published_at or BASE_TIME,
    )


def create_videos(prefix: str, count: int, newest: datetime = BASE_TIME) -> list[VideoItem]:
    """``count`` uploads, newest first, one day apart."""
    return [create_video(f"{prefix}{i}", newest - timedelta(days=i)) for i in range(count)]


def create_channel_details(
    youtube_id: str,
    title: str | None = None,
    uploads_playlist_id: str | None = "default",
) -> ChannelDetails:
    if uploads_playlist_id == "default":
        uploads_playlist_id = uploads_playlist_for(youtube_id)
    return ChannelDetails(
        channel_id=youtube_id,
        title=title or f"Channel {youtube_id}",
        uploads_playlist_id=uploads_playlist_id,
    )


def youtube_error(
    code: YouTubeErrorCode,
    message: str = "YouTube API error",
    retryable: bool = False,
    status_code: int | None = 403,
) -> YouTubeAPIError:
    return YouTubeAPIError(message, code=code, status_code=status_code, retryable=retryable)


class FakeVideoProvider:
    """VideoProvider double backed by dictionaries."""

    def __init__(
        self,
        subscriptions: list[SubscriptionItem] | None = None,
        channels: list[ChannelDetails] | None = None,
        videos: dict[str, list[VideoItem]] | None = None,
        video_units: int = 2,
    ) -> None:
        self.subscriptions = list(subscriptions or [])
        self.channels = {channel.channel_id: channel for channel in channels or []}
        self.videos = dict(videos or {})
        self.video_units = video_units
        self.errors: dict[str, list[BaseException]] = defaultdict(list)
        self.calls: list[tuple[str, object]] = []
        self.on_fetch: Callable[[str], Awaitable[None]] | None = None
        self.closed = False

    def fail(self, operation: str, *errors: BaseException) -> None:
        """Queue errors for ``operation`` (e.g. "list_subscriptions" or
        "list_channel_videos:UU123"); each call pops one."""
        self.errors[operation].extend(errors)

    def calls_to(self, operation: str) -> list[object]:
        return [args for name, args in self.calls if name == operation]

    def _raise_queued(self, *keys: str) -> None:
        for key in keys:
            if self.errors.get(key):
                raise self.errors[key].pop(0)

    async def list_subscriptions(self, max_results: int = 2000) -> tuple[list[SubscriptionItem], int]:
        self.calls.append(("list_subscriptions", max_results))
        self._raise_queued("list_subscriptions")
        items = self.subscriptions[:max_results]
        return items, max(1, math.ceil(len(items) / 50))

    async def get_channel_details(
        self, channel_ids: list[str]
    ) -> tuple[dict[str, ChannelDetails], int]:
        self.calls.append(("get_channel_details", list(channel_ids)))
        self._raise_queued("get_channel_details")
        found = {cid: self.channels[cid] for cid in channel_ids if cid in self.channels}
        return found, max(1, math.ceil(len(channel_ids) / 50))

    async def list_channel_videos(
        self,
        uploads_playlist_id: str,
        max_items: int,
        exclude_live: bool = True,
        published_after: datetime | None = None,
    ) -> tuple[list[VideoItem], int]:
        self.calls.append(("list_channel_videos", (uploads_playlist_id, max_items, published_after)))
        if self.on_fetch is not None:
            await self.on_fetch(uploads_playlist_id)
        self._raise_queued("list_channel_videos", f"list_channel_videos:{uploads_playlist_id}")
        if uploads_playlist_id not in self.videos:
            raise youtube_error(
                YouTubeErrorCode.NOT_FOUND, "Playlist not found", status_code=404
            )

        items = self.videos[uploads_playlist_id]
        if published_after is not None:
            items = [v for v in items if v.published_at and v.published_at > published_after]
        return items[:max_items], self.video_units

    async def close(self) -> None:
        self.closed = True
