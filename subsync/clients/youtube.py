"""YouTube Data API v3 client with client-side rate limiting.

This module provides the provider used by the sync orchestrator:
- listSubscriptions, channel details (uploads playlist), channel uploads
- Every call returns the quota units it consumed alongside its items
- Errors are classified into YouTubeErrorCode (quota, rate limit, auth,
  not found, private/deleted, network, unknown) with a retryable flag, so
  callers decide on retries without looking at HTTP details
- Request rate capped via AsyncLimiter; the limiter can be shared between
  per-user client instances

The client does not retry. Bounded retry happens at the call site
(sync orchestrator) with tenacity, where the retry budget is known.

Usage:
    async with YouTubeClient(access_token=token) as client:
        subscriptions, units = await client.list_subscriptions()
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx
from aiolimiter import AsyncLimiter

from subsync.config import get_youtube_requests_per_second
from subsync.exceptions import ConfigurationError, YouTubeAPIError, YouTubeErrorCode

YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"

PAGE_SIZE = 50
MAX_SUBSCRIPTIONS = 2000

QUOTA_REASONS = frozenset({"quotaExceeded", "dailyLimitExceeded"})
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
AUTH_REASONS = frozenset(
    {
        "authError",
        "unauthorized",
        "forbidden",
        "insufficientPermissions",
        "subscriptionForbidden",
        "accessNotConfigured",
    }
)
NOT_FOUND_REASONS = frozenset({"playlistNotFound", "channelNotFound", "notFound"})
GONE_REASONS = frozenset({"playlistItemNotFound", "videoNotFound"})

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


@dataclass(frozen=True)
class SubscriptionItem:
    channel_id: str
    title: str
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class ChannelDetails:
    channel_id: str
    title: str
    uploads_playlist_id: str | None
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class VideoItem:
    video_id: str
    title: str
    thumbnail_url: str | None
    duration_seconds: int | None
    published_at: datetime | None
    live_broadcast_content: str = "none"


class VideoProvider(Protocol):
    """What the sync core needs from the external video provider."""

    async def list_subscriptions(
        self, max_results: int = MAX_SUBSCRIPTIONS
    ) -> tuple[list[SubscriptionItem], int]: ...

    async def get_channel_details(
        self, channel_ids: list[str]
    ) -> tuple[dict[str, ChannelDetails], int]: ...

    async def list_channel_videos(
        self,
        uploads_playlist_id: str,
        max_items: int,
        exclude_live: bool = True,
        published_after: datetime | None = None,
    ) -> tuple[list[VideoItem], int]: ...

    async def close(self) -> None: ...


def parse_iso8601_duration(value: str | None) -> int | None:
    """Convert an ISO 8601 duration ("PT1H2M3S") to seconds.

    Returns:
        Seconds, or None for missing or unparseable values.

    Example:
        >>> parse_iso8601_duration("PT1M1S")
        61
    """
    if not value:
        return None
    match = _DURATION_RE.match(value)
    if not match:
        return None
    parts = {key: int(val) if val else 0 for key, val in match.groupdict().items()}
    return parts["days"] * 86400 + parts["hours"] * 3600 + parts["minutes"] * 60 + parts["seconds"]


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _best_thumbnail(snippet: dict[str, Any]) -> str | None:
    thumbnails = snippet.get("thumbnails") or {}
    for size in ("high", "medium", "default"):
        if size in thumbnails and thumbnails[size].get("url"):
            return thumbnails[size]["url"]
    return None


def classify_youtube_error(
    status_code: int | None,
    payload: Any,
    units_used: int = 0,
) -> YouTubeAPIError:
    """Map an HTTP error response from the YouTube API to a YouTubeAPIError.

    Args:
        status_code: HTTP status of the failed response.
        payload: Decoded JSON body (may be anything, including None).
        units_used: Units consumed by the operation before it failed.

    Returns:
        Classified error. 5xx and rate limits are retryable; quota, auth and
        not-found errors are terminal.
    """
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        error = {}
    message = str(error.get("message") or f"YouTube API error (HTTP {status_code})")
    reasons = [
        item.get("reason")
        for item in error.get("errors") or []
        if isinstance(item, dict) and item.get("reason")
    ]
    reason_set = set(reasons)
    reason = reasons[0] if reasons else None

    def build(code: YouTubeErrorCode, retryable: bool) -> YouTubeAPIError:
        return YouTubeAPIError(
            message,
            code=code,
            status_code=status_code,
            retryable=retryable,
            reason=reason,
            units_used=units_used,
        )

    if reason_set & QUOTA_REASONS:
        return build(YouTubeErrorCode.QUOTA_EXCEEDED, False)
    if status_code == 429 or reason_set & RATE_LIMIT_REASONS:
        return build(YouTubeErrorCode.RATE_LIMITED, True)
    if status_code == 401 or (status_code == 403 and reason_set & AUTH_REASONS):
        return build(YouTubeErrorCode.UNAUTHORIZED, False)
    if reason_set & GONE_REASONS:
        return build(YouTubeErrorCode.PRIVATE_OR_DELETED, False)
    if status_code == 404 or reason_set & NOT_FOUND_REASONS:
        return build(YouTubeErrorCode.NOT_FOUND, False)
    return build(YouTubeErrorCode.UNKNOWN, status_code is None or status_code >= 500)


class YouTubeClient:
    """YouTube Data API v3 client.

    Authenticates with a user OAuth access token (required for
    subscriptions) or a project API key (public channel data only).

    Args:
        access_token: User OAuth access token.
        api_key: Project API key, used when no access token is given.
        rate_limiter: Shared AsyncLimiter; a private one is created if omitted.
        http_client: Injected httpx client (tests); closed by close() only if
            this instance created it.
    """

    def __init__(
        self,
        access_token: str | None = None,
        api_key: str | None = None,
        rate_limiter: AsyncLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not access_token and not api_key:
            raise ConfigurationError("YouTubeClient requires an access token or an API key")

        self.access_token = access_token
        self.api_key = api_key
        self.base_url = YOUTUBE_API_BASE
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=30.0)
        self.rate_limiter = rate_limiter or AsyncLimiter(
            max_rate=get_youtube_requests_per_second(), time_period=1
        )

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _get(self, resource: str, params: dict[str, Any], units_so_far: int = 0) -> dict[str, Any]:
        """GET one API resource (costs one quota unit).

        Raises:
            YouTubeAPIError: Classified failure; network errors are retryable.
        """
        query = dict(params)
        if not self.access_token and self.api_key:
            query["key"] = self.api_key

        async with self.rate_limiter:
            try:
                response = await self.client.get(
                    f"{self.base_url}/{resource}",
                    params=query,
                    headers=self._get_headers(),
                )
            except httpx.TransportError as e:
                raise YouTubeAPIError(
                    f"Network error calling YouTube {resource}: {e}",
                    code=YouTubeErrorCode.NETWORK_ERROR,
                    retryable=True,
                    units_used=units_so_far,
                ) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            raise classify_youtube_error(response.status_code, payload, units_used=units_so_far)

        try:
            return response.json()
        except ValueError as e:
            raise YouTubeAPIError(
                f"Invalid JSON in YouTube {resource} response",
                code=YouTubeErrorCode.UNKNOWN,
                status_code=response.status_code,
                retryable=True,
                units_used=units_so_far,
            ) from e

    async def list_subscriptions(
        self, max_results: int = MAX_SUBSCRIPTIONS
    ) -> tuple[list[SubscriptionItem], int]:
        """List the authenticated user's subscriptions, 50 per page.

        Returns:
            (subscriptions, units consumed)
        """
        items: list[SubscriptionItem] = []
        units = 0
        page_token: str | None = None

        while len(items) < max_results:
            params: dict[str, Any] = {
                "part": "snippet",
                "mine": "true",
                "maxResults": PAGE_SIZE,
                "order": "alphabetical",
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._get("subscriptions", params, units_so_far=units)
            units += 1

            for entry in data.get("items", []):
                snippet = entry.get("snippet") or {}
                channel_id = (snippet.get("resourceId") or {}).get("channelId")
                if not channel_id:
                    continue
                items.append(
                    SubscriptionItem(
                        channel_id=channel_id,
                        title=snippet.get("title") or channel_id,
                        thumbnail_url=_best_thumbnail(snippet),
                    )
                )

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return items[:max_results], units

    async def get_channel_details(
        self, channel_ids: list[str]
    ) -> tuple[dict[str, ChannelDetails], int]:
        """Resolve channel metadata and uploads playlist ids in batches of 50.

        Channels missing from the response (deleted, terminated) are absent
        from the returned mapping.

        Returns:
            (mapping of channel id to details, units consumed)
        """
        details: dict[str, ChannelDetails] = {}
        units = 0

        for start in range(0, len(channel_ids), PAGE_SIZE):
            batch = channel_ids[start : start + PAGE_SIZE]
            data = await self._get(
                "channels",
                {"part": "snippet,contentDetails", "id": ",".join(batch), "maxResults": PAGE_SIZE},
                units_so_far=units,
            )
            units += 1

            for entry in data.get("items", []):
                snippet = entry.get("snippet") or {}
                related = (entry.get("contentDetails") or {}).get("relatedPlaylists") or {}
                details[entry["id"]] = ChannelDetails(
                    channel_id=entry["id"],
                    title=snippet.get("title") or entry["id"],
                    uploads_playlist_id=related.get("uploads"),
                    thumbnail_url=_best_thumbnail(snippet),
                )

        return details, units

    async def list_channel_videos(
        self,
        uploads_playlist_id: str,
        max_items: int,
        exclude_live: bool = True,
        published_after: datetime | None = None,
    ) -> tuple[list[VideoItem], int]:
        """Fetch up to ``max_items`` uploads, newest first, with durations.

        Pages playlistItems.list, then enriches each page through videos.list
        (durations, live status). Items that videos.list no longer returns
        (private or deleted) are dropped.

        Args:
            uploads_playlist_id: Channel uploads playlist ("UU...").
            max_items: Maximum videos to return; 0 returns nothing.
            exclude_live: Drop live and upcoming (scheduled) broadcasts.
            published_after: Stop once older uploads are reached.

        Returns:
            (videos, units consumed)
        """
        videos: list[VideoItem] = []
        units = 0
        page_token: str | None = None

        while len(videos) < max_items:
            params: dict[str, Any] = {
                "part": "snippet,contentDetails",
                "playlistId": uploads_playlist_id,
                "maxResults": min(PAGE_SIZE, max_items - len(videos)),
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._get("playlistItems", params, units_so_far=units)
            units += 1

            published: dict[str, datetime | None] = {}
            reached_cutoff = False
            for entry in data.get("items", []):
                content = entry.get("contentDetails") or {}
                video_id = content.get("videoId")
                if not video_id:
                    continue
                published_at = _parse_timestamp(
                    content.get("videoPublishedAt") or (entry.get("snippet") or {}).get("publishedAt")
                )
                if published_after and published_at and published_at <= published_after:
                    reached_cutoff = True
                    break
                published[video_id] = published_at

            if published:
                enriched = await self._get(
                    "videos",
                    {"part": "snippet,contentDetails", "id": ",".join(published)},
                    units_so_far=units,
                )
                units += 1

                for entry in enriched.get("items", []):
                    snippet = entry.get("snippet") or {}
                    live = snippet.get("liveBroadcastContent") or "none"
                    if exclude_live and live in ("live", "upcoming"):
                        continue
                    videos.append(
                        VideoItem(
                            video_id=entry["id"],
                            title=snippet.get("title") or entry["id"],
                            thumbnail_url=_best_thumbnail(snippet),
                            duration_seconds=parse_iso8601_duration(
                                (entry.get("contentDetails") or {}).get("duration")
                            ),
                            published_at=published.get(entry["id"])
                            or _parse_timestamp(snippet.get("publishedAt")),
                            live_broadcast_content=live,
                        )
                    )

            page_token = data.get("nextPageToken")
            if reached_cutoff or not page_token:
                break

        return videos[:max_items], units

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "YouTubeClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
