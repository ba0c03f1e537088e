"""Shared exceptions for the application.

This module contains exception classes used across multiple services
to avoid cross-domain dependencies between services.
"""

import enum


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents a job from
    running at all (e.g., scheduled retry with no YOUTUBE_API_KEY set).
    """

    pass


class InvalidPhaseTransitionError(Exception):
    """Raised when a sync run attempts a phase change the state machine forbids.

    Attributes:
        from_phase: The SyncPhase the run was in.
        to_phase: The SyncPhase that was attempted.

    Example:
        >>> tracker.progress.phase
        <SyncPhase.COMPLETE: 'complete'>
        >>> await tracker.set_phase(SyncPhase.SYNCING_VIDEOS)
        InvalidPhaseTransitionError: Invalid phase transition: complete → syncing_videos
    """

    def __init__(self, message: str, from_phase: "SyncPhase", to_phase: "SyncPhase"):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_phase.value}, to={self.to_phase.value})"


class YouTubeErrorCode(enum.Enum):
    """Classified failure modes of the YouTube Data API."""

    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    PRIVATE_OR_DELETED = "private_or_deleted"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class YouTubeAPIError(Exception):
    """Raised for any failed YouTube Data API call after classification.

    Callers branch on ``code`` and ``retryable`` instead of HTTP details.

    Attributes:
        code: Classified YouTubeErrorCode.
        status_code: HTTP status, or None for transport failures.
        retryable: True when a later attempt may succeed (rate limit, network, 5xx).
        reason: Provider reason string (e.g. "playlistNotFound"), if any.
        units_used: Quota units consumed by the call before it failed.
    """

    def __init__(
        self,
        message: str,
        code: YouTubeErrorCode,
        status_code: int | None = None,
        retryable: bool = False,
        reason: str | None = None,
        units_used: int = 0,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.reason = reason
        self.units_used = units_used
        super().__init__(message)

    def __str__(self) -> str:
        status = self.status_code if self.status_code is not None else "n/a"
        return f"{self.message} (code={self.code.value}, status={status})"

    @property
    def is_quota_exceeded(self) -> bool:
        return self.code is YouTubeErrorCode.QUOTA_EXCEEDED

    @property
    def is_not_found(self) -> bool:
        return self.code is YouTubeErrorCode.NOT_FOUND
