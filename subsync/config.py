"""Configuration management for the subscription sync service.

This module provides centralized configuration loading from environment variables.
Values that cannot change during the process lifetime are cached.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    YOUTUBE_API_KEY: API key used by scheduled jobs that run without a user token
    YOUTUBE_DAILY_QUOTA_LIMIT: Daily YouTube Data API allowance (default: 10000)
    YOUTUBE_QUOTA_RESERVE_UNITS: Units withheld from real-time admission (default: 0)
    YOUTUBE_REQUESTS_PER_SECOND: Client-side request rate (default: 10)
    DISCORD_WEBHOOK_URL: Alert webhook (optional)
    CRON_SECRET: Bearer secret for cron endpoints (optional, cron disabled if unset)
    SYNC_FORCED_RELEASE_SECONDS: Delay before a cancelled lock is force-released (default: 5)

Usage:
    from subsync.config import get_daily_quota_limit, get_database_url

    limit = get_daily_quota_limit()  # 10000 unless overridden
    db_url = get_database_url()  # Raises if DATABASE_URL not set
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

DEFAULT_DAILY_QUOTA_LIMIT = 10000
DEFAULT_REQUESTS_PER_SECOND = 10
DEFAULT_FORCED_RELEASE_SECONDS = 5


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    """Read an integer environment variable, falling back to default on bad input.

    Args:
        name: Environment variable name.
        default: Value used when unset or invalid.
        minimum: Smallest accepted value.

    Returns:
        Parsed integer, or default.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default

    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_config_value", variable=name, value=raw, default=default)
        return default

    if value < minimum:
        log.warning(
            "config_value_below_minimum",
            variable=name,
            value=value,
            minimum=minimum,
            default=default,
        )
        return default

    return value


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_youtube_api_key() -> str | None:
    """Get YouTube Data API key from environment.

    Scheduled jobs (dead-channel retry) read public playlist data and have no
    user OAuth token, so they authenticate with a project API key instead.

    Returns:
        API key string, or None if not set.
    """
    return os.getenv("YOUTUBE_API_KEY")


def get_daily_quota_limit() -> int:
    """Get the daily YouTube Data API quota ceiling.

    Environment Variable:
        YOUTUBE_DAILY_QUOTA_LIMIT: Units per day (default: 10000)

    Returns:
        Positive integer ceiling.
    """
    return _get_int("YOUTUBE_DAILY_QUOTA_LIMIT", DEFAULT_DAILY_QUOTA_LIMIT, minimum=1)


def get_quota_reserve_units() -> int:
    """Get the number of quota units withheld from real-time admission.

    Environment Variable:
        YOUTUBE_QUOTA_RESERVE_UNITS: Reserve buffer (default: 0)

    Returns:
        Non-negative integer.
    """
    return _get_int("YOUTUBE_QUOTA_RESERVE_UNITS", 0)


def get_youtube_requests_per_second() -> int:
    """Get the client-side request rate for the YouTube client."""
    return _get_int("YOUTUBE_REQUESTS_PER_SECOND", DEFAULT_REQUESTS_PER_SECOND, minimum=1)


def get_discord_webhook_url() -> str | None:
    """Get Discord webhook URL for alert notifications.

    Returns:
        Webhook URL, or None when external notification is disabled.
    """
    return os.getenv("DISCORD_WEBHOOK_URL")


def get_cron_secret() -> str | None:
    """Get the shared secret that cron callers present as a Bearer token.

    Note:
        Returns None when CRON_SECRET is not set. Cron endpoints reject every
        request in that case rather than running unauthenticated.
    """
    return os.getenv("CRON_SECRET")


def get_forced_release_seconds() -> int:
    """Get the grace period between a cancellation request and forced lock release."""
    return _get_int("SYNC_FORCED_RELEASE_SECONDS", DEFAULT_FORCED_RELEASE_SECONDS)


def get_scheduler_intervals() -> dict[str, int]:
    """Get scheduler periods in hours for the periodic jobs.

    Environment Variables:
        SCHEDULER_DEAD_CHANNEL_INTERVAL_HOURS: default 24
        SCHEDULER_ACTIVITY_INTERVAL_HOURS: default 168 (weekly)
        SCHEDULER_PROGRESS_CLEANUP_INTERVAL_HOURS: default 24
        SCHEDULER_REFRESH_HIGH_INTERVAL_HOURS: default 2
        SCHEDULER_REFRESH_MEDIUM_INTERVAL_HOURS: default 6
        SCHEDULER_REFRESH_LOW_INTERVAL_HOURS: default 24
        SCHEDULER_RESUME_PAUSED_INTERVAL_HOURS: default 1

    Returns:
        Mapping of job name to interval in hours.
    """
    return {
        "retry_dead_channels": _get_int("SCHEDULER_DEAD_CHANNEL_INTERVAL_HOURS", 24, minimum=1),
        "update_activity_levels": _get_int("SCHEDULER_ACTIVITY_INTERVAL_HOURS", 168, minimum=1),
        "cleanup_progress": _get_int("SCHEDULER_PROGRESS_CLEANUP_INTERVAL_HOURS", 24, minimum=1),
        "refresh_high": _get_int("SCHEDULER_REFRESH_HIGH_INTERVAL_HOURS", 2, minimum=1),
        "refresh_medium": _get_int("SCHEDULER_REFRESH_MEDIUM_INTERVAL_HOURS", 6, minimum=1),
        "refresh_low": _get_int("SCHEDULER_REFRESH_LOW_INTERVAL_HOURS", 24, minimum=1),
        "resume_paused_syncs": _get_int("SCHEDULER_RESUME_PAUSED_INTERVAL_HOURS", 1, minimum=1),
    }
