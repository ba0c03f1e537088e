"""Discord webhook notifications for sync anomalies.

Sends structured summaries (title, description, color, key/value fields) to a
Discord channel via the webhook configured in DISCORD_WEBHOOK_URL.

Architecture Pattern:
    - Async HTTP client (httpx)
    - Message sanitization (Discord length limits)
    - Timeout handling (5s max)
    - Graceful degradation: delivery failures are logged, never raised, so a
      dead webhook cannot affect sync correctness
"""

import httpx

from subsync.config import get_discord_webhook_url
from subsync.utils.logging import get_logger

log = get_logger(__name__)

MESSAGE_LIMIT = 2000
FIELD_VALUE_LIMIT = 1024
MAX_FIELDS = 25  # Discord embed field limit

COLORS = {
    "CRITICAL": 0xFF0000,  # Red
    "ERROR": 0xFF4500,  # Orange red
    "WARNING": 0xFFA500,  # Orange
    "INFO": 0x0000FF,  # Blue
    "SUCCESS": 0x00FF00,  # Green
}


async def send_alert(
    level: str,
    message: str,
    details: dict[str, object] | None = None,
    title: str | None = None,
) -> bool:
    """Send an alert embed to the Discord webhook.

    Args:
        level: "CRITICAL", "ERROR", "WARNING", "INFO" or "SUCCESS"
        message: Embed description (truncated to 2000 chars)
        details: Key/value fields rendered inline (values truncated to 1024 chars)
        title: Embed title (defaults to "<level> Alert")

    Returns:
        True if Discord accepted the message, False otherwise (including
        when no webhook is configured).

    Example:
        >>> await send_alert(
        ...     level="WARNING",
        ...     message="12% of channels failed during sync",
        ...     details={"Channels Processed": 50, "Channels Failed": 6},
        ... )
    """
    webhook_url = get_discord_webhook_url()
    if not webhook_url:
        log.debug("discord_webhook_not_configured")
        return False

    sanitized_message = message[:MESSAGE_LIMIT]

    payload = {
        "embeds": [
            {
                "title": (title or f"{level} Alert")[:256],
                "description": sanitized_message,
                "fields": [
                    {"name": str(key)[:256], "value": str(value)[:FIELD_VALUE_LIMIT], "inline": True}
                    for key, value in list((details or {}).items())[:MAX_FIELDS]
                ],
                "color": COLORS.get(level, 0x808080),  # Default gray
            }
        ],
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(webhook_url, json=payload, timeout=5.0)
            response.raise_for_status()
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", webhook_url=webhook_url[:50])
        return False
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
        return False
    except httpx.HTTPError as e:
        log.error("discord_webhook_failed", error=str(e))
        return False

    log.info("discord_alert_sent", level=level, message=message[:100])
    return True
