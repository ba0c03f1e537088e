"""Structured Logging Configuration.

Services log through ``get_logger(__name__)``, which emits one JSON object per
event on stdout. The application layer (config, FastAPI app, scheduler) uses
``structlog`` directly; ``configure_logging`` points structlog at the same
JSON output so both streams share a format.

Configuration:
- JSON output format (for log aggregation)
- Context binding (user_id, sync_id) via ``StructuredLogger.bind``
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL
"""

import json
import logging
import sys
from typing import Any

import structlog


class StructuredLogger:
    """Wrapper around standard Logger with structured JSON logging support.

    Keyword arguments become JSON fields. UUIDs, datetimes and enums are
    rendered with ``str`` so callers can pass model attributes directly.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = context or {}

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger that adds ``kwargs`` to every event."""
        return StructuredLogger(self._logger, {**self._context, **kwargs})

    def _format_json(self, event: str, **kwargs: Any) -> str:
        log_entry = {"event": event, **self._context, **kwargs}
        return json.dumps(log_entry, default=str)

    def info(self, event: str, **kwargs: Any) -> None:
        self._logger.info(self._format_json(event, **kwargs))

    def error(self, event: str, **kwargs: Any) -> None:
        self._logger.error(self._format_json(event, **kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self._logger.warning(self._format_json(event, **kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._logger.debug(self._format_json(event, **kwargs))

    def critical(self, event: str, **kwargs: Any) -> None:
        self._logger.critical(self._format_json(event, **kwargs))


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured StructuredLogger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return StructuredLogger(logger)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog for JSON output.

    Called once at process start (FastAPI lifespan, scheduler main).

    Args:
        level: Minimum level emitted by structlog loggers.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
