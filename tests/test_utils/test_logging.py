"""Tests for structured JSON logging."""

import json
import logging
import uuid
from datetime import datetime, timezone

import pytest

from subsync.models import HealthStatus
from subsync.utils.logging import StructuredLogger, get_logger


def last_event(caplog: pytest.LogCaptureFixture) -> dict:
    return json.loads(caplog.records[-1].getMessage())


class TestStructuredLogger:
    def test_event_and_fields_rendered_as_json(self, caplog):
        log = StructuredLogger(logging.getLogger("subsync.test.json"))

        with caplog.at_level(logging.INFO, logger="subsync.test.json"):
            log.info("sync_started", channels=3)

        assert last_event(caplog) == {"event": "sync_started", "channels": 3}

    def test_bind_adds_context_without_mutating_parent(self, caplog):
        """
        GIVEN: A logger bound to a user
        WHEN: The bound and the parent logger both emit
        THEN: Only the bound logger's events carry the user id
        """
        parent = StructuredLogger(logging.getLogger("subsync.test.bind"))
        user_id = uuid.uuid4()
        bound = parent.bind(user_id=user_id)

        with caplog.at_level(logging.INFO, logger="subsync.test.bind"):
            bound.info("lock_acquired")
            assert last_event(caplog)["user_id"] == str(user_id)

            parent.info("lock_released")
            assert "user_id" not in last_event(caplog)

    def test_non_json_values_use_str(self, caplog):
        log = StructuredLogger(logging.getLogger("subsync.test.values"))
        when = datetime(2026, 10, 1, tzinfo=timezone.utc)

        with caplog.at_level(logging.WARNING, logger="subsync.test.values"):
            log.warning("channel_unhealthy", status=HealthStatus.DEAD, at=when)

        event = last_event(caplog)
        assert event["at"] == str(when)
        assert event["status"] == str(HealthStatus.DEAD)
        assert caplog.records[-1].levelno == logging.WARNING

    @pytest.mark.parametrize("level", ["debug", "info", "warning", "error", "critical"])
    def test_levels(self, caplog, level):
        log = StructuredLogger(logging.getLogger("subsync.test.levels"))

        with caplog.at_level(logging.DEBUG, logger="subsync.test.levels"):
            getattr(log, level)("event")

        assert caplog.records[-1].levelname == level.upper()


class TestGetLogger:
    def test_single_handler_per_module(self):
        first = get_logger("subsync.test.handlers")
        second = get_logger("subsync.test.handlers")

        assert isinstance(first, StructuredLogger)
        assert len(logging.getLogger("subsync.test.handlers").handlers) == 1
        assert isinstance(second, StructuredLogger)
