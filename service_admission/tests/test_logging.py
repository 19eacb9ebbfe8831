"""
Tests for the structured logging configuration.
"""

import json
import logging
from datetime import datetime

import pytest

from shared.logging import clear_context, configure_logging, get_logger, set_client_context, set_request_id


class TestLogging:
    """Test cases for shared logging."""

    @pytest.fixture
    def rendered(self, caplog):
        configure_logging("admission", "info")
        caplog.set_level(logging.INFO)

        def _emit(name, event, **fields):
            get_logger(name).info(event, **fields)
            return json.loads(caplog.records[-1].getMessage())

        yield _emit
        clear_context()

    def test_timestamp_is_iso_formatted(self, rendered):
        event = rendered("admission.test.timestamp", "hello")

        assert isinstance(event["timestamp"], str)
        datetime.fromisoformat(event["timestamp"].replace("Z", "+00:00"))

    def test_correlation_context_is_attached(self, rendered):
        set_request_id("req-42")
        set_client_context(client_id="ip:10.0.0.1", principal="user1")

        event = rendered("admission.test.correlation", "handled")

        assert event["service"] == "admission"
        assert event["request_id"] == "req-42"
        assert event["client_id"] == "ip:10.0.0.1"
        assert event["principal"] == "user1"

    def test_cleared_context_is_not_attached(self, rendered):
        set_request_id("req-43")
        clear_context()

        event = rendered("admission.test.cleared", "handled")

        assert "request_id" not in event
