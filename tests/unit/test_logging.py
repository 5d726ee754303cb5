"""Tests for structured logging functionality.

Tests logging configuration, context binding, secret masking and the identifiers helper.
"""

import os

import pytest
import structlog

from billing_sync.logging_config import (
    REDACTED,
    add_service_name,
    bind_context,
    clear_context,
    configure_logging,
    event_context,
    get_logger,
    redact_secrets,
    short_id,
    unbind_context,
)


@pytest.fixture(scope="module")
def setup_logging():
    """Configure logging for all tests in this module."""
    log_level = os.getenv("LOG_LEVEL", "INFO")
    log_format = os.getenv("LOG_FORMAT", "console")
    json_mode = log_format.lower() == "json"

    configure_logging(log_level=log_level, json_format=json_mode)
    yield


@pytest.fixture(autouse=True)
def cleanup_context():
    """Ensure context is cleared before and after each test."""
    clear_context()
    yield
    clear_context()


class TestBasicLogging:
    """Test basic logging at different levels."""

    def test_all_levels(self, setup_logging):
        """Test logging at all levels in sequence."""
        logger = get_logger("test.basic")

        logger.debug("debug_message", level="debug")
        logger.info("info_message", level="info")
        logger.warning("warning_message", level="warning")
        logger.error("error_message", level="error")

    def test_exception_logging_with_traceback(self, setup_logging):
        """Test logging exceptions with stack traces."""
        logger = get_logger("test.exceptions")

        try:
            {"a": 1}["b"]
        except KeyError as e:
            logger.error("lookup_failed", error=str(e), exc_info=True)

    def test_json_mode_configures(self):
        """Test that JSON output can be configured."""
        configure_logging(log_level="DEBUG", json_format=True)
        get_logger("test.json").info("json_event", customer_id="42")


class TestContextualLogging:
    """Test logging with bound context."""

    def test_bind_context(self, setup_logging):
        """Test that bound values are visible to every logger."""
        bind_context(request_id="req-12345", customer_id="42")

        context = structlog.contextvars.get_contextvars()
        assert context["request_id"] == "req-12345"
        assert context["customer_id"] == "42"

        get_logger("test.context").info("subscription_lookup_started")

    def test_unbind_context(self, setup_logging):
        bind_context(request_id="req-1", customer_id="42")
        unbind_context("customer_id")

        context = structlog.contextvars.get_contextvars()
        assert "customer_id" not in context
        assert context["request_id"] == "req-1"

    def test_clear_context(self, setup_logging):
        """Test clearing context."""
        bind_context(request_id="req-12345")
        clear_context()

        assert structlog.contextvars.get_contextvars() == {}


class TestShortId:
    """Test short_id helper."""

    def test_short_values_unchanged(self):
        assert short_id("evt_123") == "evt_123"

    def test_long_values_truncated(self):
        value = "evt_" + "a" * 40

        assert short_id(value) == value[:16] + "..."
        assert short_id(value, length=8) == value[:8] + "..."


@pytest.mark.parametrize("level,message", [
    ("debug", "debug_message"),
    ("info", "info_message"),
    ("warning", "warning_message"),
    ("error", "error_message"),
])
def test_log_levels(setup_logging, level, message):
    """Test logging at different levels with parametrization."""
    logger = get_logger("test.parametrized")
    log_method = getattr(logger, level)
    log_method(message, level=level)


class TestEventContext:
    """Test scoped context for event workers."""

    def test_bound_inside_block(self, setup_logging):
        with event_context(provider_event_id="evt_1", attempt=2):
            context = structlog.contextvars.get_contextvars()
            assert context["provider_event_id"] == "evt_1"
            assert context["attempt"] == 2

        assert "provider_event_id" not in structlog.contextvars.get_contextvars()

    def test_outer_context_kept(self, setup_logging):
        bind_context(request_id="req-1")

        with event_context(provider_event_id="evt_1"):
            pass

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}


class TestProcessors:
    """Test custom processors."""

    def test_secrets_redacted(self):
        event_dict = {"event": "webhook_received", "signature_header": "t=1,v1=abc", "api_key": "sk_live_1"}

        result = redact_secrets(None, "info", event_dict)

        assert result["signature_header"] == REDACTED
        assert result["api_key"] == REDACTED
        assert result["event"] == "webhook_received"

    def test_empty_secret_left_alone(self):
        assert redact_secrets(None, "info", {"api_key": ""})["api_key"] == ""

    def test_service_name(self):
        assert add_service_name(None, "info", {"event": "x"})["service"] == "billing-sync"
