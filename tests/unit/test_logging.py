"""Tests for structured logging functionality.

Tests logging configuration, context binding, and the custom processors.
"""

import os

import pytest
import structlog

from vpn_billing.logging_config import (
    APP_NAME,
    add_app_context,
    bind_context,
    clear_context,
    configure_logging,
    drop_debug_in_production,
    get_logger,
    is_debug_mode,
    log_context,
    redact_secrets,
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
        """Logging at every level does not raise."""
        logger = get_logger("test.basic")

        logger.debug("debug_message", level="debug")
        logger.info("info_message", level="info")
        logger.warning("warning_message", level="warning")
        logger.error("error_message", level="error")

    def test_structured_values(self, setup_logging):
        logger = get_logger("test.structured")
        logger.info(
            "payment_processing",
            transaction_id="2d0a8f12-000f-5000-9000-1b5c7d1a3e21",
            telegram_id=123456789,
            amount="300.00",
            topup=True,
            referrer=None,
        )

    def test_exception_logging(self, setup_logging):
        logger = get_logger("test.exceptions")
        try:
            _ = {"a": 1}["b"]
        except KeyError as e:
            logger.error("lookup_failed", error=str(e), exc_info=True)

    def test_json_and_console_renderers(self):
        configure_logging(log_level="INFO", json_format=True, include_timestamp=False)
        get_logger("test.json").info("json_event", key="value")
        configure_logging(log_level="INFO", json_format=False)
        get_logger("test.console").info("console_event", key="value")


class TestContextBinding:
    """Test request and payment context binding."""

    def test_bind_context(self):
        bind_context(request_id="req-12345", telegram_id=42)
        assert structlog.contextvars.get_contextvars() == {
            "request_id": "req-12345",
            "telegram_id": 42,
        }

    def test_rebinding_overwrites(self):
        bind_context(request_id="req-1")
        bind_context(request_id="req-2", transaction_id="pay-1")
        context = structlog.contextvars.get_contextvars()
        assert context["request_id"] == "req-2"
        assert context["transaction_id"] == "pay-1"

    def test_unbind_context(self):
        bind_context(request_id="req-1", transaction_id="pay-1")
        unbind_context("transaction_id")
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}

    def test_log_context_scoped_to_block(self):
        bind_context(request_id="req-1")
        with log_context(reconciliation_pass="2025-01-01T12:00:00"):
            assert structlog.contextvars.get_contextvars()["reconciliation_pass"] == "2025-01-01T12:00:00"
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}

    def test_log_context_unbinds_on_error(self):
        with pytest.raises(RuntimeError):
            with log_context(telegram_id=42):
                raise RuntimeError("boom")
        assert structlog.contextvars.get_contextvars() == {}

    def test_clear_context(self):
        bind_context(request_id="req-1")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}


class TestProcessors:
    """Test the custom structlog processors."""

    def test_app_context_added(self):
        event = add_app_context(None, "info", {"event": "startup"})
        assert event["app"] == APP_NAME

    def test_secrets_redacted(self):
        event = redact_secrets(
            None, "info", {"event": "provider_configured", "api_key": "secret", "base_url": "http://panel"}
        )
        assert event["api_key"] == "***"
        assert event["base_url"] == "http://panel"

    def test_empty_secret_left_as_is(self):
        event = redact_secrets(None, "info", {"event": "telegram_configured", "bot_token": ""})
        assert event["bot_token"] == ""

    def test_debug_dropped_outside_debug_mode(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "INFO")
        with pytest.raises(structlog.DropEvent):
            drop_debug_in_production(None, "debug", {"event": "noise"})

    def test_debug_kept_in_debug_mode(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        event = {"event": "detail"}
        assert drop_debug_in_production(None, "debug", event) is event

    def test_info_never_dropped(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "INFO")
        event = {"event": "startup"}
        assert drop_debug_in_production(None, "info", event) is event

    def test_is_debug_mode(self, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        assert is_debug_mode() is False
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        assert is_debug_mode() is True
