"""Tests for state change logging functionality."""

from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

from vpn_billing.models.account import AccountStatus
from vpn_billing.models.subscription import SubscriptionState
from vpn_billing.state_logger import (
    log_account_status_change,
    log_balance_change,
    log_expiry_change,
    log_subscription_state_change,
)

REMOTE_ID = "6f1b1c2e-0c7e-4f57-b1c9-6a9a5a4b2f10"


@pytest.fixture
def mock_logger():
    with patch("vpn_billing.state_logger.logger") as logger:
        yield logger


class TestSubscriptionStateChanges:
    def test_logs_transition(self, mock_logger):
        log_subscription_state_change(
            42,
            REMOTE_ID,
            SubscriptionState.ACTIVE.value,
            SubscriptionState.EXPIRED.value,
            reason="lapsed",
        )

        mock_logger.info.assert_called_once()
        args, kwargs = mock_logger.info.call_args
        assert args == ("subscription_state_changed",)
        assert kwargs["telegram_id"] == 42
        assert kwargs["old_state"] == "active"
        assert kwargs["new_state"] == "expired"
        assert kwargs["reason"] == "lapsed"

    def test_long_remote_id_shortened(self, mock_logger):
        log_subscription_state_change(42, REMOTE_ID, "none", "active")
        assert mock_logger.info.call_args.kwargs["remote_id"] == REMOTE_ID[:12] + "..."

    def test_extra_context_passed_through(self, mock_logger):
        log_subscription_state_change(42, "r-1", "active", "expired", expired_at="2025-01-31T12:00:00")
        assert mock_logger.info.call_args.kwargs["expired_at"] == "2025-01-31T12:00:00"


class TestAccountStatusChanges:
    def test_logs_status(self, mock_logger):
        log_account_status_change(
            42, AccountStatus.EXPIRED.value, AccountStatus.ACTIVE.value, reason="repurchase"
        )
        args, kwargs = mock_logger.info.call_args
        assert args == ("account_status_changed",)
        assert kwargs["old_status"] == "expired"
        assert kwargs["new_status"] == "active"


class TestBalanceChanges:
    def test_logs_signed_delta(self, mock_logger):
        log_balance_change(7, Decimal("-255.00"), Decimal("45.00"), "purchase_reserve")
        args, kwargs = mock_logger.info.call_args
        assert args == ("balance_changed",)
        assert kwargs["delta"] == "-255.00"
        assert kwargs["new_balance"] == "45.00"
        assert kwargs["reason"] == "purchase_reserve"


class TestExpiryChanges:
    def test_extension_days_computed(self, mock_logger):
        log_expiry_change(
            42,
            REMOTE_ID,
            datetime(2025, 1, 31, 12, 0),
            datetime(2025, 3, 2, 12, 0),
            reason="extended",
        )
        kwargs = mock_logger.info.call_args.kwargs
        assert kwargs["extension_days"] == 30
        assert kwargs["old_expiry"] == "2025-01-31T12:00:00"

    def test_new_subscription_has_no_old_expiry(self, mock_logger):
        log_expiry_change(42, "r-1", None, datetime(2025, 1, 31, 12, 0), reason="created")
        kwargs = mock_logger.info.call_args.kwargs
        assert kwargs["old_expiry"] is None
        assert kwargs["extension_days"] is None
