"""Tests for state change logging functionality.

Tests the audit log helpers used for subscription transitions, event
outcomes, reconciliation corrections and checkout intents.
"""

from unittest.mock import patch

from billing_sync.models import EventOutcome, IntentStatus, SubscriptionStatus
from billing_sync.state_logger import (
    log_event_outcome,
    log_intent_status_change,
    log_reconciliation_correction,
    log_subscription_state_change,
)


class TestSubscriptionStateChanges:
    """Test subscription transition logging."""

    @patch("billing_sync.state_logger.logger")
    def test_status_values_are_unwrapped(self, mock_logger):
        """Test that enum statuses are logged as plain values."""
        log_subscription_state_change(
            "sub_1",
            "42",
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            reason="invoice.payment_failed",
            sequence=7,
        )

        mock_logger.info.assert_called_once()
        args, kwargs = mock_logger.info.call_args
        assert args[0] == "subscription_state_changed"
        assert kwargs["old_status"] == "active"
        assert kwargs["new_status"] == "past_due"
        assert kwargs["reason"] == "invoice.payment_failed"
        assert kwargs["sequence"] == 7

    @patch("billing_sync.state_logger.logger")
    def test_new_subscription_has_no_old_status(self, mock_logger):
        log_subscription_state_change("sub_1", "42", None, SubscriptionStatus.ACTIVE)

        _, kwargs = mock_logger.info.call_args
        assert kwargs["old_status"] is None
        assert kwargs["new_status"] == "active"


class TestEventOutcomes:
    """Test inbound event outcome logging."""

    @patch("billing_sync.state_logger.logger")
    def test_applied_logged_at_info(self, mock_logger):
        log_event_outcome("evt_1", "checkout.completed", EventOutcome.APPLIED, subscription_id="sub_1")

        mock_logger.info.assert_called_once()
        mock_logger.warning.assert_not_called()
        _, kwargs = mock_logger.info.call_args
        assert kwargs["outcome"] == "applied"
        assert kwargs["subscription_id"] == "sub_1"

    @patch("billing_sync.state_logger.logger")
    def test_failed_logged_at_warning(self, mock_logger):
        log_event_outcome("evt_1", "invoice.payment_failed", EventOutcome.FAILED, detail="invalid_transition")

        mock_logger.warning.assert_called_once()
        _, kwargs = mock_logger.warning.call_args
        assert kwargs["outcome"] == "failed"
        assert kwargs["detail"] == "invalid_transition"


class TestReconciliationCorrections:
    """Test reconciliation correction logging."""

    @patch("billing_sync.state_logger.logger")
    def test_correction_carries_marker(self, mock_logger):
        """Test that corrections are flagged so they can be filtered."""
        log_reconciliation_correction(
            "psub_1",
            "42",
            before={"status": "active"},
            after={"status": "canceled"},
            provider_event_id="subscription_resync_x",
        )

        mock_logger.warning.assert_called_once()
        args, kwargs = mock_logger.warning.call_args
        assert args[0] == "reconciliation_correction_applied"
        assert kwargs["reconciliation"] is True
        assert kwargs["before"] == {"status": "active"}
        assert kwargs["after"] == {"status": "canceled"}


class TestIntentStatusChanges:
    """Test checkout intent logging."""

    @patch("billing_sync.state_logger.logger")
    def test_intent_completion(self, mock_logger):
        log_intent_status_change(
            "intent_1", "42", IntentStatus.PENDING, IntentStatus.COMPLETED, reason="checkout_completed"
        )

        args, kwargs = mock_logger.info.call_args
        assert args[0] == "checkout_intent_status_changed"
        assert kwargs["old_status"] == "pending"
        assert kwargs["new_status"] == "completed"
