"""Integration tests for complete subscription lifecycle scenarios.

Each test drives signed webhooks through the receiver and processor and
checks the resulting subscription record.
"""

import itertools
import threading
from unittest.mock import patch

import pytest

from billing_sync.models import EventOutcome, IntentStatus, SubscriptionStatus
from conftest import DAY_MILLIS, START_MILLIS

SUBSCRIPTION = {"customer_id": "42", "provider_subscription_id": "psub_1"}


class TestScenarios:
    """Checkout, payment failure, out-of-order cancellation and missed webhooks."""

    def test_checkout_creates_active_subscription(self, harness):
        """checkout.completed for plan pro, customer 42."""
        session, result = harness.subscribe(customer_id="42", plan_id="pro")

        assert result.outcome == EventOutcome.APPLIED
        subscription = harness.subscription()
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.customer_id == "42"
        assert subscription.plan_id == "pro"
        assert subscription.current_period_start_millis == START_MILLIS
        assert subscription.current_period_end_millis > START_MILLIS
        intent = harness.repository.intents.find_by_intent_id(session.intent_id)
        assert intent.status == IntentStatus.COMPLETED

    def test_payment_failure_redelivered(self, harness):
        """Provider retry of invoice.payment_failed moves active -> past_due once."""
        harness.subscribe()

        first = harness.deliver_and_process("evt_fail", "invoice.payment_failed", SUBSCRIPTION, sequence=2)
        second = harness.deliver_and_process("evt_fail", "invoice.payment_failed", SUBSCRIPTION, sequence=2)

        assert first.outcome == EventOutcome.APPLIED
        assert first.previous_status == SubscriptionStatus.ACTIVE
        assert second.outcome == EventOutcome.IGNORED_DUPLICATE
        subscription = harness.subscription()
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.payment_failure_count == 1

    def test_late_lower_sequence_event_is_stale(self, harness):
        """subscription.deleted (10) before invoice.payment_failed (7) keeps the subscription canceled."""
        harness.subscribe()

        deleted = harness.deliver_and_process("evt_del", "subscription.deleted", SUBSCRIPTION, sequence=10)
        failed = harness.deliver_and_process("evt_fail", "invoice.payment_failed", SUBSCRIPTION, sequence=7)

        assert deleted.outcome == EventOutcome.APPLIED
        assert failed.outcome == EventOutcome.IGNORED_STALE
        subscription = harness.subscription()
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.last_applied_sequence == 10
        assert harness.repository.events.dead_letters() == []

    @patch("billing_sync.state_logger.logger")
    def test_missed_cancellation_reconciled(self, mock_logger, harness, provider):
        """Provider reports canceled while the local record is active."""
        harness.subscribe()
        provider.set_subscription(**SUBSCRIPTION, plan_id="pro", status="canceled", sequence=3)

        run = harness.reconciliation.run_once()

        assert run.corrected == 1
        assert harness.subscription().status == SubscriptionStatus.CANCELED
        corrections = [
            c for c in mock_logger.warning.call_args_list if c.args[0] == "reconciliation_correction_applied"
        ]
        assert len(corrections) == 1
        assert corrections[0].kwargs["reconciliation"] is True
        assert corrections[0].kwargs["before"]["status"] == "active"
        assert corrections[0].kwargs["after"]["status"] == "canceled"


class TestIdempotence:
    """Redelivery never applies an event twice."""

    def test_many_sequential_deliveries(self, harness):
        harness.subscribe()

        outcomes = [
            harness.deliver_and_process("evt_fail", "invoice.payment_failed", SUBSCRIPTION, sequence=2).outcome
            for _ in range(5)
        ]

        assert outcomes.count(EventOutcome.APPLIED) == 1
        assert outcomes.count(EventOutcome.IGNORED_DUPLICATE) == 4
        assert harness.repository.events.count() == 2

    def test_concurrent_deliveries(self, harness):
        """Parallel deliveries of the same event apply it exactly once."""
        harness.subscribe()
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def deliver():
            barrier.wait()
            result = harness.deliver_and_process("evt_fail", "invoice.payment_failed", SUBSCRIPTION, sequence=2)
            with outcomes_lock:
                outcomes.append(result.outcome)

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert outcomes.count(EventOutcome.APPLIED) == 1
        assert outcomes.count(EventOutcome.IGNORED_DUPLICATE) == 7
        assert harness.subscription().payment_failure_count == 1

    def test_concurrent_events_for_one_customer(self, harness):
        """Different events for one customer are serialized without lost updates."""
        harness.subscribe()
        events = [(f"evt_{n}", n) for n in range(2, 12)]

        def deliver(event_id, sequence):
            harness.deliver_and_process(
                event_id, "subscription.updated", {**SUBSCRIPTION, "cancel_at_period_end": sequence % 2 == 0},
                sequence=sequence,
            )

        threads = [threading.Thread(target=deliver, args=event) for event in events]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        subscription = harness.subscription()
        assert subscription.last_applied_sequence == 11
        assert subscription.cancel_at_period_end is False
        outcomes = [harness.repository.events.get(event_id).outcome for event_id, _ in events]
        assert set(outcomes) <= {EventOutcome.APPLIED, EventOutcome.IGNORED_STALE}


class TestOrdering:
    """Out-of-order delivery never regresses state, and reconciliation converges."""

    def test_sequence_never_decreases(self, harness):
        harness.subscribe()
        seen = []

        for event_id, sequence in [("evt_a", 5), ("evt_b", 3), ("evt_c", 8), ("evt_d", 6), ("evt_e", 9)]:
            harness.deliver_and_process(event_id, "subscription.updated", SUBSCRIPTION, sequence=sequence)
            seen.append(harness.subscription().last_applied_sequence)

        assert seen == sorted(seen)
        assert seen[-1] == 9

    def test_sequence_defaults_to_created(self, harness, clock):
        harness.subscribe(sequence=1)
        clock.advance(seconds=1)
        later = clock.now_millis()

        harness.deliver_and_process("evt_late", "invoice.payment_failed", SUBSCRIPTION, created=later)
        stale = harness.deliver_and_process(
            "evt_early", "invoice.payment_succeeded", SUBSCRIPTION, created=later - 500
        )

        assert stale.outcome == EventOutcome.IGNORED_STALE
        assert harness.subscription().last_applied_sequence == later

    @pytest.mark.parametrize(
        "order",
        list(itertools.permutations(["failed", "succeeded", "upgraded"])),
        ids=lambda order: "-".join(order),
    )
    def test_any_order_converges_after_reconciliation(self, harness, provider, order):
        events = {
            "failed": ("evt_fail", "invoice.payment_failed", SUBSCRIPTION, 2),
            "succeeded": ("evt_paid", "invoice.payment_succeeded", SUBSCRIPTION, 3),
            "upgraded": ("evt_upgrade", "subscription.updated", {**SUBSCRIPTION, "plan_id": "pro.yearly"}, 4),
        }
        harness.subscribe()
        for name in order:
            event_id, event_type, data, sequence = events[name]
            harness.deliver_and_process(event_id, event_type, data, sequence=sequence)

        assert harness.subscription().last_applied_sequence == 4
        assert harness.subscription().plan_id == "pro.yearly"

        provider.set_subscription(**SUBSCRIPTION, plan_id="pro.yearly", status="active", sequence=4)
        harness.reconciliation.run_once()

        subscription = harness.subscription()
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_id == "pro.yearly"
        assert subscription.payment_failure_count == 0


class TestExpiry:
    """Time-driven transitions."""

    def test_grace_period_expiry_cancels(self, harness, clock):
        harness.subscribe()
        harness.deliver_and_process("evt_fail", "invoice.payment_failed", SUBSCRIPTION, sequence=2)
        grace_end = harness.subscription().grace_period_end_millis
        assert grace_end == START_MILLIS + 7 * DAY_MILLIS

        clock.advance(days=7)
        assert harness.reconciliation.expire_grace_periods(clock.now_millis()) == 1

        subscription = harness.subscription()
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.canceled_at_millis == grace_end

    def test_payment_recovery_stops_grace_period(self, harness, clock):
        harness.subscribe()
        harness.deliver_and_process("evt_fail", "invoice.payment_failed", SUBSCRIPTION, sequence=2)
        harness.deliver_and_process("evt_paid", "invoice.payment_succeeded", SUBSCRIPTION, sequence=3)

        clock.advance(days=8)

        assert harness.reconciliation.expire_grace_periods(clock.now_millis()) == 0
        assert harness.subscription().status == SubscriptionStatus.ACTIVE

    def test_expired_intent_completion_rejected(self, harness, clock):
        session = harness.checkout.create_intent("42", "pro", "click-1")
        clock.advance(days=1, seconds=1)
        data = {**SUBSCRIPTION, "intent_id": session.intent_id, "plan_id": "pro"}

        result = harness.deliver_and_process("evt_checkout", "checkout.completed", data, sequence=1)

        assert result.outcome == EventOutcome.IGNORED_STALE
        assert harness.subscription() is None
        harness.checkout.expire_stale()
        assert harness.repository.intents.find_by_intent_id(session.intent_id).status == IntentStatus.EXPIRED

    def test_new_checkout_after_cancellation(self, harness):
        harness.subscribe(provider_subscription_id="psub_1")
        harness.deliver_and_process("evt_del", "subscription.deleted", SUBSCRIPTION, sequence=2)

        _, result = harness.subscribe(provider_subscription_id="psub_2", sequence=1)

        assert result.outcome == EventOutcome.APPLIED
        assert harness.repository.subscriptions.current_for_customer("42").provider_subscription_id == "psub_2"
        assert harness.subscription("psub_1").status == SubscriptionStatus.CANCELED
