"""Tests for IdempotencyStore - atomic claims over the inbound event log."""

from threading import Barrier, Thread

import pytest

from billing_sync.models import EventOutcome, InboundEvent
from billing_sync.repositories.event_store import EventStore
from billing_sync.repositories.idempotency_store import ClaimResult, IdempotencyStore
from billing_sync.repositories.undo_log import UndoLog

NOW = 1_700_000_000_000
DAY = 24 * 60 * 60 * 1000


def make_event(event_id: str = "evt_1") -> InboundEvent:
    return InboundEvent(
        provider_event_id=event_id,
        type="invoice.payment_failed",
        payload={"id": event_id},
        sequence=1,
        received_at_millis=NOW,
    )


@pytest.fixture
def events():
    store = EventStore()
    store.append(make_event())
    return store


@pytest.fixture
def claims(events):
    return IdempotencyStore(events)


class TestTryClaim:
    """Test claiming events."""

    def test_first_claim_wins(self, claims):
        assert claims.try_claim("evt_1", NOW) == ClaimResult.CLAIMED
        assert claims.is_claimed("evt_1")

    def test_second_claim_while_in_flight(self, claims):
        claims.try_claim("evt_1", NOW)

        assert claims.try_claim("evt_1", NOW) == ClaimResult.ALREADY_CLAIMED

    def test_claim_after_outcome(self, claims):
        claims.try_claim("evt_1", NOW)
        claims.mark_outcome("evt_1", EventOutcome.APPLIED, NOW)

        assert claims.try_claim("evt_1", NOW) == ClaimResult.ALREADY_COMPLETED
        assert not claims.is_claimed("evt_1")

    def test_terminal_row_reports_completed_without_claim(self, events, claims):
        """Test that the event row alone is enough to refuse a claim."""
        events.set_outcome("evt_1", EventOutcome.APPLIED, NOW)

        assert claims.try_claim("evt_1", NOW) == ClaimResult.ALREADY_COMPLETED

    def test_concurrent_claims_single_winner(self, claims):
        """Test that exactly one of many racing threads claims the event."""
        barrier = Barrier(10)
        results = []

        def claim():
            barrier.wait()
            results.append(claims.try_claim("evt_1", NOW))

        threads = [Thread(target=claim) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(ClaimResult.CLAIMED) == 1
        assert results.count(ClaimResult.ALREADY_CLAIMED) == 9


class TestMarkOutcome:
    """Test recording outcomes."""

    def test_sets_row_and_audit(self, events, claims):
        claims.try_claim("evt_1", NOW)

        assert claims.mark_outcome("evt_1", EventOutcome.APPLIED, NOW + 5, detail="checkout.completed")

        row = events.get("evt_1")
        assert row.outcome == EventOutcome.APPLIED
        assert row.processed_at_millis == NOW + 5
        trail = events.audit_trail("evt_1")
        assert [(a.outcome, a.detail) for a in trail] == [(EventOutcome.APPLIED, "checkout.completed")]

    def test_second_outcome_does_not_overwrite_row(self, events, claims):
        claims.mark_outcome("evt_1", EventOutcome.APPLIED, NOW)

        assert claims.mark_outcome("evt_1", EventOutcome.FAILED, NOW, error="late") is False
        assert events.get("evt_1").outcome == EventOutcome.APPLIED
        assert len(events.audit_trail("evt_1")) == 2

    def test_error_kept_on_row(self, events, claims):
        claims.mark_outcome("evt_1", EventOutcome.FAILED, NOW, detail="invalid_transition", error="boom")

        assert events.get("evt_1").last_error == "boom"

    def test_pending_outcome_rejected(self, claims):
        with pytest.raises(ValueError, match="not terminal"):
            claims.mark_outcome("evt_1", EventOutcome.PENDING, NOW)


class TestReleaseAndRetention:
    """Test releasing and purging claims."""

    def test_release_in_flight(self, claims):
        claims.try_claim("evt_1", NOW)

        assert claims.release("evt_1") is True
        assert claims.try_claim("evt_1", NOW) == ClaimResult.CLAIMED

    def test_release_completed_is_noop(self, claims):
        claims.mark_outcome("evt_1", EventOutcome.APPLIED, NOW)

        assert claims.release("evt_1") is False

    def test_release_stale(self, events, claims):
        events.append(make_event("evt_2"))
        claims.try_claim("evt_1", NOW)
        claims.try_claim("evt_2", NOW + 1000)

        assert claims.release_stale(NOW + 500) == ["evt_1"]
        assert not claims.is_claimed("evt_1")
        assert claims.is_claimed("evt_2")
        assert claims.in_flight_count() == 1

    def test_purge_expired_keeps_row_outcome(self, claims):
        """Test that a purged claim is still reported as completed via the event row."""
        claims.try_claim("evt_1", NOW)
        claims.mark_outcome("evt_1", EventOutcome.APPLIED, NOW)

        assert claims.purge_expired(NOW + 29 * DAY, 30 * DAY) == 0
        assert claims.purge_expired(NOW + 31 * DAY, 30 * DAY) == 1
        assert claims.count() == 0
        assert claims.try_claim("evt_1", NOW + 31 * DAY) == ClaimResult.ALREADY_COMPLETED

    def test_rollback_reopens_completed_claim(self):
        undo = UndoLog()
        events = EventStore(undo=undo)
        events.append(make_event())
        claims = IdempotencyStore(events, undo=undo)
        claims.try_claim("evt_1", NOW)

        undo.begin()
        claims.mark_outcome("evt_1", EventOutcome.APPLIED, NOW)
        undo.rollback()

        assert claims.is_claimed("evt_1")
        assert events.get("evt_1").outcome == EventOutcome.PENDING
        assert events.audit_trail("evt_1") == []
