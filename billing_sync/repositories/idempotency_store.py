"""Idempotency store - atomic claims on provider event IDs.

A claim is what lets exactly one worker process a given provider event.
Claims sit next to the inbound event log: the log row carries the final
outcome, the claim tracks who is working on it right now.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from billing_sync.models import EventOutcome
from billing_sync.repositories.event_store import EventStore
from billing_sync.repositories.undo_log import UndoLog


class ClaimResult(str, Enum):
    """Result of trying to claim an event for processing."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    ALREADY_COMPLETED = "already_completed"


class _ClaimState(str, Enum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"


@dataclass(frozen=True)
class _Claim:
    state: _ClaimState
    claimed_at_millis: int
    completed_at_millis: Optional[int] = None


class IdempotencyStore:
    """Claim ledger over the inbound event log.

    Every public method runs under the store lock, so a claim is a single
    compare-and-set no matter how many workers race for the same event.
    """

    def __init__(
        self,
        events: EventStore,
        lock: Optional[threading.RLock] = None,
        undo: Optional[UndoLog] = None,
    ):
        """Initialize idempotency store.

        Args:
            events: Inbound event log that receives outcomes
            lock: Lock shared with sibling stores for multi-store transactions
            undo: Undo log shared with sibling stores for rollback
        """
        self._events = events
        self._claims: Dict[str, _Claim] = {}
        self._lock = lock or threading.RLock()
        self._undo = undo or UndoLog()

    def try_claim(self, provider_event_id: str, now_millis: int) -> ClaimResult:
        """Claim an event for processing.

        Args:
            provider_event_id: Event to claim
            now_millis: Current time, stamped on the claim

        Returns:
            CLAIMED if the caller now owns the event, otherwise why it does not
        """
        with self._lock:
            event = self._events.find(provider_event_id)
            if event is not None and event.outcome.is_terminal:
                return ClaimResult.ALREADY_COMPLETED

            claim = self._claims.get(provider_event_id)
            if claim is not None:
                if claim.state == _ClaimState.COMPLETED:
                    return ClaimResult.ALREADY_COMPLETED
                return ClaimResult.ALREADY_CLAIMED

            self._undo.key_written(self._claims, provider_event_id)
            self._claims[provider_event_id] = _Claim(
                state=_ClaimState.IN_FLIGHT, claimed_at_millis=now_millis
            )
            return ClaimResult.CLAIMED

    def mark_outcome(
        self,
        provider_event_id: str,
        outcome: EventOutcome,
        now_millis: int,
        detail: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Record a terminal outcome and complete the claim.

        The outcome goes on the inbound event row (unless one is already
        there) and an audit entry is appended either way.

        Args:
            provider_event_id: Event the outcome belongs to
            outcome: Terminal outcome
            now_millis: Completion time
            detail: Free-form audit detail
            error: Error message kept on the event row

        Returns:
            True if the row's outcome was set by this call

        Raises:
            ValueError: If outcome is not terminal
        """
        if not outcome.is_terminal:
            raise ValueError(f"Outcome {outcome.value} is not terminal")

        with self._lock:
            updated = self._events.set_outcome(provider_event_id, outcome, now_millis, error=error)
            self._events.add_audit(provider_event_id, outcome, now_millis, detail=detail or error)
            claim = self._claims.get(provider_event_id)
            self._undo.key_written(self._claims, provider_event_id)
            self._claims[provider_event_id] = _Claim(
                state=_ClaimState.COMPLETED,
                claimed_at_millis=claim.claimed_at_millis if claim else now_millis,
                completed_at_millis=now_millis,
            )
            return updated

    def release(self, provider_event_id: str) -> bool:
        """Drop an in-flight claim so the event can be processed again.

        Returns:
            True if an in-flight claim was released
        """
        with self._lock:
            claim = self._claims.get(provider_event_id)
            if claim is None or claim.state != _ClaimState.IN_FLIGHT:
                return False
            self._undo.key_written(self._claims, provider_event_id)
            del self._claims[provider_event_id]
            return True

    def release_stale(self, older_than_millis: int) -> List[str]:
        """Release in-flight claims taken before a cutoff.

        The events stay pending; the caller re-queues them.

        Args:
            older_than_millis: Claims taken strictly before this time are released

        Returns:
            IDs of the events whose claims were released
        """
        with self._lock:
            stale = [
                event_id
                for event_id, claim in self._claims.items()
                if claim.state == _ClaimState.IN_FLIGHT and claim.claimed_at_millis < older_than_millis
            ]
            for event_id in stale:
                self._undo.key_written(self._claims, event_id)
                del self._claims[event_id]
            return stale

    def purge_expired(self, now_millis: int, retention_millis: int) -> int:
        """Forget completed claims older than the retention window.

        The inbound event row keeps its terminal outcome, so a purged event
        is still reported as ALREADY_COMPLETED.

        Returns:
            Number of claims purged
        """
        cutoff = now_millis - retention_millis
        with self._lock:
            expired = [
                event_id
                for event_id, claim in self._claims.items()
                if claim.state == _ClaimState.COMPLETED
                and claim.completed_at_millis is not None
                and claim.completed_at_millis < cutoff
            ]
            for event_id in expired:
                self._undo.key_written(self._claims, event_id)
                del self._claims[event_id]
            return len(expired)

    def is_claimed(self, provider_event_id: str) -> bool:
        """True if a worker currently holds the event."""
        with self._lock:
            claim = self._claims.get(provider_event_id)
            return claim is not None and claim.state == _ClaimState.IN_FLIGHT

    def in_flight_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._claims.values() if c.state == _ClaimState.IN_FLIGHT)

    def count(self) -> int:
        with self._lock:
            return len(self._claims)

    def clear(self) -> None:
        with self._lock:
            self._claims.clear()
