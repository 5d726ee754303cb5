"""Inbound event log - append-only record of every event the service accepted.

Each provider event ID has exactly one row. Every processing decision made
about an event, including re-deliveries, is kept in its audit trail.
Events that could not be applied are copied to the dead-letter list.
"""

import threading
from typing import Dict, List, Optional

from billing_sync.models import AuditEntry, DeadLetterRecord, EventOutcome, InboundEvent
from billing_sync.repositories.undo_log import UndoLog


class EventNotFoundError(Exception):
    """Raised when an inbound event is not in the log."""

    pass


class EventStore:
    """Thread-safe inbound event log with audit trail and dead letters."""

    def __init__(self, lock: Optional[threading.RLock] = None, undo: Optional[UndoLog] = None):
        self._events: Dict[str, InboundEvent] = {}
        self._audit: Dict[str, List[AuditEntry]] = {}
        self._dead_letters: List[DeadLetterRecord] = []
        self._lock = lock or threading.RLock()
        self._undo = undo or UndoLog()

    def append(self, event: InboundEvent) -> bool:
        """Append an event unless its ID is already logged.

        Returns:
            True if the row was inserted, False if it already existed
        """
        with self._lock:
            if event.provider_event_id in self._events:
                return False
            self._undo.key_written(self._events, event.provider_event_id)
            self._events[event.provider_event_id] = event.model_copy(deep=True)
            return True

    def get(self, provider_event_id: str) -> InboundEvent:
        """Get event by provider event ID.

        Raises:
            EventNotFoundError: If not found
        """
        with self._lock:
            event = self._events.get(provider_event_id)
            if event is None:
                raise EventNotFoundError(f"Event not found: {provider_event_id}")
            return event.model_copy(deep=True)

    def find(self, provider_event_id: str) -> Optional[InboundEvent]:
        with self._lock:
            event = self._events.get(provider_event_id)
            return event.model_copy(deep=True) if event else None

    def set_outcome(
        self,
        provider_event_id: str,
        outcome: EventOutcome,
        now_millis: int,
        error: Optional[str] = None,
    ) -> bool:
        """Record a terminal outcome on a pending event.

        Returns:
            True if the outcome was set, False if the event already had one

        Raises:
            EventNotFoundError: If not found
            ValueError: If outcome is not terminal
        """
        if not outcome.is_terminal:
            raise ValueError("Only terminal outcomes can be recorded")
        with self._lock:
            event = self._events.get(provider_event_id)
            if event is None:
                raise EventNotFoundError(f"Event not found: {provider_event_id}")
            if event.outcome.is_terminal:
                return False
            updates = {"outcome": outcome, "processed_at_millis": now_millis}
            if error is not None:
                updates["last_error"] = error
            self._undo.key_written(self._events, provider_event_id)
            self._events[provider_event_id] = event.model_copy(update=updates)
            return True

    def record_failure(self, provider_event_id: str, error: str) -> int:
        """Count a failed processing attempt.

        Returns:
            The attempt count after this failure

        Raises:
            EventNotFoundError: If not found
        """
        with self._lock:
            event = self._events.get(provider_event_id)
            if event is None:
                raise EventNotFoundError(f"Event not found: {provider_event_id}")
            updated = event.model_copy(update={"attempts": event.attempts + 1, "last_error": error})
            self._undo.key_written(self._events, provider_event_id)
            self._events[provider_event_id] = updated
            return updated.attempts

    def get_pending(self) -> List[InboundEvent]:
        """Get events without a terminal outcome, oldest receipt first."""
        with self._lock:
            pending = [e for e in self._events.values() if e.outcome == EventOutcome.PENDING]
            pending.sort(key=lambda e: (e.received_at_millis, e.sequence))
            return [e.model_copy(deep=True) for e in pending]

    def get_all(self) -> List[InboundEvent]:
        with self._lock:
            return [e.model_copy(deep=True) for e in self._events.values()]

    def add_audit(
        self,
        provider_event_id: str,
        outcome: EventOutcome,
        now_millis: int,
        detail: Optional[str] = None,
    ) -> AuditEntry:
        """Append a decision to an event's audit trail."""
        entry = AuditEntry(
            provider_event_id=provider_event_id,
            outcome=outcome,
            detail=detail,
            recorded_at_millis=now_millis,
        )
        with self._lock:
            trail = self._audit.get(provider_event_id)
            if trail is None:
                self._undo.key_written(self._audit, provider_event_id)
                trail = self._audit[provider_event_id] = []
            self._undo.appended(trail)
            trail.append(entry)
        return entry

    def audit_trail(self, provider_event_id: str) -> List[AuditEntry]:
        with self._lock:
            return list(self._audit.get(provider_event_id, []))

    def add_dead_letter(self, record: DeadLetterRecord) -> None:
        with self._lock:
            self._undo.appended(self._dead_letters)
            self._dead_letters.append(record)

    def dead_letters(self) -> List[DeadLetterRecord]:
        with self._lock:
            return list(self._dead_letters)

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    def count_by_outcome(self) -> Dict[str, int]:
        with self._lock:
            counts = {outcome.value: 0 for outcome in EventOutcome}
            for event in self._events.values():
                counts[event.outcome.value] += 1
            return counts

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._audit.clear()
            self._dead_letters.clear()

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, provider_event_id: str) -> bool:
        with self._lock:
            return provider_event_id in self._events

    def __repr__(self) -> str:
        return f"EventStore(events={self.count()}, dead_letters={len(self._dead_letters)})"
