"""Billing repository - the stores behind one lock.

Groups the subscription, checkout intent, customer, inbound event and
idempotency stores so that a worker can persist a new subscription, complete
an intent and mark the event applied as a single unit.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from billing_sync.logging_config import get_logger
from billing_sync.repositories.customer_store import CustomerStore
from billing_sync.repositories.event_store import EventStore
from billing_sync.repositories.idempotency_store import IdempotencyStore
from billing_sync.repositories.intent_store import IntentStore
from billing_sync.repositories.subscription_store import SubscriptionStore
from billing_sync.repositories.undo_log import UndoLog

logger = get_logger(__name__)


class BillingRepository:
    """In-memory repository for every persisted collection.

    The stores share one reentrant lock and one undo log. ``transaction()``
    holds the lock and records each write the block makes; if the block
    raises, those writes are reverted, so other threads never see a
    partially applied change.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._undo = UndoLog()
        self.subscriptions = SubscriptionStore(lock=self._lock, undo=self._undo)
        self.intents = IntentStore(lock=self._lock, undo=self._undo)
        self.customers = CustomerStore(lock=self._lock, undo=self._undo)
        self.events = EventStore(lock=self._lock, undo=self._undo)
        self.idempotency = IdempotencyStore(self.events, lock=self._lock, undo=self._undo)

    @property
    def _stores(self) -> tuple:
        return (self.subscriptions, self.intents, self.customers, self.events, self.idempotency)

    @contextmanager
    def transaction(self) -> Iterator["BillingRepository"]:
        """Apply several writes atomically.

        Yields:
            This repository

        Any exception inside the block reverts the writes it made and
        re-raises. Transactions nest; an inner rollback only reverts the
        inner block.
        """
        with self._lock:
            self._undo.begin()
            try:
                yield self
            except BaseException:
                reverted = self._undo.rollback()
                logger.warning("repository_transaction_rolled_back", reverted_writes=reverted)
                raise
            else:
                self._undo.commit()

    def get_statistics(self) -> dict:
        """Counts used by the health endpoint."""
        with self._lock:
            return {
                "subscriptions": self.subscriptions.count_by_status(),
                "events": self.events.count_by_outcome(),
                "dead_letters": len(self.events.dead_letters()),
                "intents": self.intents.count(),
                "customers": self.customers.count(),
                "claims_in_flight": self.idempotency.in_flight_count(),
            }

    def clear(self) -> None:
        """Clear all stores.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            for store in self._stores:
                store.clear()


_repository_instance: Optional[BillingRepository] = None
_repository_lock = threading.Lock()


def get_billing_repository() -> BillingRepository:
    """Get global repository instance (singleton)."""
    global _repository_instance
    if _repository_instance is None:
        with _repository_lock:
            if _repository_instance is None:
                _repository_instance = BillingRepository()
    return _repository_instance


def reset_billing_repository() -> None:
    """Reset global repository instance (mainly for testing)."""
    global _repository_instance
    with _repository_lock:
        _repository_instance = None
