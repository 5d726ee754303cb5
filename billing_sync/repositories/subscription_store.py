"""Subscription store - in-memory storage for subscription records.

Enforces the record invariants: one non-canceled subscription per customer
and plan family, and a last applied sequence that never goes backwards.
"""

import threading
from typing import Dict, List, Optional

from billing_sync.models import SubscriptionRecord, SubscriptionStatus
from billing_sync.repositories.undo_log import UndoLog


class SubscriptionNotFoundError(Exception):
    """Raised when a subscription is not found in the store."""

    pass


class DuplicateActiveSubscriptionError(Exception):
    """Raised when a save would create a second live subscription in a plan family."""

    pass


class SequenceRegressionError(Exception):
    """Raised when a save would lower last_applied_sequence."""

    pass


class SubscriptionStore:
    """In-memory storage for subscription records.

    Thread-safe; lookup by local ID, provider subscription ID, customer and
    status. Records are copied on the way in and out, so callers never hold
    a reference to stored state.
    """

    def __init__(self, lock: Optional[threading.RLock] = None, undo: Optional[UndoLog] = None):
        """Initialize subscription store with empty storage.

        Args:
            lock: Lock shared with sibling stores for multi-store transactions
            undo: Undo log shared with sibling stores for rollback
        """
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._by_provider_id: Dict[str, str] = {}
        self._lock = lock or threading.RLock()
        self._undo = undo or UndoLog()

    def save(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        """Insert or replace a subscription.

        Args:
            subscription: Record to store

        Returns:
            The stored copy

        Raises:
            DuplicateActiveSubscriptionError: If another live subscription exists
                for the same customer and plan family
            SequenceRegressionError: If last_applied_sequence would decrease
            ValueError: If the provider subscription ID belongs to another record
        """
        with self._lock:
            existing = self._subscriptions.get(subscription.id)
            if existing and subscription.last_applied_sequence < existing.last_applied_sequence:
                raise SequenceRegressionError(
                    f"Subscription {subscription.id} sequence would go from "
                    f"{existing.last_applied_sequence} to {subscription.last_applied_sequence}"
                )

            owner = self._by_provider_id.get(subscription.provider_subscription_id)
            if owner is not None and owner != subscription.id:
                raise ValueError(
                    f"Provider subscription {subscription.provider_subscription_id} "
                    f"already belongs to {owner}"
                )

            if not subscription.is_canceled:
                live = self._find_live(subscription.customer_id, subscription.plan_family)
                if live is not None and live.id != subscription.id:
                    raise DuplicateActiveSubscriptionError(
                        f"Customer {subscription.customer_id} already has live subscription "
                        f"{live.id} in plan family {subscription.plan_family}"
                    )

            if existing and existing.provider_subscription_id != subscription.provider_subscription_id:
                self._undo.key_written(self._by_provider_id, existing.provider_subscription_id)
                self._by_provider_id.pop(existing.provider_subscription_id, None)

            stored = subscription.model_copy(deep=True)
            self._undo.key_written(self._subscriptions, stored.id)
            self._undo.key_written(self._by_provider_id, stored.provider_subscription_id)
            self._subscriptions[stored.id] = stored
            self._by_provider_id[stored.provider_subscription_id] = stored.id
            return stored.model_copy(deep=True)

    def get(self, subscription_id: str) -> SubscriptionRecord:
        """Get subscription by local ID.

        Raises:
            SubscriptionNotFoundError: If not found
        """
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
            return subscription.model_copy(deep=True)

    def find(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        """Find subscription by local ID (returns None if not found)."""
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            return subscription.model_copy(deep=True) if subscription else None

    def find_by_provider_id(self, provider_subscription_id: str) -> Optional[SubscriptionRecord]:
        """Find subscription by the provider's subscription ID."""
        with self._lock:
            subscription_id = self._by_provider_id.get(provider_subscription_id)
            if subscription_id is None:
                return None
            return self._subscriptions[subscription_id].model_copy(deep=True)

    def _find_live(self, customer_id: str, plan_family: str) -> Optional[SubscriptionRecord]:
        for subscription in self._subscriptions.values():
            if (
                subscription.customer_id == customer_id
                and subscription.plan_family == plan_family
                and not subscription.is_canceled
            ):
                return subscription
        return None

    def find_live_for_family(self, customer_id: str, plan_family: str) -> Optional[SubscriptionRecord]:
        """Find the customer's non-canceled subscription in a plan family."""
        with self._lock:
            subscription = self._find_live(customer_id, plan_family)
            return subscription.model_copy(deep=True) if subscription else None

    def get_by_customer(self, customer_id: str) -> List[SubscriptionRecord]:
        """Get all subscriptions for a customer, oldest first."""
        with self._lock:
            records = [s for s in self._subscriptions.values() if s.customer_id == customer_id]
            records.sort(key=lambda s: s.created_at_millis)
            return [s.model_copy(deep=True) for s in records]

    def current_for_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        """Get the subscription that should gate the customer's access.

        The most recently updated non-canceled subscription wins; if every
        subscription is canceled, the most recently updated one is returned.
        """
        records = self.get_by_customer(customer_id)
        if not records:
            return None
        live = [s for s in records if not s.is_canceled]
        candidates = live or records
        return max(candidates, key=lambda s: s.updated_at_millis)

    def get_by_status(self, status: SubscriptionStatus) -> List[SubscriptionRecord]:
        """Get all subscriptions in a status."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values() if s.status == status]

    def get_live(self) -> List[SubscriptionRecord]:
        """Get every non-canceled subscription."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values() if not s.is_canceled]

    def get_grace_period_expired(self, now_millis: int) -> List[SubscriptionRecord]:
        """Get past_due subscriptions whose grace period has elapsed."""
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == SubscriptionStatus.PAST_DUE
                and s.grace_period_end_millis is not None
                and s.grace_period_end_millis <= now_millis
            ]

    def get_all(self) -> List[SubscriptionRecord]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def count_by_status(self) -> Dict[str, int]:
        """Count subscriptions per status value."""
        with self._lock:
            counts = {status.value: 0 for status in SubscriptionStatus}
            for subscription in self._subscriptions.values():
                counts[subscription.status.value] += 1
            return counts

    def clear(self) -> None:
        """Clear all subscriptions from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._subscriptions.clear()
            self._by_provider_id.clear()

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"
