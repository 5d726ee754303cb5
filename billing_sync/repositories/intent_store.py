"""Checkout intent store - in-memory storage keyed by idempotency key."""

import threading
from typing import Dict, List, Optional

from billing_sync.models import CheckoutIntent, IntentStatus
from billing_sync.repositories.undo_log import UndoLog


class IntentStore:
    """Thread-safe storage for checkout intents.

    Intents are unique per idempotency key and also indexed by intent ID,
    which is what the provider echoes back on checkout completion.
    """

    def __init__(self, lock: Optional[threading.RLock] = None, undo: Optional[UndoLog] = None):
        self._by_key: Dict[str, CheckoutIntent] = {}
        self._key_by_intent_id: Dict[str, str] = {}
        self._lock = lock or threading.RLock()
        self._undo = undo or UndoLog()

    def add(self, intent: CheckoutIntent) -> CheckoutIntent:
        """Add a new intent.

        Raises:
            ValueError: If the idempotency key or intent ID is already taken
        """
        with self._lock:
            if intent.idempotency_key in self._by_key:
                raise ValueError(f"Idempotency key already used: {intent.idempotency_key}")
            if intent.intent_id in self._key_by_intent_id:
                raise ValueError(f"Intent already exists: {intent.intent_id}")
            stored = intent.model_copy(deep=True)
            self._undo.key_written(self._by_key, stored.idempotency_key)
            self._undo.key_written(self._key_by_intent_id, stored.intent_id)
            self._by_key[stored.idempotency_key] = stored
            self._key_by_intent_id[stored.intent_id] = stored.idempotency_key
            return stored.model_copy(deep=True)

    def update(self, intent: CheckoutIntent) -> CheckoutIntent:
        """Replace an existing intent.

        Raises:
            KeyError: If the intent does not exist
        """
        with self._lock:
            key = self._key_by_intent_id.get(intent.intent_id)
            if key is None or key != intent.idempotency_key:
                raise KeyError(f"Intent not found: {intent.intent_id}")
            stored = intent.model_copy(deep=True)
            self._undo.key_written(self._by_key, key)
            self._by_key[key] = stored
            return stored.model_copy(deep=True)

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[CheckoutIntent]:
        with self._lock:
            intent = self._by_key.get(idempotency_key)
            return intent.model_copy(deep=True) if intent else None

    def find_by_intent_id(self, intent_id: str) -> Optional[CheckoutIntent]:
        with self._lock:
            key = self._key_by_intent_id.get(intent_id)
            if key is None:
                return None
            return self._by_key[key].model_copy(deep=True)

    def get_by_customer(self, customer_id: str) -> List[CheckoutIntent]:
        with self._lock:
            return [i.model_copy(deep=True) for i in self._by_key.values() if i.customer_id == customer_id]

    def get_pending_past_deadline(self, now_millis: int) -> List[CheckoutIntent]:
        """Get pending intents whose expiry deadline has passed."""
        with self._lock:
            return [
                i.model_copy(deep=True)
                for i in self._by_key.values()
                if i.status == IntentStatus.PENDING and i.expires_at_millis <= now_millis
            ]

    def count(self) -> int:
        with self._lock:
            return len(self._by_key)

    def clear(self) -> None:
        with self._lock:
            self._by_key.clear()
            self._key_by_intent_id.clear()

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"IntentStore(intents={self.count()})"
