"""Customer store - one-to-one mapping of local and provider customers."""

import threading
from typing import Dict, Optional

from billing_sync.models import Customer
from billing_sync.repositories.undo_log import UndoLog


class CustomerStore:
    """Thread-safe storage for customers.

    A customer's provider customer ID never changes once recorded.
    """

    def __init__(self, lock: Optional[threading.RLock] = None, undo: Optional[UndoLog] = None):
        self._customers: Dict[str, Customer] = {}
        self._lock = lock or threading.RLock()
        self._undo = undo or UndoLog()

    def ensure(self, customer: Customer) -> Customer:
        """Store a customer unless it already exists.

        Returns:
            The stored customer (the existing one if already present)

        Raises:
            ValueError: If the customer exists with a different provider customer ID
        """
        with self._lock:
            existing = self._customers.get(customer.customer_id)
            if existing is None:
                self._undo.key_written(self._customers, customer.customer_id)
                self._customers[customer.customer_id] = customer
                return customer
            if existing.provider_customer_id != customer.provider_customer_id:
                raise ValueError(
                    f"Customer {customer.customer_id} is already linked to "
                    f"provider customer {existing.provider_customer_id}"
                )
            return existing

    def find(self, customer_id: str) -> Optional[Customer]:
        with self._lock:
            return self._customers.get(customer_id)

    def count(self) -> int:
        with self._lock:
            return len(self._customers)

    def clear(self) -> None:
        with self._lock:
            self._customers.clear()

    def __len__(self) -> int:
        return self.count()
