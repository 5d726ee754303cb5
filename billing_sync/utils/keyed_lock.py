"""Per-key mutual exclusion.

Serializes work on one entity (a customer, an idempotency key) while
letting work on different entities run in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from billing_sync.errors import LockTimeoutError


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class KeyedLock:
    """Registry of reentrant locks, one per key, dropped when unused."""

    def __init__(self, default_timeout: Optional[float] = None):
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()
        self._default_timeout = default_timeout

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for ``key``.

        Args:
            key: Serialization key
            timeout: Seconds to wait (defaults to the registry default; None waits forever)

        Raises:
            LockTimeoutError: If the lock was not acquired in time
        """
        wait = timeout if timeout is not None else self._default_timeout

        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1

        acquired = entry.lock.acquire(timeout=wait) if wait is not None else entry.lock.acquire()
        try:
            if not acquired:
                raise LockTimeoutError(f"Timed out waiting for lock {key!r}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(key, None)

    def active_keys(self) -> list[str]:
        """Keys currently held or waited on."""
        with self._guard:
            return list(self._entries)


def customer_key(customer_id: str) -> str:
    """Serialization key for everything that mutates a customer's subscriptions."""
    return f"customer:{customer_id}"
