"""Tests for per-key locking."""

import threading
import time

import pytest

from billing_sync.errors import LockTimeoutError, TransientError
from billing_sync.utils.keyed_lock import KeyedLock, customer_key


@pytest.fixture
def locks():
    return KeyedLock()


class TestKeyedLock:
    """Test KeyedLock."""

    def test_customer_key(self):
        assert customer_key("42") == "customer:42"

    def test_reentrant(self, locks):
        """Test that the holder can take the same key again."""
        with locks.hold("customer:42"):
            with locks.hold("customer:42", timeout=0.1):
                assert "customer:42" in locks.active_keys()

    def test_entries_dropped_when_unused(self, locks):
        with locks.hold("customer:42"):
            pass

        assert locks.active_keys() == []

    def test_timeout_raises_transient_error(self, locks):
        """Test that a held key times out other threads."""
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("customer:42"):
                acquired.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(2)
        try:
            with pytest.raises(LockTimeoutError) as exc_info:
                with locks.hold("customer:42", timeout=0.05):
                    pass
            assert isinstance(exc_info.value, TransientError)
        finally:
            release.set()
            thread.join()

    def test_default_timeout_used(self):
        locks = KeyedLock(default_timeout=0.05)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("k"):
                acquired.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(2)
        try:
            with pytest.raises(LockTimeoutError):
                with locks.hold("k"):
                    pass
        finally:
            release.set()
            thread.join()

    def test_different_keys_do_not_block(self, locks):
        entered = threading.Event()

        def other():
            with locks.hold("customer:7", timeout=0.5):
                entered.set()

        with locks.hold("customer:42"):
            thread = threading.Thread(target=other)
            thread.start()
            thread.join(1)

        assert entered.is_set()

    def test_serializes_same_key(self, locks):
        """Test that critical sections on one key never overlap."""
        inside = []
        overlaps = []

        def work():
            with locks.hold("customer:42", timeout=5):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.005)
                inside.pop()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
        assert locks.active_keys() == []
