"""Clock used by every component that stamps or compares times.

The system clock is used in production. A manual clock can be frozen and
fast-forwarded so grace periods, intent expiry and claim retention can be
exercised without waiting.
"""

import threading
import time
from typing import Optional

from billing_sync.logging_config import get_logger

logger = get_logger(__name__)


class Clock:
    """Source of the current time in Unix milliseconds.

    Args:
        start_millis: If given, the clock is manual and starts frozen at this
            time; otherwise it follows the system clock.
    """

    def __init__(self, start_millis: Optional[int] = None) -> None:
        self._lock = threading.RLock()
        self._manual = start_millis is not None
        self._virtual_time_millis = start_millis if start_millis is not None else 0
        self._offset_millis = 0

    @property
    def is_manual(self) -> bool:
        return self._manual

    def now_millis(self) -> int:
        """Get the current time in milliseconds."""
        with self._lock:
            if self._manual:
                return self._virtual_time_millis
            return int(time.time() * 1000) + self._offset_millis

    def now_seconds(self) -> int:
        """Get the current time in whole seconds."""
        return self.now_millis() // 1000

    def advance(self, days: int = 0, hours: int = 0, minutes: int = 0, seconds: int = 0) -> int:
        """Move the clock forward.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance
            seconds: number of seconds to advance

        Returns:
            The new current time in milliseconds

        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0 or seconds < 0:
            raise ValueError("Cannot move the clock backwards, negative values are not allowed.")

        millis = (((days * 24 + hours) * 60 + minutes) * 60 + seconds) * 1000

        with self._lock:
            old_time = self.now_millis()
            if self._manual:
                self._virtual_time_millis += millis
            else:
                self._offset_millis += millis
            new_time = self.now_millis()

        logger.info(
            "clock_advanced",
            old_time_millis=old_time,
            new_time_millis=new_time,
            advanced_millis=millis,
        )
        return new_time

    def set_time(self, time_millis: int) -> None:
        """Pin a manual clock to an absolute time.

        Raises:
            ValueError: if the clock is not manual or the time moves backwards
        """
        with self._lock:
            if not self._manual:
                raise ValueError("Only a manual clock can be set")
            if time_millis < self._virtual_time_millis:
                raise ValueError("Cannot move the clock backwards")
            self._virtual_time_millis = time_millis


_clock_instance: Optional[Clock] = None
_clock_lock = threading.Lock()


def get_clock() -> Clock:
    """Get the global system clock (singleton)."""
    global _clock_instance
    if _clock_instance is None:
        with _clock_lock:
            if _clock_instance is None:
                _clock_instance = Clock()
    return _clock_instance
