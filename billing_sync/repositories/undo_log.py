"""Undo log for repository transactions.

Stores report each write just before making it. If the transaction block
raises, the recorded writes are reverted newest first. Only the entries a
transaction touches are recorded, so rolling back costs the same however
much history the stores hold.

Stored values are never mutated in place; stores replace them instead, so
keeping a reference to the previous value is enough to restore it.
"""

from typing import Any, Callable, List, MutableMapping

_MISSING = object()


class UndoLog:
    """Stack of open transactions and the writes each one made.

    Writes made while no transaction is open are not recorded. A nested
    transaction that commits hands its writes to the enclosing one.

    Not thread-safe by itself: the repository lock must be held around
    ``begin``/``commit``/``rollback`` and every recorded write.
    """

    def __init__(self) -> None:
        self._frames: List[List[Callable[[], None]]] = []

    @property
    def active(self) -> bool:
        return bool(self._frames)

    @property
    def depth(self) -> int:
        return len(self._frames)

    def begin(self) -> None:
        self._frames.append([])

    def commit(self) -> None:
        frame = self._frames.pop()
        if self._frames:
            self._frames[-1].extend(frame)

    def rollback(self) -> int:
        """Revert the innermost transaction's writes.

        Returns:
            Number of writes reverted
        """
        frame = self._frames.pop()
        for undo in reversed(frame):
            undo()
        return len(frame)

    def key_written(self, mapping: MutableMapping[Any, Any], key: Any) -> None:
        """Record the value ``mapping[key]`` holds before it is set or deleted."""
        if not self._frames:
            return
        previous = mapping.get(key, _MISSING)

        def undo() -> None:
            if previous is _MISSING:
                mapping.pop(key, None)
            else:
                mapping[key] = previous

        self._frames[-1].append(undo)

    def appended(self, items: List[Any]) -> None:
        """Record that ``items`` is about to grow; rollback truncates it."""
        if not self._frames:
            return
        length = len(items)

        def undo() -> None:
            del items[length:]

        self._frames[-1].append(undo)
