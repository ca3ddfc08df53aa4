"""Source of transaction ids that are never handed out twice in a row."""

from __future__ import annotations

import threading

__all__ = ["TransactionIdPool"]

_MASK = 0xFFFFFFFF


class TransactionIdPool:
    """A thread-safe 32-bit counter that wraps around on overflow."""

    def __init__(self, start: int = 0) -> None:
        self._next = start & _MASK
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next = (value + 1) & _MASK
        return value