"""Identifier generation for packets and assembled flows."""

from __future__ import annotations

from threading import Lock


class IdGenerator:
    """Thread-safe monotonically increasing identifier generator.

    Readers use one instance per capture so packet ids follow capture
    order; the flow generator uses another to label flows ``flow_000001``.
    """

    __slots__ = ("_lock", "_next", "prefix")

    def __init__(self, initial: int = 0, prefix: str = "flow_") -> None:
        self._lock = Lock()
        self._next = int(initial)
        self.prefix = prefix

    def next_id(self) -> int:
        with self._lock:
            self._next += 1
            return self._next

    def next_label(self, width: int = 6) -> str:
        return f"{self.prefix}{self.next_id():0{width}d}"


__all__ = ["IdGenerator"]
