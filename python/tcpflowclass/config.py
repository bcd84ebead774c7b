"""Classifier tunables.

The reorder and timeout windows directly shift how many handshakes are
judged invalid, so they are never applied silently: ``FlowGenerator`` logs
``ClassifierConfig.describe()`` whenever it starts a run.

Durations are expressed in milliseconds and converted to capture-clock
ticks through ``ticks_per_ms``. The bundled readers produce microsecond
timestamps, hence the default of 1000.
"""

from __future__ import annotations

from dataclasses import dataclass

HANDSHAKE_TIMEOUT_MS = 3_000
REORDER_WINDOW_PKTS = 6
REORDER_WINDOW_MS = 500
TICKS_PER_MS = 1_000


@dataclass(frozen=True)
class ClassifierConfig:
    handshake_timeout_ms: float = HANDSHAKE_TIMEOUT_MS
    reorder_window_pkts: int = REORDER_WINDOW_PKTS
    reorder_window_ms: float = REORDER_WINDOW_MS
    ticks_per_ms: float = TICKS_PER_MS

    def __post_init__(self) -> None:
        if self.handshake_timeout_ms <= 0:
            raise ValueError("handshake_timeout_ms must be positive")
        if self.reorder_window_ms <= 0:
            raise ValueError("reorder_window_ms must be positive")
        if int(self.reorder_window_pkts) < 1:
            raise ValueError("reorder_window_pkts must be at least 1")
        if self.ticks_per_ms <= 0:
            raise ValueError("ticks_per_ms must be positive")

    @property
    def handshake_timeout(self) -> int:
        """Handshake timeout in capture-clock ticks."""
        return int(self.handshake_timeout_ms * self.ticks_per_ms)

    @property
    def reorder_window(self) -> int:
        """Reorder window age limit in capture-clock ticks."""
        return int(self.reorder_window_ms * self.ticks_per_ms)

    def describe(self) -> str:
        return (
            f"handshake_timeout={self.handshake_timeout_ms}ms "
            f"reorder_window={self.reorder_window_ms}ms/{int(self.reorder_window_pkts)}pkts "
            f"ticks_per_ms={self.ticks_per_ms}"
        )


DEFAULT_CONFIG = ClassifierConfig()


__all__ = [
    "HANDSHAKE_TIMEOUT_MS",
    "REORDER_WINDOW_PKTS",
    "REORDER_WINDOW_MS",
    "TICKS_PER_MS",
    "ClassifierConfig",
    "DEFAULT_CONFIG",
]
