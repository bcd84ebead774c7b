"""Listener interfaces for flow generation events."""

from __future__ import annotations

from typing import Protocol

from .flow import Flow


class FlowGenListener(Protocol):
    def on_flow_generated(self, flow: Flow) -> None:  # pragma: no cover - protocol definition
        ...


class FlowCollector:
    """Listener that keeps every emitted flow in memory."""

    def __init__(self) -> None:
        self.flows = []

    def on_flow_generated(self, flow: Flow) -> None:
        self.flows.append(flow)


__all__ = ["FlowGenListener", "FlowCollector"]
