"""Enum describing the columns of the flow CSV export."""

from __future__ import annotations

from enum import Enum, unique
from typing import Callable, Dict

from .flow import Flow


def _reason(flow: Flow) -> str:
    return flow.invalid_reason.value if flow.invalid_reason is not None else ""


_EXTRACTORS: Dict[str, Callable[[Flow], object]] = {
    "flow_id": lambda flow: flow.id,
    "connection_key": lambda flow: flow.key,
    "initiator_ip": lambda flow: flow.initiator,
    "initiator_port": lambda flow: flow.initiator_port,
    "responder_ip": lambda flow: flow.responder,
    "responder_port": lambda flow: flow.responder_port,
    "start_time": lambda flow: flow.start_time,
    "end_time": lambda flow: flow.end_time,
    "state": lambda flow: flow.state.value,
    "close_type": lambda flow: flow.close_type.value,
    "invalid_reason": _reason,
    "total_packets": lambda flow: flow.total_packets,
    "total_bytes": lambda flow: flow.total_bytes,
    "establishment_packets": lambda flow: flow.phases.counts()["establishment"],
    "data_packets": lambda flow: flow.phases.counts()["dataTransfer"],
    "closing_packets": lambda flow: flow.phases.counts()["closing"],
}


@unique
class FlowFeature(Enum):
    fid = "flow_id"
    key = "connection_key"
    init_ip = "initiator_ip"
    init_port = "initiator_port"
    resp_ip = "responder_ip"
    resp_port = "responder_port"
    start = "start_time"
    end = "end_time"
    state = "state"
    close_type = "close_type"
    invalid_reason = "invalid_reason"
    tot_pkt = "total_packets"
    tot_byt = "total_bytes"
    est_pkt = "establishment_packets"
    data_pkt = "data_packets"
    close_pkt = "closing_packets"

    def __init__(self, column: str) -> None:
        self.column = column

    # ------------------------------------------------------------------
    @classmethod
    def get_header(cls) -> str:
        return ",".join(feature.column for feature in cls)

    def value_of(self, flow: Flow) -> object:
        return _EXTRACTORS[self.column](flow)

    @classmethod
    def dump(cls, flow: Flow, separator: str = ",") -> str:
        return separator.join(str(feature.value_of(flow)) for feature in cls)

    def __str__(self) -> str:  # pragma: no cover - human readable repr
        return self.column


__all__ = ["FlowFeature"]
