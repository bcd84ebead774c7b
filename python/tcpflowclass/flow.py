"""Classified flow records handed to presentation and filtering layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Any, Dict, Optional, Tuple

from .handshake import InvalidReason
from .tcp_packet import Packet


@unique
class ConnectionStatus(Enum):
    ESTABLISHED = "established"
    CLOSED = "closed"
    RESET = "reset"
    INVALID = "invalid"
    UNKNOWN = "unknown"


@unique
class CloseType(Enum):
    GRACEFUL = "graceful"
    ABORTIVE = "abortive"
    OPEN = "open"
    INVALID = "invalid"
    HALF_CLOSE = "half_close"


@dataclass(frozen=True)
class FlowPhases:
    """Packets of a flow split by connection phase.

    Flows loaded from a flow CSV have no packets, only the per-phase
    counts recorded in the file; those go into ``declared_counts``.
    """

    establishment: Tuple[Packet, ...] = ()
    data_transfer: Tuple[Packet, ...] = ()
    closing: Tuple[Packet, ...] = ()
    declared_counts: Optional[Tuple[int, int, int]] = None

    @property
    def packet_count(self) -> int:
        return sum(self.counts().values())

    def counts(self) -> Dict[str, int]:
        if self.declared_counts is not None:
            establishment, data, closing = self.declared_counts
        else:
            establishment = len(self.establishment)
            data = len(self.data_transfer)
            closing = len(self.closing)
        return {
            "establishment": establishment,
            "dataTransfer": data,
            "closing": closing,
        }


@dataclass(frozen=True)
class Flow:
    id: str
    key: str
    initiator: str
    initiator_port: int
    responder: str
    responder_port: int
    start_time: int
    end_time: int
    state: ConnectionStatus
    close_type: CloseType
    invalid_reason: Optional[InvalidReason] = None
    phases: FlowPhases = field(default_factory=FlowPhases)
    total_packets: int = 0
    total_bytes: int = 0
    establishment_complete: bool = False
    invalid_at: Optional[int] = None

    def __post_init__(self) -> None:
        is_invalid = self.state is ConnectionStatus.INVALID
        if is_invalid != (self.invalid_reason is not None):
            raise ValueError(
                f"flow {self.id}: invalid_reason must be set exactly when state is invalid"
            )

    # ------------------------------------------------------------------
    @property
    def ongoing(self) -> bool:
        return self.close_type is CloseType.OPEN and self.establishment_complete

    @property
    def ip_pair(self) -> Tuple[str, str]:
        return tuple(sorted((self.initiator, self.responder)))  # type: ignore[return-value]

    def to_dict(self, include_packets: bool = False) -> Dict[str, Any]:
        counts = self.phases.counts()
        data: Dict[str, Any] = {
            "id": self.id,
            "key": self.key,
            "initiator": self.initiator,
            "initiatorPort": self.initiator_port,
            "responder": self.responder,
            "responderPort": self.responder_port,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "state": self.state.value,
            "closeType": self.close_type.value,
            "invalidReason": self.invalid_reason.value if self.invalid_reason else None,
            "establishmentComplete": self.establishment_complete,
            "ongoing": self.ongoing,
            "totalPackets": self.total_packets,
            "totalBytes": self.total_bytes,
            "establishmentPackets": counts["establishment"],
            "dataPackets": counts["dataTransfer"],
            "closingPackets": counts["closing"],
        }
        if include_packets:
            data["phases"] = {
                "establishment": [pkt.to_dict() for pkt in self.phases.establishment],
                "dataTransfer": [pkt.to_dict() for pkt in self.phases.data_transfer],
                "closing": [pkt.to_dict() for pkt in self.phases.closing],
            }
        return data


__all__ = ["ConnectionStatus", "CloseType", "FlowPhases", "Flow"]
