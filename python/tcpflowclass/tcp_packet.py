"""Captured TCP packet records and flag helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntFlag, unique
from typing import Any, Dict, Optional

from .seqnum import SEQ_MASK


class TcpFlags(IntFlag):
    NONE = 0
    FIN = 0x01
    SYN = 0x02
    RST = 0x04
    PSH = 0x08
    ACK = 0x10
    URG = 0x20
    ECE = 0x40
    CWR = 0x80


_FLAG_ORDER = (
    TcpFlags.FIN,
    TcpFlags.SYN,
    TcpFlags.RST,
    TcpFlags.PSH,
    TcpFlags.ACK,
    TcpFlags.URG,
    TcpFlags.ECE,
    TcpFlags.CWR,
)

_COMBINATIONS = {
    int(TcpFlags.SYN | TcpFlags.ACK): "SYN+ACK",
    int(TcpFlags.FIN | TcpFlags.ACK): "FIN+ACK",
    int(TcpFlags.PSH | TcpFlags.ACK): "PSH+ACK",
    int(TcpFlags.RST | TcpFlags.ACK): "RST+ACK",
}


def classify_flags(value: int) -> str:
    """Render a flag bitmask the way capture summaries label it."""
    value = int(value)
    if value in _COMBINATIONS:
        return _COMBINATIONS[value]
    if value == 0:
        return "NONE"
    names = sorted(flag.name for flag in _FLAG_ORDER if value & flag)
    if not names:
        return f"OTHER_{value}"
    return "+".join(names)


def flags_from_type(label: str) -> TcpFlags:
    """Inverse of :func:`classify_flags` for labels such as ``FIN+ACK``."""
    label = label.strip().upper()
    if not label or label == "NONE":
        return TcpFlags.NONE
    if label.startswith("OTHER"):
        _, _, raw = label.partition("_")
        return TcpFlags(int(raw) & 0xFF) if raw.isdigit() else TcpFlags.NONE
    value = TcpFlags.NONE
    for name in label.split("+"):
        try:
            value |= TcpFlags[name]
        except KeyError:
            raise ValueError(f"Unknown TCP flag name: {name!r}") from None
    return value


@unique
class PacketKind(Enum):
    """Role a packet can play in the handshake and closing machines.

    RST wins over everything else, then SYN+ACK, SYN, FIN and finally a
    plain ACK (which may carry PSH/URG and payload).
    """

    RST = "rst"
    SYN_ACK = "syn_ack"
    SYN = "syn"
    FIN = "fin"
    ACK = "ack"
    OTHER = "other"

    @classmethod
    def of(cls, flags: int) -> "PacketKind":
        if flags & TcpFlags.RST:
            return cls.RST
        if flags & TcpFlags.SYN:
            if flags & TcpFlags.ACK:
                return cls.SYN_ACK
            return cls.SYN
        if flags & TcpFlags.FIN:
            return cls.FIN
        if flags & TcpFlags.ACK:
            return cls.ACK
        return cls.OTHER


@dataclass(frozen=True, order=True)
class Endpoint:
    ip: str
    port: int

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


@dataclass(frozen=True)
class Packet:
    """One captured TCP segment.

    ``timestamp`` is in capture-clock ticks (microseconds for the bundled
    readers). ``packet_id`` records capture order and is only used for
    stable tie-breaking and reporting.
    """

    timestamp: int
    src_ip: str
    dst_ip: str
    src_port: Optional[int]
    dst_port: Optional[int]
    flags: TcpFlags = TcpFlags.NONE
    seq: int = 0
    ack: int = 0
    payload_len: int = 0
    packet_id: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "flags", TcpFlags(int(self.flags) & 0xFF))
        object.__setattr__(self, "seq", int(self.seq) & SEQ_MASK)
        object.__setattr__(self, "ack", int(self.ack) & SEQ_MASK)

    @property
    def kind(self) -> PacketKind:
        return PacketKind.of(self.flags)

    @property
    def has_ports(self) -> bool:
        return self.src_port is not None and self.dst_port is not None

    @property
    def source(self) -> Endpoint:
        return Endpoint(self.src_ip, int(self.src_port or 0))

    @property
    def destination(self) -> Endpoint:
        return Endpoint(self.dst_ip, int(self.dst_port or 0))

    @property
    def flag_type(self) -> str:
        return classify_flags(self.flags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "src_ip": self.src_ip,
            "dst_ip": self.dst_ip,
            "src_port": self.src_port,
            "dst_port": self.dst_port,
            "flags": int(self.flags),
            "flag_type": self.flag_type,
            "seq_num": self.seq,
            "ack_num": self.ack,
            "length": self.payload_len,
        }


__all__ = ["TcpFlags", "PacketKind", "Endpoint", "Packet", "classify_flags", "flags_from_type"]
