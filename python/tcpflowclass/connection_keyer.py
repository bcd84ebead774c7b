"""Grouping of packets into bidirectional connection buckets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .tcp_packet import Endpoint, Packet, PacketKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ConnectionKey:
    """Unordered endpoint pair.

    ``first`` is the endpoint that leads the lexicographically smaller of
    the two ``ip:port-ip:port`` encodings, so both directions of a
    connection produce the same key.
    """

    first: Endpoint
    second: Endpoint

    def __str__(self) -> str:
        return f"{self.first}-{self.second}"

    @classmethod
    def for_packet(cls, packet: Packet) -> "ConnectionKey":
        src = packet.source
        dst = packet.destination
        forward = f"{src}-{dst}"
        reverse = f"{dst}-{src}"
        if forward <= reverse:
            return cls(src, dst)
        return cls(dst, src)

    def contains_ip(self, ip: str) -> bool:
        return ip in (self.first.ip, self.second.ip)


def orient(key: ConnectionKey, packets: Sequence[Packet]) -> Tuple[Endpoint, Endpoint]:
    """Return (initiator, responder) for a time-ordered bucket.

    The first pure SYN decides; without one the key order is used.
    """
    for packet in packets:
        if packet.kind is PacketKind.SYN:
            return packet.source, packet.destination
    return key.first, key.second


class ConnectionKeyer:
    def __init__(self) -> None:
        self.buckets: Dict[ConnectionKey, List[Packet]] = {}
        self.skipped_packets = 0

    def add(self, packet: Packet) -> Optional[ConnectionKey]:
        if not packet.has_ports:
            self.skipped_packets += 1
            return None
        key = ConnectionKey.for_packet(packet)
        self.buckets.setdefault(key, []).append(packet)
        return key

    def add_all(self, packets: Iterable[Packet]) -> None:
        for packet in packets:
            self.add(packet)

    def sorted_buckets(self) -> Dict[ConnectionKey, List[Packet]]:
        # list.sort is stable: equal timestamps keep capture order
        for bucket in self.buckets.values():
            bucket.sort(key=lambda pkt: pkt.timestamp)
        if self.skipped_packets:
            logger.debug("Excluded %d packets without ports", self.skipped_packets)
        return self.buckets


def group_packets(packets: Iterable[Packet]) -> Dict[ConnectionKey, List[Packet]]:
    keyer = ConnectionKeyer()
    keyer.add_all(packets)
    return keyer.sorted_buckets()


__all__ = ["ConnectionKey", "ConnectionKeyer", "group_packets", "orient"]
