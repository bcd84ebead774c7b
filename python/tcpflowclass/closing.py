"""Connection lifecycle and closing-pattern state machine.

Tracks NEW -> INIT -> SYN_RCVD -> EST using the same handshake checks as
:mod:`tcpflowclass.handshake`, then follows the teardown:

    EST -> FIN_1 -> FIN_2 -> CLOSED    (graceful, close_reason "fin")
    EST/FIN_1/FIN_2 -> ABORTED         (RST, close_reason "rst")

A capture that ends in FIN_1 after the peer acknowledged the first FIN is
a half-close.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, unique
from typing import Iterable, Optional

from .handshake import ack_completes_handshake, synack_answers_syn
from .seqnum import acknowledges
from .tcp_packet import Packet, PacketKind

logger = logging.getLogger(__name__)


@unique
class ClosingState(Enum):
    NEW = "NEW"
    INIT = "INIT"
    SYN_RCVD = "SYN_RCVD"
    EST = "EST"
    FIN_1 = "FIN_1"
    FIN_2 = "FIN_2"
    CLOSED = "CLOSED"
    ABORTED = "ABORTED"


_PRE_ESTABLISHED = (ClosingState.NEW, ClosingState.INIT, ClosingState.SYN_RCVD)
_FINISHED = (ClosingState.CLOSED, ClosingState.ABORTED)


@unique
class CloseReason(Enum):
    FIN = "fin"
    RST = "rst"


def acknowledges_fin(fin: Packet, packet: Packet) -> bool:
    """True when ``packet`` acknowledges ``fin``, with or without its payload."""
    if acknowledges(packet.ack, fin.seq):
        return True
    return fin.payload_len > 0 and acknowledges(packet.ack, fin.seq, fin.payload_len)


@dataclass
class ClosingResult:
    state: ClosingState = ClosingState.NEW
    syn: Optional[Packet] = None
    syn_ack: Optional[Packet] = None
    established_by: Optional[Packet] = None
    fin1: Optional[Packet] = None
    fin1_ack: Optional[Packet] = None
    fin2: Optional[Packet] = None
    final_ack: Optional[Packet] = None
    rst: Optional[Packet] = None
    close_reason: Optional[CloseReason] = None
    close_timestamp: Optional[int] = None
    half_close: bool = False

    @property
    def finished(self) -> bool:
        return self.state in _FINISHED

    @property
    def reached_established(self) -> bool:
        return self.established_by is not None

    @property
    def first_close_packet(self) -> Optional[Packet]:
        """The packet that started the teardown (first FIN or the RST)."""
        if self.fin1 is not None:
            return self.fin1
        return self.rst

    @property
    def is_open(self) -> bool:
        return not self.finished and not self.half_close


class ClosingClassifier:
    def new_state(self) -> ClosingResult:
        return ClosingResult()

    def classify(self, packets: Iterable[Packet]) -> ClosingResult:
        result = self.new_state()
        for packet in packets:
            self.apply(result, packet)
            if result.finished:
                break
        self.finalize(result)
        return result

    # ------------------------------------------------------------------
    def apply(self, result: ClosingResult, packet: Packet) -> None:
        if result.finished:
            return
        if result.state in _PRE_ESTABLISHED:
            self._track_handshake(result, packet)
        elif result.state is ClosingState.EST:
            self._on_established(result, packet)
        elif result.state is ClosingState.FIN_1:
            self._on_fin_1(result, packet)
        elif result.state is ClosingState.FIN_2:
            self._on_fin_2(result, packet)

    def finalize(self, result: ClosingResult) -> None:
        result.half_close = (
            result.state is ClosingState.FIN_1 and result.fin1_ack is not None
        )

    # ------------------------------------------------------------------
    def _track_handshake(self, result: ClosingResult, packet: Packet) -> None:
        kind = packet.kind
        if kind is PacketKind.SYN:
            result.syn = packet
            result.syn_ack = None
            result.state = ClosingState.INIT
        elif kind is PacketKind.SYN_ACK and result.syn is not None:
            if synack_answers_syn(result.syn, packet):
                result.syn_ack = packet
                result.state = ClosingState.SYN_RCVD
        elif (
            kind is PacketKind.ACK
            and result.state is ClosingState.SYN_RCVD
            and result.syn is not None
            and result.syn_ack is not None
            and ack_completes_handshake(result.syn, result.syn_ack, packet)
        ):
            result.established_by = packet
            result.state = ClosingState.EST

    def _on_established(self, result: ClosingResult, packet: Packet) -> None:
        kind = packet.kind
        if kind is PacketKind.RST:
            self._abort(result, packet)
        elif kind is PacketKind.FIN:
            result.fin1 = packet
            result.state = ClosingState.FIN_1

    def _on_fin_1(self, result: ClosingResult, packet: Packet) -> None:
        assert result.fin1 is not None
        kind = packet.kind
        if kind is PacketKind.RST:
            self._abort(result, packet)
        elif kind is PacketKind.FIN and packet.source != result.fin1.source:
            result.fin2 = packet
            result.state = ClosingState.FIN_2
        elif kind is PacketKind.ACK:
            self._match_fin1_ack(result, packet)

    def _on_fin_2(self, result: ClosingResult, packet: Packet) -> None:
        assert result.fin2 is not None
        kind = packet.kind
        if kind is PacketKind.RST:
            self._abort(result, packet)
        elif kind is PacketKind.ACK:
            if acknowledges_fin(result.fin2, packet):
                result.final_ack = packet
                result.close_reason = CloseReason.FIN
                result.close_timestamp = packet.timestamp
                result.state = ClosingState.CLOSED
            else:
                self._match_fin1_ack(result, packet)

    # ------------------------------------------------------------------
    @staticmethod
    def _match_fin1_ack(result: ClosingResult, packet: Packet) -> None:
        fin1 = result.fin1
        if fin1 is None or packet.source == fin1.source:
            return
        if result.fin1_ack is None and acknowledges_fin(fin1, packet):
            result.fin1_ack = packet

    @staticmethod
    def _abort(result: ClosingResult, packet: Packet) -> None:
        result.rst = packet
        result.close_reason = CloseReason.RST
        result.close_timestamp = packet.timestamp
        result.state = ClosingState.ABORTED
        logger.debug("Connection aborted by RST at %d", packet.timestamp)


__all__ = [
    "ClosingState",
    "CloseReason",
    "ClosingResult",
    "ClosingClassifier",
    "acknowledges_fin",
]
