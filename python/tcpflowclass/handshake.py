"""Three-way handshake validation state machine.

Packets of one connection are applied in timestamp order to a
:class:`FlowState`. ``ESTABLISHED`` and ``INVALID`` are terminal; once
either is reached the remaining packets belong to the closing machine.

A handshake that cannot be validated is not an error: it ends in
``INVALID`` with an :class:`InvalidReason` explaining why.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Deque, Iterable, List, Optional

from .config import DEFAULT_CONFIG, ClassifierConfig
from .seqnum import acknowledges
from .tcp_packet import Packet, PacketKind

logger = logging.getLogger(__name__)


@unique
class HandshakeStatus(Enum):
    NEW = "NEW"
    SYN_SEEN = "SYN_SEEN"
    SYNACK_SEEN = "SYNACK_SEEN"
    ESTABLISHED = "ESTABLISHED"
    INVALID = "INVALID"


@unique
class InvalidReason(Enum):
    ACK_WITHOUT_HANDSHAKE = "ack_without_handshake"
    ORPHAN_SYN_TIMEOUT = "orphan_syn_timeout"
    ORPHAN_SYNACK_TIMEOUT = "orphan_synack_timeout"
    BAD_SEQ_ACK_NUMBERS = "bad_seq_ack_numbers"
    RST_DURING_HANDSHAKE = "rst_during_handshake"
    UNKNOWN_INVALID = "unknown_invalid"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["InvalidReason"]:
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class InvalidRecord:
    reason: InvalidReason
    at_timestamp: int


# Shared by the handshake and closing machines so both agree on when a
# connection becomes established.
def synack_answers_syn(syn: Packet, syn_ack: Packet) -> bool:
    return acknowledges(syn_ack.ack, syn.seq)


def ack_completes_handshake(syn: Packet, syn_ack: Packet, ack: Packet) -> bool:
    return acknowledges(ack.ack, syn_ack.seq) and synack_answers_syn(syn, syn_ack)


@dataclass
class FlowState:
    pending: Deque[Packet]
    status: HandshakeStatus = HandshakeStatus.NEW
    syn: Optional[Packet] = None
    syn_ack: Optional[Packet] = None
    final_ack: Optional[Packet] = None
    syn_expire: Optional[int] = None
    syn_ack_expire: Optional[int] = None
    invalid: Optional[InvalidRecord] = None
    involved: List[Packet] = field(default_factory=list)
    last_seen: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (HandshakeStatus.ESTABLISHED, HandshakeStatus.INVALID)

    @property
    def established(self) -> bool:
        return self.status is HandshakeStatus.ESTABLISHED

    @property
    def invalid_reason(self) -> Optional[InvalidReason]:
        if self.invalid is None:
            return None
        return self.invalid.reason


class HandshakeClassifier:
    def __init__(self, config: Optional[ClassifierConfig] = None) -> None:
        self.config = config or DEFAULT_CONFIG

    def new_state(self) -> FlowState:
        return FlowState(pending=deque(maxlen=int(self.config.reorder_window_pkts)))

    def classify(self, packets: Iterable[Packet]) -> FlowState:
        """Run a whole time-ordered bucket and finalize it as end of capture."""
        state = self.new_state()
        for packet in packets:
            self.apply(state, packet)
        self.finalize(state)
        return state

    # ------------------------------------------------------------------
    def apply(self, state: FlowState, packet: Packet) -> None:
        now = packet.timestamp
        state.last_seen = now
        if state.is_terminal:
            return

        state.involved.append(packet)
        if self._expire_timers(state, now):
            return

        kind = packet.kind
        if kind is PacketKind.RST:
            self._invalidate(state, InvalidReason.RST_DURING_HANDSHAKE, now)
        elif kind is PacketKind.SYN:
            state.syn = packet
            state.syn_ack = None
            state.status = HandshakeStatus.SYN_SEEN
            state.syn_expire = now + self.config.handshake_timeout
            state.syn_ack_expire = None
        elif kind is PacketKind.SYN_ACK:
            self._on_syn_ack(state, packet, now)
        elif kind is PacketKind.ACK:
            self._on_ack(state, packet, now)
        else:
            # FIN or flagless segments never advance a handshake
            self._on_unmatched(state, packet, now)

    def finalize(self, state: FlowState, now: Optional[int] = None) -> None:
        """Resolve a handshake that is still waiting.

        Only timers that have elapsed at ``now`` invalidate the handshake;
        a SYN or SYN+ACK still inside its timeout leaves the state open.
        ``now=None`` means end of capture: the clock stops at the last
        packet, and packets buffered without any SYN are judged orphaned.
        """
        if state.is_terminal:
            return
        end_of_capture = now is None
        if now is None:
            now = state.last_seen if state.last_seen is not None else 0
        if self._expire_timers(state, now):
            return
        if state.status is HandshakeStatus.NEW and state.pending:
            if end_of_capture or self._aged(state, now):
                self._invalidate(state, self._orphan_reason(state), now)

    # ------------------------------------------------------------------
    def _on_syn_ack(self, state: FlowState, packet: Packet, now: int) -> None:
        if state.status is HandshakeStatus.SYN_SEEN:
            state.syn_ack = packet
            state.status = HandshakeStatus.SYNACK_SEEN
            state.syn_ack_expire = now + self.config.handshake_timeout
        elif state.status is HandshakeStatus.SYNACK_SEEN:
            # retransmitted SYN+ACK replaces the earlier one, timer unchanged
            state.syn_ack = packet
        elif self._buffer(state, packet, now):
            self._invalidate(state, InvalidReason.ORPHAN_SYNACK_TIMEOUT, now)

    def _on_ack(self, state: FlowState, packet: Packet, now: int) -> None:
        if state.syn is not None and state.syn_ack is not None:
            if not ack_completes_handshake(state.syn, state.syn_ack, packet):
                self._invalidate(state, InvalidReason.BAD_SEQ_ACK_NUMBERS, now)
                return
            state.final_ack = packet
            state.status = HandshakeStatus.ESTABLISHED
            state.pending.clear()
            state.syn_expire = None
            state.syn_ack_expire = None
            return
        if state.syn is not None:
            self._buffer(state, packet, now)
            return
        if self._buffer(state, packet, now):
            self._invalidate(state, InvalidReason.ACK_WITHOUT_HANDSHAKE, now)

    def _on_unmatched(self, state: FlowState, packet: Packet, now: int) -> None:
        aged = self._buffer(state, packet, now)
        if aged and state.status is HandshakeStatus.NEW:
            self._invalidate(state, self._orphan_reason(state), now)

    # ------------------------------------------------------------------
    def _buffer(self, state: FlowState, packet: Packet, now: int) -> bool:
        """Hold ``packet`` for reordering; True when the oldest one is too old."""
        state.pending.append(packet)
        return self._aged(state, now)

    def _aged(self, state: FlowState, now: int) -> bool:
        if not state.pending:
            return False
        return (now - state.pending[0].timestamp) > self.config.reorder_window

    def _expire_timers(self, state: FlowState, now: int) -> bool:
        if (
            state.status is HandshakeStatus.SYN_SEEN
            and state.syn_expire is not None
            and now > state.syn_expire
        ):
            self._invalidate(state, InvalidReason.ORPHAN_SYN_TIMEOUT, now)
            return True
        if (
            state.status is HandshakeStatus.SYNACK_SEEN
            and state.syn_ack_expire is not None
            and now > state.syn_ack_expire
        ):
            self._invalidate(state, InvalidReason.ORPHAN_SYNACK_TIMEOUT, now)
            return True
        return False

    @staticmethod
    def _orphan_reason(state: FlowState) -> InvalidReason:
        if any(pkt.kind is PacketKind.SYN_ACK for pkt in state.involved):
            return InvalidReason.ORPHAN_SYNACK_TIMEOUT
        return InvalidReason.ACK_WITHOUT_HANDSHAKE

    @staticmethod
    def _invalidate(state: FlowState, reason: InvalidReason, now: int) -> None:
        state.status = HandshakeStatus.INVALID
        state.invalid = InvalidRecord(reason, now)
        logger.debug("Handshake invalid: %s at %d", reason.value, now)


__all__ = [
    "HandshakeStatus",
    "InvalidReason",
    "InvalidRecord",
    "FlowState",
    "HandshakeClassifier",
    "synack_answers_syn",
    "ack_completes_handshake",
]
