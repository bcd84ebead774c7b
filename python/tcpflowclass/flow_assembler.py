"""Assembly of handshake and closing results into a single Flow record."""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from .closing import ClosingResult, ClosingState
from .connection_keyer import ConnectionKey, orient
from .flow import CloseType, ConnectionStatus, Flow, FlowPhases
from .handshake import FlowState, HandshakeStatus, InvalidReason
from .tcp_packet import Packet


def _index_of(packets: Sequence[Packet], target: Optional[Packet]) -> Optional[int]:
    if target is None:
        return None
    for index, packet in enumerate(packets):
        if packet is target:
            return index
    return None


class FlowAssembler:
    """Combine classifier outputs for one connection bucket.

    Outcome priority: an invalid handshake wins over any closing result,
    then RST, then a completed FIN exchange, then a half-close; everything
    else is open.
    """

    def assemble(
        self,
        flow_id: str,
        key: ConnectionKey,
        packets: Sequence[Packet],
        handshake: FlowState,
        closing: ClosingResult,
    ) -> Flow:
        if not packets:
            raise ValueError(f"connection {key} has no packets")

        state, close_type, reason = self._outcome(handshake, closing)
        phases = self._partition(packets, handshake, closing)
        initiator, responder = orient(key, packets)

        return Flow(
            id=flow_id,
            key=str(key),
            initiator=initiator.ip,
            initiator_port=initiator.port,
            responder=responder.ip,
            responder_port=responder.port,
            start_time=packets[0].timestamp,
            end_time=packets[-1].timestamp,
            state=state,
            close_type=close_type,
            invalid_reason=reason,
            phases=phases,
            total_packets=len(packets),
            total_bytes=sum(pkt.payload_len for pkt in packets),
            establishment_complete=handshake.established,
            invalid_at=handshake.invalid.at_timestamp if handshake.invalid else None,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _outcome(
        handshake: FlowState, closing: ClosingResult
    ) -> Tuple[ConnectionStatus, CloseType, Optional[InvalidReason]]:
        if handshake.status is HandshakeStatus.INVALID:
            reason = handshake.invalid_reason or InvalidReason.UNKNOWN_INVALID
            return ConnectionStatus.INVALID, CloseType.INVALID, reason
        if closing.state is ClosingState.ABORTED:
            return ConnectionStatus.RESET, CloseType.ABORTIVE, None
        if closing.state is ClosingState.CLOSED:
            return ConnectionStatus.CLOSED, CloseType.GRACEFUL, None
        if closing.half_close:
            return ConnectionStatus.UNKNOWN, CloseType.HALF_CLOSE, None
        if handshake.established:
            return ConnectionStatus.ESTABLISHED, CloseType.OPEN, None
        return ConnectionStatus.UNKNOWN, CloseType.OPEN, None

    @staticmethod
    def _partition(
        packets: Sequence[Packet], handshake: FlowState, closing: ClosingResult
    ) -> FlowPhases:
        """Split the bucket so every packet lands in exactly one phase.

        Establishment runs through the final ACK (the whole bucket when the
        handshake never completed), data transfer up to the first FIN/RST,
        and closing from there to the end of the capture.
        """
        established_at = None
        if handshake.established:
            established_at = _index_of(packets, handshake.final_ack)
        if established_at is None:
            return FlowPhases(establishment=tuple(packets))

        close_at = _index_of(packets, closing.first_close_packet)
        if close_at is None or close_at <= established_at:
            close_at = len(packets)

        establishment: List[Packet] = list(packets[: established_at + 1])
        data_transfer = packets[established_at + 1 : close_at]
        teardown = packets[close_at:]
        return FlowPhases(
            establishment=tuple(establishment),
            data_transfer=tuple(data_transfer),
            closing=tuple(teardown),
        )


__all__ = ["FlowAssembler"]
