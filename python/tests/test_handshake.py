import unittest

from tcpflowclass import ClassifierConfig, HandshakeClassifier, HandshakeStatus, InvalidReason
from tcpflowclass.tcp_packet import Packet, TcpFlags

CLIENT = ("10.0.0.1", 40000)
SERVER = ("10.0.0.2", 80)

SYN = TcpFlags.SYN
SYN_ACK = TcpFlags.SYN | TcpFlags.ACK
ACK = TcpFlags.ACK
RST = TcpFlags.RST


def _packet(
    timestamp: int,
    flags: TcpFlags,
    seq: int = 0,
    ack: int = 0,
    *,
    from_client: bool = True,
    payload: int = 0,
) -> Packet:
    src, dst = (CLIENT, SERVER) if from_client else (SERVER, CLIENT)
    return Packet(
        timestamp=timestamp,
        src_ip=src[0],
        dst_ip=dst[0],
        src_port=src[1],
        dst_port=dst[1],
        flags=flags,
        seq=seq,
        ack=ack,
        payload_len=payload,
    )


def _handshake(start: int = 0, client_isn: int = 1000, server_isn: int = 5000):
    return [
        _packet(start, SYN, client_isn),
        _packet(start + 1_000, SYN_ACK, server_isn, client_isn + 1, from_client=False),
        _packet(start + 2_000, ACK, client_isn + 1, server_isn + 1),
    ]


class HandshakeClassifierTest(unittest.TestCase):
    def setUp(self) -> None:
        self.classifier = HandshakeClassifier()

    def test_three_way_handshake_establishes(self) -> None:
        packets = _handshake()
        state = self.classifier.classify(packets)

        self.assertIs(state.status, HandshakeStatus.ESTABLISHED)
        self.assertIs(state.final_ack, packets[2])
        self.assertIs(state.syn, packets[0])
        self.assertIs(state.syn_ack, packets[1])
        self.assertIsNone(state.invalid_reason)

    def test_sequence_numbers_wrap_modulo_two_pow_32(self) -> None:
        packets = [
            _packet(0, SYN, 0xFFFFFFFF),
            _packet(1_000, SYN_ACK, 0xFFFFFFFF, 0, from_client=False),
            _packet(2_000, ACK, 0, 0),
        ]
        state = self.classifier.classify(packets)
        self.assertTrue(state.established)

    def test_final_ack_with_wrong_number_is_invalid(self) -> None:
        packets = _handshake()
        packets[2] = _packet(2_000, ACK, 1001, 4242)
        state = self.classifier.classify(packets)

        self.assertIs(state.status, HandshakeStatus.INVALID)
        self.assertIs(state.invalid_reason, InvalidReason.BAD_SEQ_ACK_NUMBERS)
        self.assertEqual(state.invalid.at_timestamp, 2_000)

    def test_syn_ack_for_an_older_syn_fails_validation(self) -> None:
        packets = [
            _packet(0, SYN, 1000),
            _packet(500_000, SYN, 2000),
            _packet(600_000, SYN_ACK, 5000, 1001, from_client=False),
            _packet(700_000, ACK, 2001, 5001),
        ]
        state = self.classifier.classify(packets)
        self.assertIs(state.invalid_reason, InvalidReason.BAD_SEQ_ACK_NUMBERS)

    def test_retransmitted_syn_restarts_handshake(self) -> None:
        packets = [
            _packet(0, SYN, 1000),
            _packet(1_000_000, SYN, 2000),
            _packet(1_001_000, SYN_ACK, 5000, 2001, from_client=False),
            _packet(1_002_000, ACK, 2001, 5001),
        ]
        state = self.classifier.classify(packets)

        self.assertTrue(state.established)
        self.assertIs(state.syn, packets[1])

    def test_lone_syn_stays_open_at_end_of_capture(self) -> None:
        state = self.classifier.classify([_packet(0, SYN, 1000)])
        self.assertIs(state.status, HandshakeStatus.SYN_SEEN)
        self.assertIsNone(state.invalid)

    def test_unanswered_syn_ack_stays_open_at_end_of_capture(self) -> None:
        state = self.classifier.classify(_handshake()[:2])
        self.assertIs(state.status, HandshakeStatus.SYNACK_SEEN)
        self.assertIsNone(state.invalid)

    def test_syn_with_buffered_ack_stays_open_at_end_of_capture(self) -> None:
        packets = [_packet(0, SYN, 1000), _packet(500, ACK, 1001, 5001)]
        state = self.classifier.classify(packets)
        self.assertIs(state.status, HandshakeStatus.SYN_SEEN)
        self.assertEqual(list(state.pending), packets[1:])

    def test_syn_ack_after_timeout_does_not_rescue_handshake(self) -> None:
        packets = [
            _packet(0, SYN, 1000),
            _packet(3_500_000, SYN_ACK, 5000, 1001, from_client=False),
            _packet(3_501_000, ACK, 1001, 5001),
        ]
        state = self.classifier.classify(packets)

        self.assertIs(state.invalid_reason, InvalidReason.ORPHAN_SYN_TIMEOUT)
        self.assertEqual(state.invalid.at_timestamp, 3_500_000)

    def test_syn_ack_exactly_at_deadline_is_accepted(self) -> None:
        packets = [
            _packet(0, SYN, 1000),
            _packet(3_000_000, SYN_ACK, 5000, 1001, from_client=False),
            _packet(3_000_500, ACK, 1001, 5001),
        ]
        self.assertTrue(self.classifier.classify(packets).established)

    def test_late_final_ack_expires_syn_ack_wait(self) -> None:
        packets = _handshake()
        packets[2] = _packet(4_500_000, ACK, 1001, 5001)
        state = self.classifier.classify(packets)
        self.assertIs(state.invalid_reason, InvalidReason.ORPHAN_SYNACK_TIMEOUT)

    def test_rst_during_handshake(self) -> None:
        packets = [
            _packet(0, SYN, 1000),
            _packet(1_000, RST | ACK, 0, 1001, from_client=False),
        ]
        state = self.classifier.classify(packets)
        self.assertIs(state.invalid_reason, InvalidReason.RST_DURING_HANDSHAKE)

    def test_ack_without_handshake(self) -> None:
        packets = [
            _packet(0, ACK, 7000, 9000, payload=100),
            _packet(10_000, ACK, 9000, 7100, from_client=False),
        ]
        state = self.classifier.classify(packets)
        self.assertIs(state.invalid_reason, InvalidReason.ACK_WITHOUT_HANDSHAKE)

    def test_buffered_ack_ages_out_of_reorder_window(self) -> None:
        state = self.classifier.new_state()
        self.classifier.apply(state, _packet(0, ACK, 7000, 9000))
        self.assertIs(state.status, HandshakeStatus.NEW)

        self.classifier.apply(state, _packet(600_000, ACK, 7000, 9000))
        self.assertIs(state.invalid_reason, InvalidReason.ACK_WITHOUT_HANDSHAKE)
        self.assertEqual(state.invalid.at_timestamp, 600_000)

    def test_ack_before_syn_is_tolerated_within_reorder_window(self) -> None:
        early = _packet(0, ACK, 1001, 5001)
        packets = [early] + _handshake(start=100)
        state = self.classifier.classify(packets)

        self.assertTrue(state.established)
        self.assertEqual(len(state.pending), 0)

    def test_lone_syn_ack_is_orphaned(self) -> None:
        packet = _packet(0, SYN_ACK, 5000, 1001, from_client=False)
        state = self.classifier.classify([packet])
        self.assertIs(state.invalid_reason, InvalidReason.ORPHAN_SYNACK_TIMEOUT)

    def test_reorder_buffer_is_bounded(self) -> None:
        state = self.classifier.new_state()
        for index in range(10):
            self.classifier.apply(state, _packet(index, ACK, 7000 + index, 9000))
        self.assertEqual(len(state.pending), 6)

    def test_established_state_ignores_later_packets(self) -> None:
        state = self.classifier.new_state()
        for packet in _handshake():
            self.classifier.apply(state, packet)
        self.classifier.apply(state, _packet(10_000, RST, 1001))
        self.classifier.finalize(state)

        self.assertTrue(state.established)
        self.assertIsNone(state.invalid)

    def test_finalize_with_clock_only_expires_elapsed_timers(self) -> None:
        state = self.classifier.new_state()
        self.classifier.apply(state, _packet(0, SYN, 1000))

        self.classifier.finalize(state, 1_000_000)
        self.assertIs(state.status, HandshakeStatus.SYN_SEEN)

        self.classifier.finalize(state, 4_000_000)
        self.assertIs(state.invalid_reason, InvalidReason.ORPHAN_SYN_TIMEOUT)

    def test_timeouts_follow_configured_clock(self) -> None:
        classifier = HandshakeClassifier(ClassifierConfig(handshake_timeout_ms=100, ticks_per_ms=1))
        packets = [
            _packet(0, SYN, 1000),
            _packet(101, SYN_ACK, 5000, 1001, from_client=False),
        ]
        state = classifier.classify(packets)
        self.assertIs(state.invalid_reason, InvalidReason.ORPHAN_SYN_TIMEOUT)


class ClassifierConfigTest(unittest.TestCase):
    def test_defaults_are_in_microseconds(self) -> None:
        config = ClassifierConfig()
        self.assertEqual(config.handshake_timeout, 3_000_000)
        self.assertEqual(config.reorder_window, 500_000)
        self.assertIn("handshake_timeout=3000ms", config.describe())

    def test_rejects_non_positive_values(self) -> None:
        with self.assertRaises(ValueError):
            ClassifierConfig(handshake_timeout_ms=0)
        with self.assertRaises(ValueError):
            ClassifierConfig(reorder_window_pkts=0)
        with self.assertRaises(ValueError):
            ClassifierConfig(ticks_per_ms=-1)


if __name__ == "__main__":  # pragma: no cover - convenience
    unittest.main()
