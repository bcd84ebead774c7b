import logging
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from tcpflowclass import (
    ClassifierConfig,
    CloseType,
    ConnectionStatus,
    FlowFeature,
    FlowGenerator,
    InvalidReason,
)
from tcpflowclass.listeners import FlowCollector
from tcpflowclass.tcp_packet import Packet, TcpFlags

SYN = TcpFlags.SYN
SYN_ACK = TcpFlags.SYN | TcpFlags.ACK
ACK = TcpFlags.ACK
FIN_ACK = TcpFlags.FIN | TcpFlags.ACK


def _packet(
    client: str,
    server: str,
    timestamp: int,
    flags: TcpFlags,
    seq: int = 0,
    ack: int = 0,
    *,
    from_client: bool = True,
    payload: int = 0,
    client_port: int = 40000,
) -> Packet:
    src, dst = ((client, client_port), (server, 80)) if from_client else ((server, 80), (client, client_port))
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


def _graceful(client: str, server: str, start: int):
    return [
        _packet(client, server, start, SYN, 1000),
        _packet(client, server, start + 1_000, SYN_ACK, 5000, 1001, from_client=False),
        _packet(client, server, start + 2_000, ACK, 1001, 5001),
        _packet(client, server, start + 3_000, ACK, 1001, 5001, payload=64),
        _packet(client, server, start + 4_000, FIN_ACK, 1065, 5001),
        _packet(client, server, start + 5_000, FIN_ACK, 5001, 1066, from_client=False),
        _packet(client, server, start + 6_000, ACK, 1066, 5002),
    ]


def _capture():
    packets = _graceful("192.0.2.1", "192.0.2.10", 2_000_000)
    packets += _graceful("192.0.2.2", "192.0.2.10", 0)
    packets += [
        _packet("192.0.2.3", "192.0.2.10", 1_000_000, SYN, 77),
        _packet("192.0.2.4", "192.0.2.10", 500_000, ACK, 1, 1, payload=10),
    ]
    return packets


class FlowGeneratorBatchTest(unittest.TestCase):
    def test_generate_classifies_every_connection(self) -> None:
        generator = FlowGenerator()
        flows = generator.generate(_capture())

        self.assertEqual([flow.id for flow in flows], [f"flow_00000{i}" for i in range(1, 5)])
        self.assertEqual([flow.start_time for flow in flows], [0, 500_000, 1_000_000, 2_000_000])
        self.assertEqual(
            [flow.close_type for flow in flows],
            [CloseType.GRACEFUL, CloseType.INVALID, CloseType.OPEN, CloseType.GRACEFUL],
        )
        self.assertIs(flows[1].invalid_reason, InvalidReason.ACK_WITHOUT_HANDSHAKE)
        # unanswered SYN still inside its timeout when the capture ends
        self.assertIs(flows[2].state, ConnectionStatus.UNKNOWN)
        self.assertIsNone(flows[2].invalid_reason)
        self.assertEqual(generator.finished_flows, flows)

    def test_worker_count_does_not_change_output(self) -> None:
        serial = FlowGenerator().generate(_capture())
        threaded = FlowGenerator().generate(_capture(), workers=4)

        self.assertEqual(
            [flow.to_dict() for flow in serial],
            [flow.to_dict() for flow in threaded],
        )

    def test_input_order_does_not_change_output(self) -> None:
        packets = _capture()
        forward = FlowGenerator().generate(packets)
        backward = FlowGenerator().generate(list(reversed(packets)))

        self.assertEqual(
            [flow.to_dict() for flow in forward],
            [flow.to_dict() for flow in backward],
        )

    def test_portless_packets_are_excluded(self) -> None:
        packets = _graceful("192.0.2.1", "192.0.2.10", 0)
        packets.append(Packet(10, "192.0.2.1", "192.0.2.10", None, None))
        flows = FlowGenerator().generate(packets)

        self.assertEqual(len(flows), 1)
        self.assertEqual(flows[0].total_packets, 7)

    def test_rejects_bad_arguments(self) -> None:
        with self.assertRaises(ValueError):
            FlowGenerator().generate([], workers=0)
        with self.assertRaises(ValueError):
            FlowGenerator(idle_timeout=0)

    def test_tunables_are_logged(self) -> None:
        config = ClassifierConfig(handshake_timeout_ms=1500)
        with self.assertLogs("tcpflowclass.flow_generator", level=logging.INFO) as captured:
            FlowGenerator(config=config).generate(_capture())
        self.assertTrue(any("handshake_timeout=1500ms" in line for line in captured.output))

    def test_dump_flow_csv_writes_header_and_rows(self) -> None:
        generator = FlowGenerator()
        generator.generate(_capture())

        with TemporaryDirectory() as tmpdir:
            total = generator.dump_flow_csv(tmpdir, "flows.csv")
            lines = (Path(tmpdir) / "flows.csv").read_text().splitlines()

        self.assertEqual(total, 4)
        self.assertEqual(lines[0], FlowFeature.get_header())
        self.assertTrue(lines[1].startswith("flow_000001,192.0.2.10:80-192.0.2.2:40000,192.0.2.2,"))
        self.assertIn(",invalid,invalid,ack_without_handshake,", lines[2])


class FlowGeneratorStreamingTest(unittest.TestCase):
    def test_flush_matches_batch_classification(self) -> None:
        packets = sorted(_capture(), key=lambda pkt: pkt.timestamp)
        streaming = FlowGenerator()
        for packet in packets:
            streaming.add_packet(packet)
        flushed = streaming.flush()

        batch = FlowGenerator().generate(packets)
        self.assertEqual(
            [flow.to_dict() for flow in flushed],
            [flow.to_dict() for flow in batch],
        )
        self.assertEqual(streaming.current_flows, {})

    def test_listener_receives_finalized_flows(self) -> None:
        generator = FlowGenerator()
        collector = FlowCollector()
        generator.add_flow_listener(collector)

        for packet in _graceful("192.0.2.1", "192.0.2.10", 0):
            generator.add_packet(packet)
        generator.flush()

        self.assertEqual(len(collector.flows), 1)
        self.assertEqual(generator.finished_flows, [])

    def test_expire_idle_finalizes_quiet_connections(self) -> None:
        generator = FlowGenerator(idle_timeout=10_000_000)
        generator.add_packet(_packet("192.0.2.3", "192.0.2.10", 0, SYN, 77))
        for packet in _graceful("192.0.2.1", "192.0.2.10", 8_000_000):
            generator.add_packet(packet)

        self.assertEqual(generator.expire_idle(5_000_000), 0)
        self.assertEqual(generator.expire_idle(15_000_000), 1)

        self.assertEqual(len(generator.finished_flows), 1)
        flow = generator.finished_flows[0]
        self.assertIs(flow.invalid_reason, InvalidReason.ORPHAN_SYN_TIMEOUT)
        self.assertEqual(len(generator.current_flows), 1)

    def test_idle_established_connection_stays_open(self) -> None:
        generator = FlowGenerator(idle_timeout=1_000_000)
        for packet in _graceful("192.0.2.1", "192.0.2.10", 0)[:4]:
            generator.add_packet(packet)
        generator.expire_idle(5_000_000)

        flow = generator.finished_flows[0]
        self.assertIs(flow.close_type, CloseType.OPEN)
        self.assertTrue(flow.ongoing)

    def test_packet_after_idle_gap_starts_new_flow(self) -> None:
        generator = FlowGenerator(idle_timeout=1_000_000)
        generator.add_packet(_packet("192.0.2.4", "192.0.2.10", 0, ACK, 1, 1))
        generator.add_packet(_packet("192.0.2.4", "192.0.2.10", 5_000_000, ACK, 1, 1))

        self.assertEqual(len(generator.finished_flows), 1)
        self.assertIs(
            generator.finished_flows[0].invalid_reason,
            InvalidReason.ACK_WITHOUT_HANDSHAKE,
        )
        self.assertEqual(len(generator.current_flows), 1)

    def test_summaries_cover_finished_flows(self) -> None:
        generator = FlowGenerator()
        generator.generate(_capture())

        summary = generator.summarize_ip_addresses()
        server = summary["192.0.2.10"]
        # the lone ACK has no SYN, so key order makes the server its initiator
        self.assertEqual(server.flows_as_responder, 3)
        self.assertEqual(server.total_flows, 4)
        self.assertEqual(server.invalid_flows, 1)
        self.assertEqual(server.bytes_received, 64 + 64 + 10)

        buckets = generator.time_buckets(1_000_000)
        self.assertEqual([bucket.start for bucket in buckets], [0, 1_000_000, 2_000_000])
        self.assertEqual(buckets[0].started_flows, 2)
        self.assertEqual(buckets[0].graceful, 1)
        self.assertEqual(buckets[0].invalid, 1)


if __name__ == "__main__":  # pragma: no cover - convenience
    unittest.main()
