from __future__ import annotations

import json
import socket

import dpkt

from tcpflowclass.ancillary import IP_SUMMARY_HEADER, TIME_BUCKET_HEADER
from tcpflowclass.cli import main
from tcpflowclass.flow_feature import FlowFeature

CLIENT = "192.0.2.10"
SERVER = "192.0.2.20"


def _write_segment(writer, ts, src, dst, sport, dport, seq, ack, flags, payload=b""):
    tcp = dpkt.tcp.TCP(sport=sport, dport=dport, seq=seq, ack=ack, flags=flags, win=64240)
    tcp.data = payload
    ip = dpkt.ip.IP(
        src=socket.inet_aton(src),
        dst=socket.inet_aton(dst),
        p=dpkt.ip.IP_PROTO_TCP,
        ttl=64,
    )
    ip.data = tcp
    eth = dpkt.ethernet.Ethernet(
        src=b"\xaa\xbb\xcc\xdd\xee\xff",
        dst=b"\x11\x22\x33\x44\x55\x66",
        type=dpkt.ethernet.ETH_TYPE_IP,
        data=ip,
    )
    writer.writepkt(bytes(eth), ts=ts)


def _build_cli_sample_pcap(path) -> None:
    syn, ack = dpkt.tcp.TH_SYN, dpkt.tcp.TH_ACK
    fin, psh = dpkt.tcp.TH_FIN, dpkt.tcp.TH_PUSH
    with path.open("wb") as fh:
        writer = dpkt.pcap.Writer(fh)
        _write_segment(writer, 1.0, CLIENT, SERVER, 44321, 80, 1, 0, syn)
        _write_segment(writer, 1.001, SERVER, CLIENT, 80, 44321, 100, 2, syn | ack)
        _write_segment(writer, 1.002, CLIENT, SERVER, 44321, 80, 2, 101, ack)
        _write_segment(writer, 1.003, CLIENT, SERVER, 44321, 80, 2, 101, psh | ack, b"GET /")
        _write_segment(writer, 1.004, CLIENT, SERVER, 44321, 80, 7, 101, fin | ack)
        _write_segment(writer, 1.005, SERVER, CLIENT, 80, 44321, 101, 8, fin | ack)
        _write_segment(writer, 1.006, CLIENT, SERVER, 44321, 80, 8, 102, ack)
        # unanswered SYN from another client
        _write_segment(writer, 40.0, "192.0.2.30", SERVER, 50000, 80, 900, 0, syn)
        writer.close()


def test_cli_generates_flow_csv(tmp_path):
    pcap_path = tmp_path / "handshake.pcap"
    _build_cli_sample_pcap(pcap_path)

    output_dir = tmp_path / "out"
    exit_code = main(
        [
            str(pcap_path),
            str(output_dir),
            "--log-level",
            "ERROR",
            "--ip-summary",
            "--time-buckets",
            "30",
            "--json-packets",
        ]
    )

    assert exit_code == 0

    output_file = output_dir / f"{pcap_path.name}_Flow.csv"
    assert output_file.exists()

    lines = [line for line in output_file.read_text().splitlines() if line.strip()]
    assert len(lines) == 3
    assert lines[0] == FlowFeature.get_header()
    assert ",closed,graceful,," in lines[1]
    assert lines[1].endswith(",7,5,3,1,3")
    assert ",unknown,open,," in lines[2]

    document = json.loads((output_dir / f"{pcap_path.name}_Flows.json").read_text())
    assert [flow["closeType"] for flow in document["flows"]] == ["graceful", "open"]
    assert document["flows"][0]["initiator"] == CLIENT
    assert len(document["flows"][0]["phases"]["closing"]) == 3

    ip_summary = output_dir / f"{pcap_path.name}_IP_Summary.csv"
    ip_lines = [line for line in ip_summary.read_text().splitlines() if line.strip()]
    assert ip_lines[0] == IP_SUMMARY_HEADER
    assert len(ip_lines) == 4

    time_buckets = output_dir / f"{pcap_path.name}_Time_Buckets.csv"
    bucket_lines = [line for line in time_buckets.read_text().splitlines() if line.strip()]
    assert bucket_lines[0] == TIME_BUCKET_HEADER
    assert bucket_lines[1] == "0,30000000,1,7,5,1,0,0,0,0"
    assert bucket_lines[2] == "30000000,60000000,1,1,0,0,0,1,0,0"


def test_cli_streams_with_idle_timeout(tmp_path):
    pcap_path = tmp_path / "idle.pcap"
    _build_cli_sample_pcap(pcap_path)

    output_dir = tmp_path / "out"
    exit_code = main(
        [str(pcap_path), str(output_dir), "--log-level", "ERROR", "--idle-timeout", "10"]
    )

    assert exit_code == 0
    lines = (output_dir / f"{pcap_path.name}_Flow.csv").read_text().splitlines()
    assert len(lines) == 3
    assert ",closed,graceful,," in lines[1]


def test_cli_reads_packet_csv_with_ip_map(tmp_path):
    csv_path = tmp_path / "packets.csv"
    csv_path.write_text(
        "\n".join(
            [
                "timestamp,src_ip,dst_ip,src_port,dst_port,flags,seq_num,ack_num,length,protocol",
                "0,1,2,40000,80,2,10,0,0,6",
                "1000,2,1,80,40000,18,50,11,0,6",
                "2000,1,2,40000,80,16,11,51,0,6",
                "3000,2,1,80,40000,20,51,11,0,6",
                "3500,1,2,,80,16,11,51,0,6",
            ]
        )
        + "\n"
    )
    map_path = tmp_path / "ip_map.json"
    map_path.write_text(json.dumps({"10.9.0.1": 1, "10.9.0.2": 2}))

    output_dir = tmp_path / "out"
    exit_code = main(
        [
            str(csv_path),
            str(output_dir),
            "--log-level",
            "ERROR",
            "--ip-map",
            str(map_path),
            "--workers",
            "2",
        ]
    )

    assert exit_code == 0
    lines = (output_dir / "packets.csv_Flow.csv").read_text().splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("flow_000001,10.9.0.1:40000-10.9.0.2:80,10.9.0.1,40000,10.9.0.2,80,")
    assert ",reset,abortive,," in lines[1]


def test_cli_missing_input_returns_error(tmp_path):
    exit_code = main([str(tmp_path / "missing.pcap"), str(tmp_path / "out"), "--log-level", "ERROR"])
    assert exit_code == 1


def test_cli_empty_directory_returns_error(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    exit_code = main([str(empty), str(tmp_path / "out"), "--log-level", "ERROR"])
    assert exit_code == 1
