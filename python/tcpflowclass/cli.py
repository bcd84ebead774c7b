"""Command-line entry point for capture to classified flow conversion."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from .ancillary import invalid_reason_counts, write_flows_json
from .config import (
    HANDSHAKE_TIMEOUT_MS,
    REORDER_WINDOW_MS,
    REORDER_WINDOW_PKTS,
    TICKS_PER_MS,
    ClassifierConfig,
)
from .csv_reader import load_ip_map, load_packets_csv, load_packets_json
from .flow_generator import FlowGenerator
from .packet_reader import PacketReader
from .tcp_packet import Packet
from .utils import (
    FLOW_JSON_SUFFIX,
    FLOW_SUFFIX,
    IP_SUMMARY_SUFFIX,
    TIME_BUCKETS_SUFFIX,
)

logger = logging.getLogger(__name__)

PCAP_SUFFIXES = {".pcap", ".pcapng", ".cap"}
RECORD_SUFFIXES = {".csv", ".json"}


@dataclass
class FlowStats:
    total_packets: int = 0
    dropped_records: int = 0
    flows_written: int = 0
    ip_summary_rows: int = 0
    time_bucket_rows: int = 0
    ip_summary_path: Optional[Path] = None
    time_buckets_path: Optional[Path] = None
    json_path: Optional[Path] = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Classify TCP connections in captures by handshake and closing behaviour.",
    )
    parser.add_argument(
        "input_path",
        type=Path,
        help="PCAP/PCAPNG capture, packet CSV/JSON export, or a directory of them.",
    )
    parser.add_argument(
        "output_dir",
        type=Path,
        help="Directory where generated *_Flow.csv files will be written.",
    )
    parser.add_argument(
        "--handshake-timeout-ms",
        type=int,
        default=HANDSHAKE_TIMEOUT_MS,
        metavar="MS",
        help=f"Wait for SYN+ACK and final ACK (default: {HANDSHAKE_TIMEOUT_MS}).",
    )
    parser.add_argument(
        "--reorder-window-ms",
        type=int,
        default=REORDER_WINDOW_MS,
        metavar="MS",
        help=f"Age after which a buffered out-of-order packet is dropped (default: {REORDER_WINDOW_MS}).",
    )
    parser.add_argument(
        "--reorder-window-pkts",
        type=int,
        default=REORDER_WINDOW_PKTS,
        metavar="N",
        help=f"Packets held while waiting for a SYN (default: {REORDER_WINDOW_PKTS}).",
    )
    parser.add_argument(
        "--ticks-per-ms",
        type=int,
        default=TICKS_PER_MS,
        metavar="N",
        help=f"Timestamp ticks per millisecond (default: {TICKS_PER_MS}, microseconds).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Classify connections on this many threads (default: 1).",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        metavar="SECONDS",
        help="Stream packets and close connections idle for longer than this.",
    )
    parser.add_argument(
        "--ip-map",
        type=Path,
        help="JSON object mapping IP strings to the integers used in packet exports.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Also write a *_Flows.json document.",
    )
    parser.add_argument(
        "--json-packets",
        action="store_true",
        help="Include per-phase packet lists in the JSON document (implies --json).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Log level for diagnostic output.",
    )
    parser.add_argument(
        "--ip-summary",
        action="store_true",
        help="Write per-IP endpoint summary CSVs alongside flow reports.",
    )
    parser.add_argument(
        "--time-buckets",
        type=float,
        metavar="SECONDS",
        help="Write flow start bucket CSVs with the given interval in seconds.",
    )
    return parser


def collect_inputs(path: Path) -> List[Path]:
    if path.is_file():
        return [path]
    if not path.is_dir():
        raise FileNotFoundError(f"Input path is neither file nor directory: {path}")

    candidates: Iterable[Path] = path.iterdir()
    return [
        entry
        for entry in sorted(candidates)
        if entry.is_file() and entry.suffix.lower() in PCAP_SUFFIXES | RECORD_SUFFIXES
    ]


def read_packets(
    input_file: Path,
    ip_map: Optional[Mapping[int, str]],
    stats: FlowStats,
) -> List[Packet]:
    suffix = input_file.suffix.lower()
    if suffix == ".csv":
        result = load_packets_csv(input_file, ip_map)
    elif suffix == ".json":
        result = load_packets_json(input_file, ip_map)
    else:
        with PacketReader(input_file) as reader:
            packets = list(reader)
        stats.total_packets = len(packets)
        return packets

    stats.total_packets = len(result.packets)
    stats.dropped_records = result.dropped
    return result.packets


def _seconds_to_ticks(seconds: float, config: ClassifierConfig) -> int:
    return max(1, int(seconds * 1000 * config.ticks_per_ms))


def _stream(generator: FlowGenerator, packets: List[Packet]) -> None:
    for packet in sorted(packets, key=lambda item: (item.timestamp, item.packet_id)):
        generator.expire_idle(packet.timestamp)
        generator.add_packet(packet)
    generator.flush()


def process_input(
    input_file: Path,
    output_dir: Path,
    *,
    config: ClassifierConfig,
    workers: int = 1,
    idle_timeout_s: Optional[float] = None,
    ip_map: Optional[Mapping[int, str]] = None,
    write_json: bool = False,
    json_packets: bool = False,
    ip_summary: bool = False,
    time_bucket_interval: Optional[float] = None,
) -> FlowStats:
    stats = FlowStats()

    output_dir.mkdir(parents=True, exist_ok=True)
    output_file = output_dir / f"{input_file.name}{FLOW_SUFFIX}"
    if output_file.exists():
        output_file.unlink()

    packets = read_packets(input_file, ip_map, stats)

    idle_timeout = (
        _seconds_to_ticks(idle_timeout_s, config) if idle_timeout_s is not None else None
    )
    flow_generator = FlowGenerator(config=config, idle_timeout=idle_timeout)
    if idle_timeout is not None:
        _stream(flow_generator, packets)
    else:
        flow_generator.generate(packets, workers=workers)
    flows = flow_generator.finished_flows
    stats.flows_written = flow_generator.dump_flow_csv(str(output_dir), output_file.name)

    reasons = invalid_reason_counts(flows)
    if reasons:
        logger.info(
            "Invalid flows by reason: %s",
            ", ".join(
                f"{reason.value}={reasons[reason]}"
                for reason in sorted(reasons, key=lambda item: item.value)
            ),
        )

    if write_json or json_packets:
        json_path = output_dir / f"{input_file.name}{FLOW_JSON_SUFFIX}"
        write_flows_json(json_path, flows, include_packets=json_packets)
        stats.json_path = json_path

    if ip_summary:
        ip_summary_path = output_dir / f"{input_file.name}{IP_SUMMARY_SUFFIX}"
        if ip_summary_path.exists():
            ip_summary_path.unlink()
        rows = flow_generator.dump_ip_address_summary(str(ip_summary_path))
        if rows:
            stats.ip_summary_rows = rows
            stats.ip_summary_path = ip_summary_path

    if time_bucket_interval is not None:
        time_bucket_path = output_dir / f"{input_file.name}{TIME_BUCKETS_SUFFIX}"
        if time_bucket_path.exists():
            time_bucket_path.unlink()
        rows = flow_generator.dump_time_buckets(
            str(time_bucket_path),
            _seconds_to_ticks(time_bucket_interval, config),
        )
        if rows:
            stats.time_bucket_rows = rows
            stats.time_buckets_path = time_bucket_path

    return stats


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level))

    if args.workers < 1:
        parser.error("--workers must be at least 1.")
    if args.time_buckets is not None and args.time_buckets <= 0:
        parser.error("--time-buckets interval must be greater than 0 seconds.")
    if args.idle_timeout is not None and args.idle_timeout <= 0:
        parser.error("--idle-timeout must be greater than 0 seconds.")

    try:
        config = ClassifierConfig(
            handshake_timeout_ms=args.handshake_timeout_ms,
            reorder_window_pkts=args.reorder_window_pkts,
            reorder_window_ms=args.reorder_window_ms,
            ticks_per_ms=args.ticks_per_ms,
        )
    except ValueError as exc:
        parser.error(str(exc))

    ip_map = None
    if args.ip_map is not None:
        try:
            ip_map = load_ip_map(args.ip_map)
        except (OSError, ValueError) as exc:
            logger.error("Cannot read IP map %s: %s", args.ip_map, exc)
            return 1

    try:
        inputs = collect_inputs(args.input_path)
    except FileNotFoundError as exc:
        logger.error(str(exc))
        return 1

    if not inputs:
        logger.warning("No capture or packet files found at %s", args.input_path)
        return 1

    exit_code = 0
    for index, input_file in enumerate(inputs, 1):
        logger.info("Processing %s (%d/%d)", input_file, index, len(inputs))
        try:
            stats = process_input(
                input_file,
                args.output_dir,
                config=config,
                workers=args.workers,
                idle_timeout_s=args.idle_timeout,
                ip_map=ip_map,
                write_json=args.json,
                json_packets=args.json_packets,
                ip_summary=args.ip_summary,
                time_bucket_interval=args.time_buckets,
            )
        except Exception:  # pragma: no cover - unexpected runtime failures
            logger.exception("Failed processing %s", input_file)
            exit_code = 1
            continue

        logger.info(
            "Finished %s: packets=%d, dropped=%d, flows=%d",
            input_file.name,
            stats.total_packets,
            stats.dropped_records,
            stats.flows_written,
        )
        if stats.json_path is not None:
            logger.info("Wrote flow JSON to %s", stats.json_path)
        if stats.ip_summary_rows and stats.ip_summary_path is not None:
            logger.info(
                "Wrote %d IP summary rows to %s",
                stats.ip_summary_rows,
                stats.ip_summary_path,
            )
        if stats.time_bucket_rows and stats.time_buckets_path is not None:
            logger.info(
                "Wrote %d time bucket rows to %s",
                stats.time_bucket_rows,
                stats.time_buckets_path,
            )

    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
