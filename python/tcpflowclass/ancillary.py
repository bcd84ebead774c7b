"""Flow exports, summaries, filters and the flow CSV loader."""

from __future__ import annotations

import csv
import json
import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Collection,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Sequence,
    Union,
)

import numpy as np

from .flow import CloseType, ConnectionStatus, Flow, FlowPhases
from .flow_feature import FlowFeature
from .handshake import InvalidReason
from .tcp_packet import Packet
from .utils import LINE_SEP

logger = logging.getLogger(__name__)

IP_SUMMARY_HEADER = (
    "ip,flows_as_initiator,flows_as_responder,packets_sent,packets_received,"
    "bytes_sent,bytes_received,invalid_flows,total_flows,total_packets,total_bytes"
)
TIME_BUCKET_HEADER = (
    "bin_start,bin_end,started_flows,total_packets,total_bytes,"
    "graceful,abortive,open,half_close,invalid"
)

# reason names written by older offline exports
_LEGACY_REASONS = {
    "no_syn": InvalidReason.ACK_WITHOUT_HANDSHAKE,
    "incomplete_no_syn": InvalidReason.ACK_WITHOUT_HANDSHAKE,
    "no_synack": InvalidReason.ORPHAN_SYN_TIMEOUT,
    "incomplete_no_synack": InvalidReason.ORPHAN_SYN_TIMEOUT,
    "no_ack": InvalidReason.ORPHAN_SYNACK_TIMEOUT,
    "incomplete_no_ack": InvalidReason.ORPHAN_SYNACK_TIMEOUT,
    "invalid_ack": InvalidReason.BAD_SEQ_ACK_NUMBERS,
    "invalid_synack": InvalidReason.BAD_SEQ_ACK_NUMBERS,
}

_CLOSE_VALUES = {member.value for member in CloseType}

_VALIDITY_STATES = {
    "valid_complete": (ConnectionStatus.CLOSED, CloseType.GRACEFUL),
    "valid_reset": (ConnectionStatus.RESET, CloseType.ABORTIVE),
    "valid_ongoing": (ConnectionStatus.ESTABLISHED, CloseType.OPEN),
}


@dataclass
class EndpointSummary:
    """Aggregate view of flows touching a particular IP endpoint."""

    flows_as_initiator: int = 0
    flows_as_responder: int = 0
    packets_sent: int = 0
    packets_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    invalid_flows: int = 0

    @property
    def total_flows(self) -> int:
        return self.flows_as_initiator + self.flows_as_responder

    @property
    def total_packets(self) -> int:
        return self.packets_sent + self.packets_received

    @property
    def total_bytes(self) -> int:
        return self.bytes_sent + self.bytes_received


@dataclass
class TimeBucket:
    """Flows started inside a fixed time window, split by close type."""

    start: int
    end: int
    started_flows: int = 0
    packet_count: int = 0
    byte_count: int = 0
    graceful: int = 0
    abortive: int = 0
    open: int = 0
    half_close: int = 0
    invalid: int = 0


class IncrementalCSVWriter:
    """Append rows to a CSV file, writing the header only once."""

    def __init__(self, file_path: Union[str, Path], header: Optional[str] = None) -> None:
        self.file_path = Path(file_path)
        self.header = header
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._header_written = (
            self.file_path.exists() and self.file_path.stat().st_size > 0
        )

    def append_rows(self, rows: Iterable[str]) -> int:
        row_list = [row for row in rows if row]
        if not row_list:
            return 0

        with self.file_path.open("a", encoding="utf-8") as handle:
            if not self._header_written and self.header is not None:
                handle.write(self.header + LINE_SEP)
                self._header_written = True
            for row in row_list:
                handle.write(row + LINE_SEP)

        return len(row_list)


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


class CSVFlowWriter:
    """Listener writing each generated flow as one CSV row."""

    def __init__(self, output_file: Union[str, Path]) -> None:
        self._writer = IncrementalCSVWriter(output_file, FlowFeature.get_header())
        self.flows_written = 0

    def on_flow_generated(self, flow: Flow) -> None:
        self.flows_written += self._writer.append_rows([FlowFeature.dump(flow)])


def write_flow_csv(file_path: Union[str, Path], flows: Iterable[Flow]) -> int:
    writer = IncrementalCSVWriter(file_path, FlowFeature.get_header())
    return writer.append_rows(FlowFeature.dump(flow) for flow in flows)


def write_flows_json(
    file_path: Union[str, Path],
    flows: Iterable[Flow],
    include_packets: bool = False,
) -> int:
    records = [flow.to_dict(include_packets=include_packets) for flow in flows]
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"flows": records}, indent=2), encoding="utf-8")
    return len(records)


def write_ip_summary_csv(
    file_path: Union[str, Path], summary: Mapping[str, EndpointSummary]
) -> int:
    rows = []
    for ip in sorted(summary):
        entry = summary[ip]
        rows.append(
            ",".join(
                str(value)
                for value in (
                    ip,
                    entry.flows_as_initiator,
                    entry.flows_as_responder,
                    entry.packets_sent,
                    entry.packets_received,
                    entry.bytes_sent,
                    entry.bytes_received,
                    entry.invalid_flows,
                    entry.total_flows,
                    entry.total_packets,
                    entry.total_bytes,
                )
            )
        )
    return IncrementalCSVWriter(file_path, IP_SUMMARY_HEADER).append_rows(rows)


def write_time_buckets_csv(file_path: Union[str, Path], buckets: Sequence[TimeBucket]) -> int:
    rows = [
        ",".join(
            str(value)
            for value in (
                bucket.start,
                bucket.end,
                bucket.started_flows,
                bucket.packet_count,
                bucket.byte_count,
                bucket.graceful,
                bucket.abortive,
                bucket.open,
                bucket.half_close,
                bucket.invalid,
            )
        )
        for bucket in buckets
    ]
    return IncrementalCSVWriter(file_path, TIME_BUCKET_HEADER).append_rows(rows)


# ---------------------------------------------------------------------------
# Summaries and filters
# ---------------------------------------------------------------------------


def _flow_packets(flow: Flow) -> Iterator[Packet]:
    yield from flow.phases.establishment
    yield from flow.phases.data_transfer
    yield from flow.phases.closing


def summarize_ip_endpoints(flows: Iterable[Flow]) -> Dict[str, EndpointSummary]:
    """Per-IP flow, packet and byte counts."""

    summary: MutableMapping[str, EndpointSummary] = {}

    for flow in flows:
        initiator = summary.setdefault(flow.initiator, EndpointSummary())
        initiator.flows_as_initiator += 1
        responder = summary.setdefault(flow.responder, EndpointSummary())
        responder.flows_as_responder += 1
        if flow.state is ConnectionStatus.INVALID:
            initiator.invalid_flows += 1
            if responder is not initiator:
                responder.invalid_flows += 1

        for packet in _flow_packets(flow):
            sender = summary.setdefault(packet.src_ip, EndpointSummary())
            sender.packets_sent += 1
            sender.bytes_sent += packet.payload_len
            receiver = summary.setdefault(packet.dst_ip, EndpointSummary())
            receiver.packets_received += 1
            receiver.bytes_received += packet.payload_len

    return dict(summary)


def aggregate_flows_by_interval(flows: Iterable[Flow], interval: int) -> List[TimeBucket]:
    """Bucket flows by start timestamp; ``interval`` is in capture-clock ticks."""

    if interval <= 0:
        raise ValueError("interval must be positive")

    flow_list = list(flows)
    if not flow_list:
        return []

    starts = np.array([flow.start_time for flow in flow_list], dtype=np.int64)
    bins = np.floor_divide(starts, interval) * interval
    bin_starts, inverse = np.unique(bins, return_inverse=True)
    packets = np.bincount(
        inverse, weights=[flow.total_packets for flow in flow_list], minlength=len(bin_starts)
    )
    byte_totals = np.bincount(
        inverse, weights=[flow.total_bytes for flow in flow_list], minlength=len(bin_starts)
    )
    started = np.bincount(inverse, minlength=len(bin_starts))

    buckets = [
        TimeBucket(
            start=int(start),
            end=int(start) + interval,
            started_flows=int(started[index]),
            packet_count=int(packets[index]),
            byte_count=int(byte_totals[index]),
        )
        for index, start in enumerate(bin_starts)
    ]
    for flow, index in zip(flow_list, inverse):
        bucket = buckets[int(index)]
        attr = flow.close_type.value
        setattr(bucket, attr, getattr(bucket, attr) + 1)
    return buckets


def filter_flows(
    flows: Iterable[Flow],
    ips: Optional[Collection[str]] = None,
    close_types: Optional[Collection[CloseType]] = None,
    invalid_reasons: Optional[Collection[InvalidReason]] = None,
) -> List[Flow]:
    """Select flows whose both endpoints are in ``ips`` and whose category matches.

    An invalid flow passes the reason filter through its reason, with a
    missing reason counted as ``unknown_invalid``.
    """
    selected = []
    for flow in flows:
        if ips is not None and not all(ip in ips for ip in flow.ip_pair):
            continue
        if close_types is not None and flow.close_type not in close_types:
            continue
        if invalid_reasons is not None and flow.close_type is CloseType.INVALID:
            reason = flow.invalid_reason or InvalidReason.UNKNOWN_INVALID
            if reason not in invalid_reasons:
                continue
        selected.append(flow)
    return selected


def invalid_reason_counts(flows: Iterable[Flow]) -> Dict[InvalidReason, int]:
    counts: Counter = Counter()
    for flow in flows:
        if flow.state is not ConnectionStatus.INVALID and flow.close_type is not CloseType.INVALID:
            continue
        counts[flow.invalid_reason or InvalidReason.UNKNOWN_INVALID] += 1
    return dict(counts)


# ---------------------------------------------------------------------------
# Loading precomputed flow CSVs
# ---------------------------------------------------------------------------


def _int(value: Optional[str]) -> int:
    try:
        return int(float(value)) if value not in (None, "") else 0
    except ValueError:
        return 0


def _parse_reason(raw: str, row_index: int) -> InvalidReason:
    reason = InvalidReason.parse(raw)
    if reason is not None:
        return reason
    if raw in _LEGACY_REASONS:
        return _LEGACY_REASONS[raw]
    if raw:
        logger.warning("Row %d: unrecognised invalid reason %r", row_index, raw)
    return InvalidReason.UNKNOWN_INVALID


def load_flow_csv(path: Union[str, Path]) -> List[Flow]:
    """Read flow summaries written by :func:`write_flow_csv` or the offline tool.

    Rows carry counts rather than packets, so the phases of the returned
    flows only hold ``declared_counts``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    flows: List[Flow] = []
    with path.open("r", newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        if reader.fieldnames is None:
            raise ValueError(f"CSV {path} is missing a header row")

        for row_index, row in enumerate(reader):
            validity = (row.get("validity") or "").strip()
            state_raw = (row.get("state") or "").strip()
            close_raw = (row.get("close_type") or "").strip()
            reason_raw = (row.get("invalid_reason") or "").strip()

            if state_raw:
                try:
                    state = ConnectionStatus(state_raw)
                except ValueError:
                    logger.debug("Row %d: unknown state %r", row_index, state_raw)
                    state = ConnectionStatus.UNKNOWN
                close_type = CloseType(close_raw) if close_raw in _CLOSE_VALUES else CloseType.OPEN
            elif validity.startswith("invalid"):
                state, close_type = ConnectionStatus.INVALID, CloseType.INVALID
            else:
                state, close_type = _VALIDITY_STATES.get(
                    validity, (ConnectionStatus.UNKNOWN, CloseType.OPEN)
                )
                if close_raw in _CLOSE_VALUES:
                    close_type = CloseType(close_raw)

            if close_type is CloseType.INVALID:
                state = ConnectionStatus.INVALID
            reason = None
            if state is ConnectionStatus.INVALID:
                close_type = CloseType.INVALID
                if not reason_raw and validity == "invalid_rst_early":
                    reason_raw = InvalidReason.RST_DURING_HANDSHAKE.value
                reason = _parse_reason(reason_raw, row_index)

            flows.append(
                Flow(
                    id=row.get("flow_id") or f"flow_{row_index + 1:06d}",
                    key=row.get("connection_key") or "",
                    initiator=row.get("initiator_ip") or "",
                    initiator_port=_int(row.get("initiator_port")),
                    responder=row.get("responder_ip") or "",
                    responder_port=_int(row.get("responder_port")),
                    start_time=_int(row.get("start_time")),
                    end_time=_int(row.get("end_time")),
                    state=state,
                    close_type=close_type,
                    invalid_reason=reason,
                    phases=FlowPhases(
                        declared_counts=(
                            _int(row.get("establishment_packets")),
                            _int(row.get("data_packets")),
                            _int(row.get("closing_packets")),
                        )
                    ),
                    total_packets=_int(row.get("total_packets")),
                    total_bytes=_int(row.get("total_bytes")),
                    establishment_complete=(
                        validity.startswith("valid")
                        or state in (ConnectionStatus.ESTABLISHED, ConnectionStatus.CLOSED, ConnectionStatus.RESET)
                    ),
                )
            )
    return flows


__all__ = [
    "EndpointSummary",
    "TimeBucket",
    "IncrementalCSVWriter",
    "CSVFlowWriter",
    "write_flow_csv",
    "write_flows_json",
    "write_ip_summary_csv",
    "write_time_buckets_csv",
    "summarize_ip_endpoints",
    "aggregate_flows_by_interval",
    "filter_flows",
    "invalid_reason_counts",
    "load_flow_csv",
    "IP_SUMMARY_HEADER",
    "TIME_BUCKET_HEADER",
]
