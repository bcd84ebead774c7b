"""Packet-record ingestion from CSV and JSON exports."""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .id_generator import IdGenerator
from .tcp_packet import Packet, TcpFlags, flags_from_type
from .utils import format_ip

logger = logging.getLogger(__name__)

PACKET_COLUMNS = (
    "timestamp",
    "src_ip",
    "dst_ip",
    "src_port",
    "dst_port",
    "flags",
    "seq_num",
    "ack_num",
    "length",
)
_REQUIRED_COLUMNS = ("timestamp", "src_ip", "dst_ip")
_TCP_PROTOCOLS = {"6", "tcp"}


class MalformedRecord(ValueError):
    """A packet record that cannot be turned into a :class:`Packet`."""


@dataclass
class LoadResult:
    packets: List[Packet] = field(default_factory=list)
    dropped: int = 0
    non_tcp: int = 0

    @property
    def total_records(self) -> int:
        return len(self.packets) + self.dropped + self.non_tcp


def load_ip_map(path: Union[str, Path]) -> Dict[int, str]:
    """Read an ``{"ip": int}`` JSON map and return it inverted as ``int -> ip``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    with path.open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    if not isinstance(raw, dict):
        raise ValueError(f"IP map {path} must be a JSON object")

    mapping: Dict[int, str] = {}
    for ip, value in raw.items():
        try:
            mapping[int(value)] = ip
        except (TypeError, ValueError):
            logger.debug("Ignoring IP map entry %r -> %r", ip, value)
    return mapping


def _number(record: Mapping[str, Any], name: str, default: Optional[int] = 0) -> Optional[int]:
    value = record.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        raise MalformedRecord(f"{name} is not numeric: {value!r}") from None


def _flags(record: Mapping[str, Any]) -> TcpFlags:
    raw = record.get("flags")
    if raw is not None and str(raw).strip():
        return TcpFlags(_number(record, "flags") & 0xFF)
    label = record.get("flag_type")
    if label:
        try:
            return flags_from_type(str(label))
        except ValueError as exc:
            raise MalformedRecord(str(exc)) from None
    return TcpFlags.NONE


def is_tcp_record(record: Mapping[str, Any]) -> bool:
    protocol = record.get("protocol")
    if protocol is None or not str(protocol).strip():
        return True
    return str(protocol).strip().lower() in _TCP_PROTOCOLS


def packet_from_record(
    record: Mapping[str, Any],
    packet_id: int = 0,
    ip_map: Optional[Mapping[int, str]] = None,
) -> Packet:
    """Build a packet from a CSV row or JSON object.

    Raises :class:`MalformedRecord` when the timestamp, an address or a
    port is missing, or when a numeric field does not parse.
    """
    for name in _REQUIRED_COLUMNS:
        value = record.get(name)
        if value is None or not str(value).strip():
            raise MalformedRecord(f"missing {name}")

    src_port = _number(record, "src_port", default=None)
    dst_port = _number(record, "dst_port", default=None)
    if src_port is None or dst_port is None:
        raise MalformedRecord("missing port")

    return Packet(
        timestamp=_number(record, "timestamp"),
        src_ip=format_ip(record["src_ip"], ip_map),
        dst_ip=format_ip(record["dst_ip"], ip_map),
        src_port=src_port,
        dst_port=dst_port,
        flags=_flags(record),
        seq=_number(record, "seq_num"),
        ack=_number(record, "ack_num"),
        payload_len=_number(record, "length"),
        packet_id=packet_id,
    )


def packets_from_records(
    records: Iterable[Mapping[str, Any]],
    ip_map: Optional[Mapping[int, str]] = None,
    source: str = "records",
) -> LoadResult:
    result = LoadResult()
    ids = IdGenerator()
    for index, record in enumerate(records):
        if not is_tcp_record(record):
            result.non_tcp += 1
            continue
        try:
            packet = packet_from_record(record, ids.next_id(), ip_map)
        except MalformedRecord as exc:
            logger.debug("%s record %d dropped: %s", source, index, exc)
            result.dropped += 1
            continue
        result.packets.append(packet)

    if result.dropped:
        logger.info("Dropped %d malformed record(s) from %s", result.dropped, source)
    if not result.packets:
        logger.warning("No TCP packets found in %s", source)
    return result


def load_packets_csv(
    path: Union[str, Path],
    ip_map: Optional[Mapping[int, str]] = None,
) -> LoadResult:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    with path.open("r", newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        if reader.fieldnames is None:
            raise ValueError(f"CSV {path} is missing a header row")
        fieldnames = {name.strip() for name in reader.fieldnames}
        missing = [name for name in _REQUIRED_COLUMNS if name not in fieldnames]
        if missing:
            raise ValueError(f"CSV {path} is missing columns: {', '.join(missing)}")
        rows = ({key.strip(): value for key, value in row.items() if key} for row in reader)
        return packets_from_records(rows, ip_map, source=path.name)


def load_packets_json(
    path: Union[str, Path],
    ip_map: Optional[Mapping[int, str]] = None,
) -> LoadResult:
    """Accept either a JSON array of packet objects or ``{"packets": [...]}``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    with path.open("r", encoding="utf-8") as handle:
        document = json.load(handle)
    if isinstance(document, dict):
        document = document.get("packets")
    if not isinstance(document, list):
        raise ValueError(f"JSON {path} must hold a packet array")

    records = [record for record in document if isinstance(record, dict)]
    skipped = len(document) - len(records)
    result = packets_from_records(records, ip_map, source=path.name)
    result.dropped += skipped
    return result


__all__ = [
    "PACKET_COLUMNS",
    "MalformedRecord",
    "LoadResult",
    "load_ip_map",
    "is_tcp_record",
    "packet_from_record",
    "packets_from_records",
    "load_packets_csv",
    "load_packets_json",
]
