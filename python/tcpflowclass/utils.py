"""Small helpers shared by readers and exporters."""

from __future__ import annotations

import ipaddress
import os
from typing import Mapping, Optional, Union

LINE_SEP = os.linesep
FLOW_SUFFIX = "_Flow.csv"
FLOW_JSON_SUFFIX = "_Flows.json"
IP_SUMMARY_SUFFIX = "_IP_Summary.csv"
TIME_BUCKETS_SUFFIX = "_Time_Buckets.csv"

MICROS_PER_SECOND = 1_000_000


def format_ip(
    value: Union[bytes, bytearray, str, int],
    int_map: Optional[Mapping[int, str]] = None,
) -> str:
    """Render a raw IP buffer, an integer-encoded address or a string."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) == 4:
            return str(ipaddress.IPv4Address(bytes(value)))
        if len(value) == 16:
            return str(ipaddress.IPv6Address(bytes(value)))
        return bytes(value).hex()
    if isinstance(value, int):
        if int_map is not None and value in int_map:
            return int_map[value]
        return str(value)
    text = str(value).strip()
    if int_map is not None and text.isdigit() and int(text) in int_map:
        return int_map[int(text)]
    return text


__all__ = [
    "LINE_SEP",
    "FLOW_SUFFIX",
    "FLOW_JSON_SUFFIX",
    "IP_SUMMARY_SUFFIX",
    "TIME_BUCKETS_SUFFIX",
    "MICROS_PER_SECOND",
    "format_ip",
]
