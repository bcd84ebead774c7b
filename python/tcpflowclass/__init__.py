"""TCP connection classification by handshake and closing behaviour."""

from .ancillary import (
    CSVFlowWriter,
    EndpointSummary,
    IncrementalCSVWriter,
    TimeBucket,
    aggregate_flows_by_interval,
    filter_flows,
    invalid_reason_counts,
    load_flow_csv,
    summarize_ip_endpoints,
    write_flow_csv,
    write_flows_json,
)
from .closing import ClosingClassifier, ClosingResult, ClosingState
from .config import DEFAULT_CONFIG, ClassifierConfig
from .connection_keyer import ConnectionKey, ConnectionKeyer, group_packets
from .csv_reader import load_ip_map, load_packets_csv, load_packets_json
from .flow import CloseType, ConnectionStatus, Flow, FlowPhases
from .flow_assembler import FlowAssembler
from .flow_feature import FlowFeature
from .flow_generator import FlowGenerator, classify_connection
from .handshake import FlowState, HandshakeClassifier, HandshakeStatus, InvalidReason
from .id_generator import IdGenerator
from .packet_reader import PacketReader
from .tcp_packet import Packet, PacketKind, TcpFlags, classify_flags

__all__ = [
    "ClassifierConfig",
    "DEFAULT_CONFIG",
    "Packet",
    "PacketKind",
    "TcpFlags",
    "classify_flags",
    "ConnectionKey",
    "ConnectionKeyer",
    "group_packets",
    "HandshakeClassifier",
    "HandshakeStatus",
    "FlowState",
    "InvalidReason",
    "ClosingClassifier",
    "ClosingResult",
    "ClosingState",
    "Flow",
    "FlowPhases",
    "ConnectionStatus",
    "CloseType",
    "FlowAssembler",
    "FlowFeature",
    "FlowGenerator",
    "classify_connection",
    "IdGenerator",
    "PacketReader",
    "load_packets_csv",
    "load_packets_json",
    "load_ip_map",
    "EndpointSummary",
    "TimeBucket",
    "IncrementalCSVWriter",
    "CSVFlowWriter",
    "write_flow_csv",
    "write_flows_json",
    "summarize_ip_endpoints",
    "aggregate_flows_by_interval",
    "filter_flows",
    "invalid_reason_counts",
    "load_flow_csv",
]
