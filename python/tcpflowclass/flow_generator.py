"""Per-connection flow reconstruction in batch and streaming modes."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .ancillary import (
    EndpointSummary,
    TimeBucket,
    aggregate_flows_by_interval,
    summarize_ip_endpoints,
    write_flow_csv,
    write_ip_summary_csv,
    write_time_buckets_csv,
)
from .closing import ClosingClassifier, ClosingResult
from .config import DEFAULT_CONFIG, ClassifierConfig
from .connection_keyer import ConnectionKey, group_packets
from .flow import Flow
from .flow_assembler import FlowAssembler
from .handshake import FlowState, HandshakeClassifier
from .id_generator import IdGenerator
from .listeners import FlowGenListener
from .tcp_packet import Packet

logger = logging.getLogger(__name__)


def classify_connection(
    flow_id: str,
    key: ConnectionKey,
    packets: Sequence[Packet],
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> Flow:
    """Classify one time-ordered connection bucket into a Flow.

    Module-level so process pools can pickle it.
    """
    handshake = HandshakeClassifier(config).classify(packets)
    closing = ClosingClassifier().classify(packets)
    return FlowAssembler().assemble(flow_id, key, packets, handshake, closing)


class _ConnectionTracker:
    """Incremental state of one connection in streaming mode."""

    __slots__ = ("key", "packets", "handshake", "closing", "last_seen", "_hs", "_cl")

    def __init__(self, key: ConnectionKey, config: ClassifierConfig) -> None:
        self.key = key
        self._hs = HandshakeClassifier(config)
        self._cl = ClosingClassifier()
        self.packets: List[Packet] = []
        self.handshake: FlowState = self._hs.new_state()
        self.closing: ClosingResult = self._cl.new_state()
        self.last_seen = 0

    def apply(self, packet: Packet) -> None:
        self.packets.append(packet)
        self.last_seen = packet.timestamp
        self._hs.apply(self.handshake, packet)
        self._cl.apply(self.closing, packet)

    def finalize(self, now: Optional[int]) -> None:
        self._hs.finalize(self.handshake, now)
        self._cl.finalize(self.closing)


class FlowGenerator:
    def __init__(
        self,
        config: Optional[ClassifierConfig] = None,
        idle_timeout: Optional[int] = None,
    ) -> None:
        if idle_timeout is not None and idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        self.config = config or DEFAULT_CONFIG
        self.idle_timeout = idle_timeout
        self._listener: Optional[FlowGenListener] = None
        self._init_state()

    # ------------------------------------------------------------------
    def _init_state(self) -> None:
        self.current_flows: Dict[ConnectionKey, _ConnectionTracker] = {}
        self.finished_flows: List[Flow] = []
        self.skipped_packets = 0
        self._flow_ids = IdGenerator()
        self._announced = False

    def add_flow_listener(self, listener: FlowGenListener) -> None:
        self._listener = listener

    def _announce(self) -> None:
        if not self._announced:
            logger.info("Classifier tunables: %s", self.config.describe())
            self._announced = True

    # ------------------------------------------------------------------
    # Batch mode
    def generate(
        self,
        packets: Iterable[Packet],
        workers: int = 1,
        use_processes: bool = False,
    ) -> List[Flow]:
        """Group ``packets`` by connection and classify every bucket.

        Buckets are independent, so with ``workers > 1`` they are fanned
        out to a pool. Flow ids follow (start time, key) order and are
        assigned before the fan-out, so output does not depend on worker
        scheduling.
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._announce()

        buckets = group_packets(packets)
        ordered: List[Tuple[ConnectionKey, List[Packet]]] = sorted(
            buckets.items(), key=lambda item: (item[1][0].timestamp, str(item[0]))
        )
        flow_ids = [self._flow_ids.next_label() for _ in ordered]
        keys = [key for key, _ in ordered]
        bucket_packets = [bucket for _, bucket in ordered]
        configs = [self.config] * len(ordered)

        if workers == 1 or len(ordered) < 2:
            flows = list(map(classify_connection, flow_ids, keys, bucket_packets, configs))
        else:
            pool_cls = ProcessPoolExecutor if use_processes else ThreadPoolExecutor
            pool: Executor
            with pool_cls(max_workers=workers) as pool:
                flows = list(pool.map(classify_connection, flow_ids, keys, bucket_packets, configs))

        logger.debug("Classified %d connections with %d worker(s)", len(flows), workers)
        for flow in flows:
            self._emit_or_store(flow)
        return flows

    # ------------------------------------------------------------------
    # Streaming mode
    def add_packet(self, packet: Optional[Packet]) -> None:
        if packet is None:
            return
        if not packet.has_ports:
            self.skipped_packets += 1
            return
        self._announce()

        key = ConnectionKey.for_packet(packet)
        tracker = self.current_flows.get(key)
        if (
            tracker is not None
            and self.idle_timeout is not None
            and packet.timestamp - tracker.last_seen > self.idle_timeout
        ):
            logger.debug("Connection %s idle, closing before new packet", key)
            self._finish(tracker, tracker.last_seen + self.idle_timeout)
            tracker = None

        if tracker is None:
            tracker = _ConnectionTracker(key, self.config)
            self.current_flows[key] = tracker
        tracker.apply(packet)

    def expire_idle(self, now: int) -> int:
        """Finalize connections silent for longer than ``idle_timeout``."""
        if self.idle_timeout is None:
            return 0
        expired = [
            tracker
            for tracker in self.current_flows.values()
            if now - tracker.last_seen > self.idle_timeout
        ]
        for tracker in expired:
            self._finish(tracker, tracker.last_seen + self.idle_timeout)
        if expired:
            logger.debug("Idle expiry finalized %d flow(s)", len(expired))
        return len(expired)

    def flush(self) -> List[Flow]:
        """End of capture: finalize every connection still tracked."""
        flows = []
        for tracker in sorted(
            self.current_flows.values(),
            key=lambda item: (item.packets[0].timestamp, str(item.key)),
        ):
            flows.append(self._finish(tracker, None))
        return flows

    def _finish(self, tracker: _ConnectionTracker, now: Optional[int]) -> Flow:
        tracker.finalize(now)
        self.current_flows.pop(tracker.key, None)
        flow = FlowAssembler().assemble(
            self._flow_ids.next_label(),
            tracker.key,
            tracker.packets,
            tracker.handshake,
            tracker.closing,
        )
        self._emit_or_store(flow)
        return flow

    def _emit_or_store(self, flow: Flow) -> None:
        if self._listener:
            self._listener.on_flow_generated(flow)
        else:
            self.finished_flows.append(flow)

    # ------------------------------------------------------------------
    def dump_flow_csv(self, path: str, filename: str) -> int:
        return write_flow_csv(Path(path) / filename, self.finished_flows)

    def summarize_ip_addresses(self) -> Dict[str, EndpointSummary]:
        return summarize_ip_endpoints(self.finished_flows)

    def dump_ip_address_summary(self, file_full_path: str) -> int:
        return write_ip_summary_csv(file_full_path, self.summarize_ip_addresses())

    def time_buckets(self, interval: int) -> List[TimeBucket]:
        return aggregate_flows_by_interval(self.finished_flows, interval)

    def dump_time_buckets(self, file_full_path: str, interval: int) -> int:
        return write_time_buckets_csv(file_full_path, self.time_buckets(interval))


__all__ = ["FlowGenerator", "classify_connection"]
