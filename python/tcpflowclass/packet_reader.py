"""PCAP/PCAPNG ingestion producing TCP :class:`Packet` records."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, Iterator, Optional, Tuple, Union

import dpkt
from dpkt.ethernet import VLANtag8021Q

from .id_generator import IdGenerator
from .tcp_packet import Packet, TcpFlags
from .utils import MICROS_PER_SECOND, format_ip

logger = logging.getLogger(__name__)

# link-layer types, see pcap-linktype(7)
LINKTYPE_ETHERNET = 1
LINKTYPE_LINUX_SLL = 113
_LINKTYPES_RAW_IP = {12, 14, 101}

_PCAP_MAGICS = {
    b"\xd4\xc3\xb2\xa1",
    b"\xa1\xb2\xc3\xd4",
    b"\xd4\x3c\xb2\xa1",
    b"\xa1\xb2\x3c\xd4",
}


class PacketReader:
    """Iterates over TCP packets decoded from a capture file.

    Timestamps are converted to integer microseconds. Non-TCP traffic is
    skipped since only TCP segments form flows.
    """

    def __init__(
        self,
        pcap_path: Union[str, Path],
        *,
        read_ip4: bool = True,
        read_ip6: bool = True,
    ) -> None:
        path = Path(pcap_path)
        if not path.is_file():
            raise FileNotFoundError(f"PCAP file does not exist: {path}")
        if not read_ip4 and not read_ip6:
            raise ValueError("At least one of read_ip4 or read_ip6 must be enabled")

        self.path = path
        self.read_ip4 = read_ip4
        self.read_ip6 = read_ip6

        self._file: Optional[IO[bytes]] = None
        self._capture = None
        self._linktype = LINKTYPE_ETHERNET
        self._packet_iter: Optional[Iterator[Tuple[float, bytes]]] = None

        self._generator = IdGenerator()
        self.frames_seen = 0
        self.skipped_frames = 0

    # ------------------------------------------------------------------
    def __enter__(self) -> "PacketReader":
        self._open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def close(self) -> None:
        self._capture = None
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                logger.debug("Failed to close capture file", exc_info=True)
            finally:
                self._file = None
        self._packet_iter = None

    # ------------------------------------------------------------------
    def __iter__(self) -> Iterator[Packet]:
        while True:
            packet = self.next_packet()
            if packet is None:
                break
            yield packet

    def next_packet(self) -> Optional[Packet]:
        self._ensure_iter()
        assert self._packet_iter is not None

        for ts, buf in self._packet_iter:
            self.frames_seen += 1
            packet = self._decode_frame(ts, buf)
            if packet is not None:
                return packet
            self.skipped_frames += 1
        return None

    # ------------------------------------------------------------------
    def _ensure_iter(self) -> None:
        if self._capture is None or self._packet_iter is None:
            self._open()
            assert self._capture is not None
            self._packet_iter = iter(self._capture)

    def _open(self) -> None:
        if self._capture is not None:
            return
        try:
            self._file = self.path.open("rb")
            magic = self._file.read(4)
            self._file.seek(0)
            if magic in _PCAP_MAGICS:
                self._capture = dpkt.pcap.Reader(self._file)
            else:
                self._capture = dpkt.pcapng.Reader(self._file)
            self._linktype = self._capture.datalink()
        except (OSError, ValueError, dpkt.dpkt.NeedData, dpkt.UnpackError) as exc:
            self.close()
            raise RuntimeError(f"Failed to open capture file: {self.path}") from exc

    # ------------------------------------------------------------------
    def _network_layer(self, frame: bytes):
        if self._linktype in _LINKTYPES_RAW_IP:
            version = frame[0] >> 4 if frame else 0
            if version == 4:
                return dpkt.ip.IP(frame)
            if version == 6:
                return dpkt.ip6.IP6(frame)
            return None
        if self._linktype == LINKTYPE_LINUX_SLL:
            return dpkt.sll.SLL(frame).data

        payload = dpkt.ethernet.Ethernet(frame).data
        if isinstance(payload, VLANtag8021Q):
            payload = payload.data
        return payload

    def _decode_frame(self, timestamp: float, frame: bytes) -> Optional[Packet]:
        try:
            network = self._network_layer(frame)
        except (dpkt.UnpackError, dpkt.NeedData, ValueError):
            logger.debug("Skipping undecodable frame (linktype %d)", self._linktype, exc_info=True)
            return None

        if isinstance(network, dpkt.ip.IP):
            if not self.read_ip4:
                return None
        elif isinstance(network, dpkt.ip6.IP6):
            if not self.read_ip6:
                return None
        else:
            return None
        return self._decode_tcp(timestamp, network.src, network.dst, network.data)

    def _decode_tcp(self, timestamp: float, src: bytes, dst: bytes, transport) -> Optional[Packet]:
        if not isinstance(transport, dpkt.tcp.TCP):
            return None
        return Packet(
            timestamp=int(round(timestamp * MICROS_PER_SECOND)),
            src_ip=format_ip(src),
            dst_ip=format_ip(dst),
            src_port=transport.sport,
            dst_port=transport.dport,
            flags=TcpFlags(transport.flags & 0xFF),
            seq=transport.seq,
            ack=transport.ack,
            payload_len=len(transport.data),
            packet_id=self._generator.next_id(),
        )


def read_pcap(path: Union[str, Path], **kwargs) -> Iterator[Packet]:
    with PacketReader(path, **kwargs) as reader:
        yield from reader


__all__ = ["PacketReader", "read_pcap"]
