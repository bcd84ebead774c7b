"""Modulo 2**32 arithmetic for TCP sequence and acknowledgment numbers."""

from __future__ import annotations

SEQ_MODULUS = 1 << 32
SEQ_MASK = SEQ_MODULUS - 1
_HALF = 1 << 31


def seq_add(seq: int, delta: int) -> int:
    return (seq + delta) & SEQ_MASK


def seq_diff(a: int, b: int) -> int:
    """Signed distance from ``b`` to ``a`` in the range [-2**31, 2**31)."""
    diff = (a - b) & SEQ_MASK
    if diff >= _HALF:
        diff -= SEQ_MODULUS
    return diff


def seq_lt(a: int, b: int) -> bool:
    # RFC 1982 serial number comparison
    return seq_diff(a, b) < 0


def acknowledges(ack_num: int, seq: int, length: int = 0) -> bool:
    """True when ``ack_num`` acknowledges a SYN/FIN sent at ``seq``.

    SYN and FIN each consume one sequence number on top of any payload.
    """
    return (ack_num & SEQ_MASK) == seq_add(seq, length + 1)


__all__ = [
    "SEQ_MODULUS",
    "SEQ_MASK",
    "seq_add",
    "seq_diff",
    "seq_lt",
    "acknowledges",
]
