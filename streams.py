"""
streams.py — seed-reproducible random streams with labelled sub-streams.

Every feature of a sprite draws from its own child stream (`split("clouds")`,
`split("attempt_2")`, ...) so adding a draw in one feature never shifts the
sequence another feature sees.
"""
from __future__ import annotations

_MASK = 0xFFFFFFFF
_GOLDEN = 0x9E3779B9
_STEP = 0x6D2B79F5


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK


def fnv1a32(text: str) -> int:
    """FNV-1a over UTF-16 code units; the stable hash used for split labels."""
    h = 2166136261
    raw = text.encode("utf-16-le")
    for i in range(0, len(raw), 2):
        h ^= raw[i] | (raw[i + 1] << 8)
        h = _imul(h, 16777619)
    return h


class Stream:
    """Mulberry32 generator over a single 32-bit state word."""

    __slots__ = ("_state",)

    def __init__(self, seed: int) -> None:
        self._state = int(seed) & _MASK

    @property
    def state(self) -> int:
        return self._state

    def _next_u32(self) -> int:
        self._state = (self._state + _STEP) & _MASK
        x = self._state
        x = _imul(x ^ (x >> 15), 1 | x)
        x ^= (x + _imul(x ^ (x >> 7), 61 | x)) & _MASK
        return (x ^ (x >> 14)) & _MASK

    def next_float(self) -> float:
        return self._next_u32() / 4294967296.0

    def next_int(self, n: int) -> int:
        """Uniform integer in [0, n). Raises ValueError for n < 1."""
        n = int(n)
        if n < 1:
            raise ValueError(f"next_int bound must be >= 1, got {n}")
        return int(self.next_float() * n)

    def split(self, label: str = "") -> "Stream":
        # Derived from the current state only; the parent does not advance.
        salt = fnv1a32(label) if label else 0
        return Stream(((self._state ^ _GOLDEN) + salt) & _MASK)

    def __repr__(self) -> str:
        return f"Stream(state=0x{self._state:08x})"
