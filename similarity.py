"""
similarity.py — near-duplicate detection across a batch of sprites.

A signature is two small histograms: where the edges point (8 Sobel angle
bins) and which exact colours dominate (top 32 by pixel count). A new sprite
is "too similar" when both histograms are cosine-close to the *same* recent
sprite. The orchestrator then nudges numeric parameters and retries.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from params import Choice, Flag, Number, ParamMap
from pixels import PixelBuffer, unpack
from streams import Stream

log = logging.getLogger("pixelforge.similarity")

__all__ = [
    "GuardConfig",
    "SimilarityGuard",
    "SpriteSignature",
    "color_histogram",
    "cosine_similarity",
    "edge_histogram",
]

EDGE_BINS = 8
COLOR_BINS = 32
EDGE_MAGNITUDE_THRESHOLD = 30.0
NUDGE_SPAN = 0.2  # total width, so +/-0.1 on the unit range

_SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
_SOBEL_Y = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float64)


@dataclass(frozen=True)
class SpriteSignature:
    edge_histogram: Tuple[float, ...]
    color_histogram: Tuple[float, ...]
    params: ParamMap = field(default_factory=dict, compare=False)
    timestamp: float = field(default=0.0, compare=False)


@dataclass
class GuardConfig:
    max_history: int = 50
    edge_threshold: float = 0.85
    color_threshold: float = 0.9
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.max_history < 1:
            raise ValueError("max_history must be >= 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")


def _luma(buffer: PixelBuffer) -> np.ndarray:
    """Integer luma of opaque pixels, 0 where transparent, shaped (h, w)."""
    a, r, g, b = unpack(buffer.data)
    y = np.floor(0.299 * r + 0.587 * g + 0.114 * b)
    y[a == 0] = 0.0
    return y.reshape(buffer.height, buffer.width)


def edge_histogram(buffer: PixelBuffer) -> Tuple[float, ...]:
    """8-bin Sobel orientation histogram over interior pixels, normalized to sum 1."""
    w, h = buffer.width, buffer.height
    hist = np.zeros(EDGE_BINS, dtype=np.float64)
    if w < 3 or h < 3:
        return tuple(hist.tolist())

    lum = _luma(buffer)
    gx = np.zeros((h - 2, w - 2), dtype=np.float64)
    gy = np.zeros_like(gx)
    for ky in range(3):
        for kx in range(3):
            win = lum[ky:ky + h - 2, kx:kx + w - 2]
            gx += win * _SOBEL_X[ky, kx]
            gy += win * _SOBEL_Y[ky, kx]

    mag = np.sqrt(gx * gx + gy * gy)
    voting = mag > EDGE_MAGNITUDE_THRESHOLD
    if voting.any():
        angle = np.arctan2(gy[voting], gx[voting])
        bins = np.floor((angle + math.pi) / (2 * math.pi) * EDGE_BINS).astype(np.int64) % EDGE_BINS
        hist += np.bincount(bins, minlength=EDGE_BINS)
    total = hist.sum()
    if total > 0:
        hist /= total
    return tuple(hist.tolist())


def color_histogram(buffer: PixelBuffer) -> Tuple[float, ...]:
    """Share of opaque pixels held by each of the 32 most used exact RGB values.

    Ties in count keep first-seen (row-major) order.
    """
    hist = np.zeros(COLOR_BINS, dtype=np.float64)
    alpha = buffer.data >> 24
    rgb = buffer.data[alpha != 0] & np.uint32(0x00FFFFFF)
    if rgb.size == 0:
        return tuple(hist.tolist())
    values, first, counts = np.unique(rgb, return_index=True, return_counts=True)
    order = np.lexsort((first, -counts))[:COLOR_BINS]
    hist[:order.size] = counts[order] / float(rgb.size)
    return tuple(hist.tolist())


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two histograms; 0.0 if either has zero norm."""
    n = min(len(a), len(b))
    va = np.asarray(a[:n], dtype=np.float64)
    vb = np.asarray(b[:n], dtype=np.float64)
    na = float(np.dot(va, va))
    nb = float(np.dot(vb, vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb)) / (math.sqrt(na) * math.sqrt(nb))


class SimilarityGuard:
    """Sliding window of recent signatures plus the nudge step for retries."""

    def __init__(self, config: GuardConfig | None = None) -> None:
        self.config = config or GuardConfig()
        self._history: deque = deque(maxlen=self.config.max_history)
        self._lock = threading.Lock()

    @property
    def history(self) -> List[SpriteSignature]:
        with self._lock:
            return list(self._history)

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)

    def signature(self, buffer: PixelBuffer, params: ParamMap | None = None) -> SpriteSignature:
        return SpriteSignature(
            edge_histogram=edge_histogram(buffer),
            color_histogram=color_histogram(buffer),
            params=dict(params or {}),
            timestamp=time.time(),
        )

    def is_similar(self, sig: SpriteSignature) -> bool:
        cfg = self.config
        for i, past in enumerate(self.history):
            edge_sim = cosine_similarity(sig.edge_histogram, past.edge_histogram)
            if edge_sim <= cfg.edge_threshold:
                continue
            color_sim = cosine_similarity(sig.color_histogram, past.color_histogram)
            if color_sim > cfg.color_threshold:
                log.debug("Similar to history[%d]: edge=%.3f color=%.3f", i, edge_sim, color_sim)
                return True
        return False

    def add_to_history(self, sig: SpriteSignature) -> None:
        # deque(maxlen) drops the oldest entry once full
        with self._lock:
            self._history.append(sig)

    def reset(self) -> None:
        with self._lock:
            self._history.clear()

    def suggest_param_nudges(self, params: ParamMap, stream: Stream) -> ParamMap:
        """Random-walk every Number by up to +/-0.1, clamped to [0, 1].

        Flags and Choices are copied unchanged. One draw per Number, in key order.
        """
        out: ParamMap = {}
        for key, value in params.items():
            if isinstance(value, Number):
                out[key] = value.nudged((stream.next_float() - 0.5) * NUDGE_SPAN)
            elif isinstance(value, (Flag, Choice)):
                out[key] = value
            else:
                raise TypeError(f"Parameter {key!r} is not a ParamValue: {value!r}")
        return out
