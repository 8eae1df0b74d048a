# filters.py — retro enforcement post-process
# -----------------------------------------------------------------------------
# Runs after a content generator has drawn into the context buffer and turns
# the raw output into console-style art, always in this order:
#
#   micro-jitter -> palette quantization -> ordered (Bayer) dither -> outline
#
# Each stage is toggled by the context's RetroPolicy / dither / quantizer
# fields. Every stage keeps alpha untouched except the outline, which only
# paints pixels that were fully transparent.
#
# Example:
#   policy = RetroPolicy(outline_width=1, dither=DitherMode.BAYER4)
#   ctx = GenerationContext(buffer, Stream(7), palette, policy)
#   enforce_retro(ctx)
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Optional

import numpy as np

from palettes import Palette, _sq_distances, nearest_indices, quantize
from pixels import PixelBuffer, argb, pack, unpack
from streams import Stream

log = logging.getLogger("pixelforge.filters")

__all__ = [
    "BAYER4",
    "BAYER8",
    "DitherMode",
    "QuantizerMode",
    "RetroPolicy",
    "apply_bayer",
    "apply_micro_jitter",
    "apply_outline",
    "enforce_retro",
]

DEFAULT_JITTER_STRENGTH = 0.15
MAX_JITTER_STRENGTH = 0.5
DITHER_STRENGTH = 28.0  # on the 0..255 channel scale
OUTLINE_COLOR = argb(255, 20, 20, 20)

BAYER4 = np.array([
    [0, 8, 2, 10],
    [12, 4, 14, 6],
    [3, 11, 1, 9],
    [15, 7, 13, 5],
], dtype=np.float64)

BAYER8 = np.array([
    [0, 32, 8, 40, 2, 34, 10, 42],
    [48, 16, 56, 24, 50, 18, 58, 26],
    [12, 44, 4, 36, 14, 46, 6, 38],
    [60, 28, 52, 20, 62, 30, 54, 22],
    [3, 35, 11, 43, 1, 33, 9, 41],
    [51, 19, 59, 27, 49, 17, 57, 25],
    [15, 47, 7, 39, 13, 45, 5, 37],
    [63, 31, 55, 23, 61, 29, 53, 21],
], dtype=np.float64)


class DitherMode(str, Enum):
    NONE = "none"
    BAYER4 = "bayer4"
    BAYER8 = "bayer8"

    @property
    def matrix_size(self) -> int:
        return {"bayer4": 4, "bayer8": 8}.get(self.value, 0)


class QuantizerMode(str, Enum):
    NONE = "none"
    NEAREST = "nearest"


@dataclass
class RetroPolicy:
    """Post-process switches for one generation.

    `micro_jitter_strength` stays None until someone sets it; read it through
    `resolve_jitter_strength()` rather than coalescing at call sites.
    """
    outline_width: int = 0              # 0, 1 or 2 (2 is drawn as 1px)
    micro_jitter: bool = False
    micro_jitter_strength: Optional[float] = None
    dither: DitherMode = DitherMode.NONE
    quantizer: QuantizerMode = QuantizerMode.NEAREST

    def __post_init__(self) -> None:
        self.dither = DitherMode(self.dither)
        self.quantizer = QuantizerMode(self.quantizer)
        if self.outline_width not in (0, 1, 2):
            raise ValueError(f"outline_width must be 0, 1 or 2, got {self.outline_width}")

    def resolve_jitter_strength(self) -> float:
        s = DEFAULT_JITTER_STRENGTH if self.micro_jitter_strength is None else float(self.micro_jitter_strength)
        return float(np.clip(s, 0.0, MAX_JITTER_STRENGTH))


# ============================ stages ============================

def apply_micro_jitter(buffer: PixelBuffer, palette: Palette, stream: Stream, strength: float = DEFAULT_JITTER_STRENGTH) -> None:
    """Pull each opaque pixel from its nearest palette colour toward the runner-up.

    One float is drawn per opaque pixel, in row-major order, and mapped to a
    fraction in [-strength/2, strength/2]. Negative fractions push away from
    the runner-up; results are clamped to 0..255.
    """
    if buffer.empty or len(palette) == 0:
        return
    a, r, g, b = unpack(buffer.data)
    idx = np.nonzero(a > 0)[0]
    if idx.size == 0:
        return

    rgb = np.stack([r[idx], g[idx], b[idx]], axis=-1)
    dist = _sq_distances(palette, rgb)
    first = np.argmin(dist, axis=1)
    dist[np.arange(idx.size), first] = np.iinfo(np.int64).max
    second = np.argmin(dist, axis=1)

    jitter = np.array([stream.next_float() for _ in range(idx.size)], dtype=np.float64)
    jitter = (jitter - 0.5) * strength

    prgb = palette.rgb.astype(np.float64)
    near = prgb[first]
    out = near + (prgb[second] - near) * jitter[:, None]
    out = np.trunc(np.clip(out, 0.0, 255.0)).astype(np.int32)
    buffer.data[idx] = pack(a[idx], out[:, 0], out[:, 1], out[:, 2])


def apply_bayer(buffer: PixelBuffer, palette: Palette, size: int) -> None:
    """Ordered dither: add a matrix offset to each opaque pixel, then requantize."""
    if buffer.empty or len(palette) == 0:
        return
    if size not in (4, 8):
        raise ValueError(f"Bayer matrix size must be 4 or 8, got {size}")
    m = BAYER4 if size == 4 else BAYER8
    levels = size * size

    w, h = buffer.width, buffer.height
    yy, xx = np.mgrid[0:h, 0:w]
    offset = (m[yy % size, xx % size] / (levels - 1) - 0.5).reshape(-1) * DITHER_STRENGTH

    a, r, g, b = unpack(buffer.data)
    idx = np.nonzero(a > 0)[0]
    if idx.size == 0:
        return
    rgb = np.stack([r[idx], g[idx], b[idx]], axis=-1).astype(np.float64)
    shifted = np.clip(np.trunc(rgb + offset[idx, None]), 0, 255).astype(np.int32)
    nearest = nearest_indices(palette, shifted)
    targets = np.asarray(palette.colors, dtype=np.uint32)[nearest] & np.uint32(0x00FFFFFF)
    buffer.data[idx] = (a[idx].astype(np.uint32) << 24) | targets


def apply_outline(buffer: PixelBuffer, color: int = OUTLINE_COLOR) -> None:
    """Paint transparent pixels that touch an opaque pixel (4-neighbourhood, no diagonals).

    Solidity is read from a snapshot taken before any writes, so new outline
    pixels never grow further outline.
    """
    if buffer.empty:
        return
    solid = (buffer.grid() >> 24) != 0
    padded = np.pad(solid, 1, mode="constant", constant_values=False)
    touches = padded[:-2, 1:-1] | padded[2:, 1:-1] | padded[1:-1, :-2] | padded[1:-1, 2:]
    target = touches & ~solid
    buffer.grid()[target] = np.uint32(int(color) & 0xFFFFFFFF)


# ============================ pipeline ============================

def enforce_retro(ctx) -> None:
    """Run the enabled stages on `ctx.buffer` in their fixed order."""
    buffer: PixelBuffer = ctx.buffer
    policy: RetroPolicy = ctx.retro
    if buffer.empty:
        log.debug("Retro enforcement skipped for empty buffer %s", buffer)
        return

    t0 = perf_counter()
    if policy.micro_jitter:
        strength = policy.resolve_jitter_strength()
        apply_micro_jitter(buffer, ctx.palette, ctx.stream.split("microJitter"), strength)
        log.debug("micro-jitter strength=%.3f", strength)

    if policy.quantizer is QuantizerMode.NEAREST:
        quantize(ctx.palette, buffer)

    if policy.dither is not DitherMode.NONE:
        apply_bayer(buffer, ctx.palette, policy.dither.matrix_size)

    if policy.outline_width > 0:
        if policy.outline_width > 1:
            log.debug("outline_width=%d drawn as 1px", policy.outline_width)
        apply_outline(buffer)

    log.debug("Retro enforcement on %s took %.2f ms", buffer, (perf_counter() - t0) * 1000)
