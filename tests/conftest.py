"""Shared fixtures: small hand-drawn buffers and palettes."""
from __future__ import annotations

import numpy as np
import pytest

from palettes import GB_4, NES_13, PaletteRegistry
from pixels import PixelBuffer, argb


def draw_square(buf: PixelBuffer, x0: int, y0: int, x1: int, y1: int, color: int) -> PixelBuffer:
    for y in range(y0, y1):
        for x in range(x0, x1):
            buf.set(x, y, color)
    return buf


@pytest.fixture
def gb4():
    return GB_4


@pytest.fixture
def nes13():
    return NES_13


@pytest.fixture
def registry():
    return PaletteRegistry()


@pytest.fixture
def square_buffer():
    """16x16 transparent buffer with an opaque red 8x8 square in the middle."""
    return draw_square(PixelBuffer(16, 16), 4, 4, 12, 12, argb(255, 255, 0, 0))


@pytest.fixture
def noisy_buffer():
    """24x24 buffer of random colours with a mix of alpha 0, partial and full."""
    rng = np.random.default_rng(1234)
    buf = PixelBuffer(24, 24)
    rgb = rng.integers(0, 256, size=(buf.data.size, 3))
    alpha = rng.choice([0, 0, 90, 255, 255], size=buf.data.size)
    buf.data[:] = (
        (alpha.astype(np.uint32) << 24)
        | (rgb[:, 0].astype(np.uint32) << 16)
        | (rgb[:, 1].astype(np.uint32) << 8)
        | rgb[:, 2].astype(np.uint32)
    )
    return buf


def palette_rgb_set(palette):
    return {c & 0xFFFFFF for c in palette.colors}
