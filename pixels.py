"""
pixels.py — fixed-size packed ARGB raster.

Pixels are 0xAARRGGBB in a flat uint32 array (index = y * width + x).
Out-of-range coordinates are silent: reads give 0 (transparent), writes
are dropped, because geometric drawing code routinely overshoots edges.
"""
from __future__ import annotations

import math
from typing import Tuple

import numpy as np
from PIL import Image

__all__ = ["PixelBuffer", "argb", "pack", "unpack"]


def argb(a: int, r: int, g: int, b: int) -> int:
    return ((a & 255) << 24) | ((r & 255) << 16) | ((g & 255) << 8) | (b & 255)


def unpack(data: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Split packed pixels into (a, r, g, b) int32 channel arrays."""
    d = np.asarray(data, dtype=np.uint32)
    a = ((d >> 24) & 0xFF).astype(np.int32)
    r = ((d >> 16) & 0xFF).astype(np.int32)
    g = ((d >> 8) & 0xFF).astype(np.int32)
    b = (d & 0xFF).astype(np.int32)
    return a, r, g, b


def pack(a, r, g, b) -> np.ndarray:
    a = np.asarray(a).astype(np.uint32) & 0xFF
    r = np.asarray(r).astype(np.uint32) & 0xFF
    g = np.asarray(g).astype(np.uint32) & 0xFF
    b = np.asarray(b).astype(np.uint32) & 0xFF
    return (a << 24) | (r << 16) | (g << 8) | b


class PixelBuffer:
    def __init__(self, width: int, height: int) -> None:
        width, height = int(width), int(height)
        if width < 0 or height < 0:
            raise ValueError(f"PixelBuffer size must be non-negative, got {width}x{height}")
        self.width = width
        self.height = height
        self.data = np.zeros(width * height, dtype=np.uint32)

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def _inside(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def grid(self) -> np.ndarray:
        """(height, width) view sharing memory with `data`."""
        return self.data.reshape(self.height, self.width)

    def clear(self, color: int = 0) -> None:
        self.data.fill(int(color) & 0xFFFFFFFF)

    def set(self, x: int, y: int, color: int) -> None:
        x, y = math.floor(x), math.floor(y)
        if self._inside(x, y):
            self.data[y * self.width + x] = int(color) & 0xFFFFFFFF

    def get(self, x: int, y: int) -> int:
        x, y = math.floor(x), math.floor(y)
        if self._inside(x, y):
            return int(self.data[y * self.width + x])
        return 0

    def blit(self, src: "PixelBuffer", dx: int, dy: int) -> None:
        """Copy the non-transparent pixels of `src` to (dx, dy), clipped to this buffer."""
        dx, dy = int(dx), int(dy)
        x0, y0 = max(0, dx), max(0, dy)
        x1, y1 = min(self.width, dx + src.width), min(self.height, dy + src.height)
        if x0 >= x1 or y0 >= y1:
            return
        s = src.grid()[y0 - dy:y1 - dy, x0 - dx:x1 - dx]
        d = self.grid()[y0:y1, x0:x1]
        mask = (s >> 24) != 0
        d[mask] = s[mask]

    def copy(self) -> "PixelBuffer":
        out = PixelBuffer(self.width, self.height)
        out.data[:] = self.data
        return out

    def to_rgba_bytes(self) -> bytes:
        """Interleaved R, G, B, A bytes, row-major."""
        a, r, g, b = unpack(self.data)
        return np.stack([r, g, b, a], axis=-1).astype(np.uint8).tobytes()

    def to_image(self) -> Image.Image:
        a, r, g, b = unpack(self.data)
        rgba = np.stack([r, g, b, a], axis=-1).astype(np.uint8).reshape(self.height, self.width, 4)
        return Image.fromarray(rgba)

    @classmethod
    def from_image(cls, img: Image.Image) -> "PixelBuffer":
        arr = np.asarray(img.convert("RGBA"), dtype=np.uint8)
        h, w, _ = arr.shape
        out = cls(w, h)
        out.data[:] = pack(arr[..., 3], arr[..., 0], arr[..., 1], arr[..., 2]).reshape(-1)
        return out

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return self.size == other.size and bool(np.array_equal(self.data, other.data))

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width}x{self.height})"
