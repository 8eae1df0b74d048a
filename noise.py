"""
noise.py — lattice noise, fractal sums and Worley distance for content generators.

Both `noise2d` and `fbm` broadcast over numpy arrays, so a generator can shade
a whole sprite in one call:

    yy, xx = np.mgrid[0:size, 0:size]
    field = ValueNoise(ctx.stream.split("terrain")).fbm(xx * 0.05, yy * 0.05, octaves=5)
"""
from __future__ import annotations

from typing import Sequence, Tuple, Union

import numpy as np

from streams import Stream

__all__ = ["ValueNoise", "worley_distance"]

ArrayLike = Union[float, np.ndarray]

_AMPLITUDE = 0.7071


def _fade(t: np.ndarray) -> np.ndarray:
    return t * t * (3.0 - 2.0 * t)


def _grad(h: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    h = h & 3
    return np.where(h == 0, x + y, np.where(h == 1, x - y, np.where(h == 2, -x + y, -x - y)))


def _scalar_or_array(v: np.ndarray) -> ArrayLike:
    return float(v) if v.ndim == 0 else v


class ValueNoise:
    """Gradient lattice noise whose permutation is shuffled by a Stream.

    The stream is consumed exactly once, in the constructor (255 draws).
    After that every query is a pure function of (x, y).
    """

    def __init__(self, stream: Stream) -> None:
        perm = list(range(256))
        for i in range(255, 0, -1):
            j = stream.next_int(i + 1)
            perm[i], perm[j] = perm[j], perm[i]
        self.perm = np.array(perm + perm, dtype=np.int64)

    def noise2d(self, x: ArrayLike, y: ArrayLike) -> ArrayLike:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        fx = np.floor(x)
        fy = np.floor(y)
        X = fx.astype(np.int64) & 255
        Y = fy.astype(np.int64) & 255
        x = x - fx
        y = y - fy
        u = _fade(x)
        v = _fade(y)

        p = self.perm
        aa = p[p[X] + Y]
        ab = p[p[X] + Y + 1]
        ba = p[p[X + 1] + Y]
        bb = p[p[X + 1] + Y + 1]

        n0 = _grad(aa, x, y)
        n1 = _grad(ba, x - 1.0, y)
        n2 = _grad(ab, x, y - 1.0)
        n3 = _grad(bb, x - 1.0, y - 1.0)
        nx0 = n0 + (n1 - n0) * u
        nx1 = n2 + (n3 - n2) * u
        return _scalar_or_array((nx0 + (nx1 - nx0) * v) * _AMPLITUDE)

    def fbm(
        self,
        x: ArrayLike,
        y: ArrayLike,
        octaves: int = 4,
        lacunarity: float = 2.0,
        gain: float = 0.5,
    ) -> ArrayLike:
        """Fractal sum of `noise2d`, divided by the total amplitude weight."""
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        octaves = max(1, int(octaves))
        amp, freq = 1.0, 1.0
        total = np.zeros(np.broadcast(x, y).shape, dtype=np.float64)
        norm = 0.0
        for _ in range(octaves):
            total = total + amp * np.asarray(self.noise2d(x * freq, y * freq))
            norm += amp
            amp *= gain
            freq *= lacunarity
        return _scalar_or_array(total / norm)


def worley_distance(x: ArrayLike, y: ArrayLike, points: Sequence[Tuple[float, float]]) -> ArrayLike:
    """Distance from (x, y) to the nearest feature point.

    With no points every distance is `inf` rather than a large finite
    sentinel, so any `dist < radius` test is false everywhere.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    best = np.full(np.broadcast(x, y).shape, np.inf, dtype=np.float64)
    for px, py in points:
        dx = x - px
        dy = y - py
        best = np.minimum(best, dx * dx + dy * dy)
    return _scalar_or_array(np.sqrt(best))
