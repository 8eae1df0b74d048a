"""
content.py — the content-generator contract and two reference generators.

A generator receives a GenerationContext and a ParamMap and draws straight
into `ctx.buffer`, pulling randomness only from `ctx.stream` (or streams split
from it) so output is a pure function of the seed. It may adjust the jitter
strength in `tune()`, but it never quantizes, dithers or outlines itself:
that is the retro pipeline's job (see filters.py).

Registered generators
---------------------
• tile     — tileable fbm terrain (grass / rock / sand / metal), optional
             vegetation specks.
• crystal  — Worley-distance blob on a transparent background, fbm shading.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional

import numpy as np

from filters import RetroPolicy
from noise import ValueNoise, worley_distance
from palettes import Palette
from params import ParamMap, choice, flag, number
from pixels import PixelBuffer, argb, pack
from streams import Stream

log = logging.getLogger("pixelforge.content")

__all__ = ["BaseGenerator", "GenerationContext", "GeneratorRegistry", "REGISTRY"]


# =============== Context ===============
@dataclass
class GenerationContext:
    buffer: PixelBuffer
    stream: Stream
    palette: Palette
    retro: RetroPolicy
    time_budget_ms: float = 16.0  # advisory; never enforced by the pipeline


# =============== Base & registry ===============
class BaseGenerator:
    id: ClassVar[str] = "base"
    version: ClassVar[str] = "0.0.0"

    def generate(self, ctx: GenerationContext, params: ParamMap) -> None:  # pragma: no cover
        raise NotImplementedError

    def tune(self, ctx: GenerationContext, params: ParamMap) -> None:
        """Optional hook, run after drawing and before retro enforcement."""

    def archetypes(self) -> List[Dict[str, Any]]:
        return []

    def archetype_params(self, archetype: Optional[str]) -> Dict[str, Any]:
        if not archetype:
            return {}
        for a in self.archetypes():
            if a["id"] == archetype:
                return dict(a["params"])
        log.warning("Unknown archetype %r for generator %s", archetype, self.id)
        return {}

    @staticmethod
    def get_params() -> List[Dict[str, Any]]:
        return []


class GeneratorRegistry:
    def __init__(self) -> None:
        self._by_name: Dict[str, type[BaseGenerator]] = {}

    def register(self, name: str, cls: type[BaseGenerator]) -> None:
        key = name.strip().lower()
        self._by_name[key] = cls

    def names(self) -> list[str]:
        return sorted(self._by_name.keys())

    def create(self, name: str) -> BaseGenerator:
        key = name.strip().lower()
        if key not in self._by_name:
            raise KeyError(f"Unknown generator '{name}'. Available: {', '.join(self.names()) or '(none)'}")
        return self._by_name[key]()


REGISTRY = GeneratorRegistry()


def _rgb_layer(alpha: np.ndarray, r: np.ndarray, g: np.ndarray, b: np.ndarray) -> np.ndarray:
    r, g, b = (np.clip(c, 0, 255).astype(np.int32) for c in (r, g, b))
    return pack(alpha, r, g, b).reshape(-1)


# =============== tile ===============
_MATERIAL_TINT = {
    "grass": (0.75, 1.05, 0.55),
    "rock": (1.0, 0.97, 0.92),
    "sand": (1.15, 1.0, 0.7),
    "metal": (0.8, 0.9, 1.0),
}


class TileGenerator(BaseGenerator):
    """
    Seamless terrain tile.

    Parameters
    ----------
    roughness: Number  = 0.6      # fbm gain, 0.3..1.0
    detail: Number     = 0.6      # octaves and lacunarity, plus fine-noise mix
    material: Choice   = 'grass'  # grass | rock | sand | metal
    vegetation: Flag   = False    # sprinkle small green patches
    """
    id = "tile"
    version = "0.3.0"

    def archetypes(self) -> List[Dict[str, Any]]:
        return [
            {"id": "grass", "label": "Grass", "params": {"roughness": 0.6, "vegetation": True, "material": "grass"}},
            {"id": "rock", "label": "Rock", "params": {"roughness": 0.8, "vegetation": False, "material": "rock"}},
            {"id": "sand", "label": "Sand", "params": {"roughness": 0.4, "vegetation": False, "material": "sand"}},
            {"id": "metal", "label": "Metal", "params": {"roughness": 0.3, "vegetation": False, "material": "metal"}},
        ]

    @staticmethod
    def get_params() -> List[Dict[str, Any]]:
        return [
            {"name": "roughness", "type": float, "default": 0.6, "min": 0.0, "max": 1.0,
             "help": "Persistence of the terrain noise."},
            {"name": "detail", "type": float, "default": 0.6, "min": 0.0, "max": 1.0,
             "help": "Octave count and fine-noise amount."},
            {"name": "material", "type": str, "default": "grass", "options": sorted(_MATERIAL_TINT),
             "help": "Base colour family."},
            {"name": "vegetation", "type": bool, "default": False, "help": "Add vegetation specks."},
        ]

    def generate(self, ctx: GenerationContext, params: ParamMap) -> None:
        buf = ctx.buffer
        w, h = buf.width, buf.height
        if buf.empty:
            return
        roughness = number(params, "roughness", 0.6)
        detail = number(params, "detail", 0.6)
        material = choice(params, "material", "grass")
        tint = _MATERIAL_TINT.get(material, _MATERIAL_TINT["grass"])

        noise = ValueNoise(ctx.stream.split("base"))
        yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)
        # periodic coordinates so opposite edges match
        u = (np.cos(2 * math.pi * xx / w) + 1) / 2
        v = (np.cos(2 * math.pi * yy / h) + 1) / 2

        octaves = 2 + int(detail * 6)
        base = noise.fbm(u * 4, v * 4, octaves, 2.0 + detail * 3.0, 0.3 + roughness * 0.7)
        fine = noise.fbm(u * 8, v * 8, 2, 1.8, 0.6) * (0.1 + detail * 0.5)
        n = base + fine

        value = 90 + n * 120
        opaque = np.full_like(value, 255)
        buf.data[:] = _rgb_layer(opaque, value * tint[0], value * tint[1], value * tint[2])

        if flag(params, "vegetation"):
            self._vegetation(buf, ctx.stream.split("vegetation"))

    @staticmethod
    def _vegetation(buf: PixelBuffer, rng: Stream) -> None:
        w, h = buf.width, buf.height
        for _ in range(3 + rng.next_int(8)):
            vx, vy = rng.next_int(w), rng.next_int(h)
            r = 1 + rng.next_int(2)
            for dy in range(-r, r + 1):
                for dx in range(-r, r + 1):
                    if dx * dx + dy * dy <= r * r and rng.next_float() > 0.4:
                        green = 100 + rng.next_int(60)
                        buf.set((vx + dx) % w, (vy + dy) % h, argb(255, 40, green, 30))

    def tune(self, ctx: GenerationContext, params: ParamMap) -> None:
        if ctx.retro.micro_jitter and choice(params, "material", "grass") == "metal":
            ctx.retro.micro_jitter_strength = min(0.3, ctx.retro.resolve_jitter_strength() * 2.0)


# =============== crystal ===============
class CrystalGenerator(BaseGenerator):
    """
    Faceted blob built from nearest-feature-point distance.

    Parameters
    ----------
    density: Number   = 0.5     # number of feature points (3..9)
    spread: Number    = 0.5     # how far points stray from the centre
    hue: Choice       = 'cyan'  # cyan | rose | amber
    sparkle: Flag     = False   # bright specks; raises jitter strength
    """
    id = "crystal"
    version = "0.1.0"

    HUES = {"cyan": (80, 200, 230), "rose": (220, 90, 140), "amber": (235, 170, 60)}

    def archetypes(self) -> List[Dict[str, Any]]:
        return [
            {"id": "shard", "label": "Shard", "params": {"density": 0.3, "spread": 0.7, "hue": "cyan"}},
            {"id": "geode", "label": "Geode", "params": {"density": 0.8, "spread": 0.3, "hue": "rose", "sparkle": True}},
            {"id": "ember", "label": "Ember", "params": {"density": 0.5, "spread": 0.5, "hue": "amber"}},
        ]

    @staticmethod
    def get_params() -> List[Dict[str, Any]]:
        return [
            {"name": "density", "type": float, "default": 0.5, "min": 0.0, "max": 1.0,
             "help": "Feature point count."},
            {"name": "spread", "type": float, "default": 0.5, "min": 0.0, "max": 1.0,
             "help": "Feature point scatter around the centre."},
            {"name": "hue", "type": str, "default": "cyan", "options": ["amber", "cyan", "rose"],
             "help": "Colour family."},
            {"name": "sparkle", "type": bool, "default": False, "help": "Bright specks."},
        ]

    def generate(self, ctx: GenerationContext, params: ParamMap) -> None:
        buf = ctx.buffer
        w, h = buf.width, buf.height
        if buf.empty:
            return
        density = number(params, "density", 0.5)
        spread = number(params, "spread", 0.5)
        base = self.HUES.get(choice(params, "hue", "cyan"), self.HUES["cyan"])

        pts_rng = ctx.stream.split("points")
        cx, cy = (w - 1) / 2.0, (h - 1) / 2.0
        reach = min(w, h) * (0.1 + 0.3 * spread)
        points = []
        for _ in range(3 + int(density * 6)):
            ang = pts_rng.next_float() * 2 * math.pi
            rad = pts_rng.next_float() * reach
            points.append((cx + math.cos(ang) * rad, cy + math.sin(ang) * rad))

        yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)
        dist = worley_distance(xx, yy, points)
        radius = min(w, h) * 0.22
        inside = dist < radius

        shade = ValueNoise(ctx.stream.split("shade")).fbm(xx * 0.15, yy * 0.15, 3)
        light = 1.0 - (dist / radius) * 0.5 + shade * 0.25
        alpha = np.where(inside, 255, 0)
        layer = PixelBuffer(w, h)
        layer.data[:] = _rgb_layer(alpha, base[0] * light, base[1] * light, base[2] * light)
        layer.data[~inside.reshape(-1)] = 0
        buf.blit(layer, 0, 0)

        if flag(params, "sparkle"):
            spark = ctx.stream.split("sparkle")
            for _ in range(2 + spark.next_int(4)):
                x, y = spark.next_int(w), spark.next_int(h)
                if buf.get(x, y) >> 24:
                    buf.set(x, y, argb(255, 255, 255, 240))

    def tune(self, ctx: GenerationContext, params: ParamMap) -> None:
        if ctx.retro.micro_jitter and flag(params, "sparkle"):
            ctx.retro.micro_jitter_strength = min(0.25, ctx.retro.resolve_jitter_strength() * 1.5)


REGISTRY.register("tile", TileGenerator)
REGISTRY.register("crystal", CrystalGenerator)
