"""
presets.py — versioned JSON record for a reproducible sprite request.

The engine never reads presets directly; `Preset.to_request()` decomposes a
record into the fields a GenerationRequest needs.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from engine import GenerationRequest
from filters import DitherMode, QuantizerMode
from palettes import DEFAULT_PALETTE_ID
from params import coerce_params, plain_params

log = logging.getLogger("pixelforge.presets")

__all__ = ["PRESET_VERSION", "Preset"]

PRESET_VERSION = 1


def _enum_value(enum_cls, raw: Any, default):
    try:
        return enum_cls(str(raw).lower())
    except ValueError:
        log.warning("Preset: unknown %s %r, using %s", enum_cls.__name__, raw, default.value)
        return default


def _int(raw: Any, default: int, name: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        log.warning("Preset: %s=%r is not an integer, using %d", name, raw, default)
        return default


@dataclass
class Preset:
    version: int = PRESET_VERSION
    sprite_type: str = "tile"
    archetype: Optional[str] = None
    seed: int = 0
    size: int = 32
    palette: str = DEFAULT_PALETTE_ID
    dither: DitherMode = DitherMode.NONE
    quantizer: QuantizerMode = QuantizerMode.NEAREST
    outline: int = 0
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "spriteType": self.sprite_type,
            "archetype": self.archetype,
            "seed": self.seed,
            "size": self.size,
            "palette": self.palette,
            "dither": DitherMode(self.dither).value,
            "quantizer": QuantizerMode(self.quantizer).value,
            "outline": self.outline,
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Preset":
        if not isinstance(data, dict):
            data = {}
        version = _int(data.get("version", PRESET_VERSION), PRESET_VERSION, "version")
        if version > PRESET_VERSION:
            log.warning("Preset version %d is newer than supported %d; reading known fields only",
                        version, PRESET_VERSION)
        outline = _int(data.get("outline", 0), 0, "outline")
        if outline not in (0, 1, 2):
            log.warning("Preset: outline=%d out of range, using 0", outline)
            outline = 0
        params = data.get("params", {})
        return cls(
            version=version,
            sprite_type=str(data.get("spriteType", "tile")),
            archetype=data.get("archetype"),
            seed=_int(data.get("seed", 0), 0, "seed"),
            size=max(0, _int(data.get("size", 32), 32, "size")),
            palette=str(data.get("palette", DEFAULT_PALETTE_ID)),
            dither=_enum_value(DitherMode, data.get("dither", "none"), DitherMode.NONE),
            quantizer=_enum_value(QuantizerMode, data.get("quantizer", "nearest"), QuantizerMode.NEAREST),
            outline=outline,
            params=dict(params) if isinstance(params, dict) else {},
        )

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> "Preset":
        return cls.from_dict(json.loads(json_str))

    def to_request(self, **overrides: Any) -> GenerationRequest:
        fields = dict(
            generator=self.sprite_type,
            archetype=self.archetype,
            seed=self.seed,
            size=self.size,
            palette=self.palette,
            dither=self.dither,
            quantizer=self.quantizer,
            outline=self.outline,
            params=plain_params(coerce_params(self.params)),
        )
        fields.update(overrides)
        return GenerationRequest(**fields)

    @classmethod
    def from_request(cls, request: GenerationRequest) -> "Preset":
        return cls(
            sprite_type=request.generator,
            archetype=request.archetype,
            seed=request.seed,
            size=request.size,
            palette=request.palette,
            dither=request.dither,
            quantizer=request.quantizer,
            outline=request.outline,
            params=plain_params(coerce_params(request.params)),
        )
