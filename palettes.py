from __future__ import annotations

import array
import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from pixels import PixelBuffer, unpack

log = logging.getLogger("pixelforge.palettes")

__all__ = [
    "Palette",
    "PaletteRegistry",
    "BUILTIN_PALETTES",
    "DEFAULT_PALETTE_ID",
    "nearest_color_index",
    "nearest_indices",
    "parse_hex_color",
    "quantize",
    "sanitize_id",
]


# =============== Palette ===============
@dataclass(frozen=True)
class Palette:
    """Ordered ARGB colours. Target alpha is ignored; only RGB is matched."""
    name: str
    colors: Tuple[int, ...]
    max_colors: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "colors", tuple(int(c) & 0xFFFFFFFF for c in self.colors))

    def __len__(self) -> int:
        return len(self.colors)

    @property
    def rgb(self) -> np.ndarray:
        """(n, 3) int32 array of palette RGB triples."""
        c = np.asarray(self.colors, dtype=np.uint32)
        return np.stack([(c >> 16) & 0xFF, (c >> 8) & 0xFF, c & 0xFF], axis=-1).astype(np.int32)

    def to_record(self) -> Dict[str, Any]:
        return {"name": self.name, "colors": list(self.colors), "maxColors": self.max_colors}


NES_13 = Palette("NES_13", (
    0xff000000, 0xff1d2b53, 0xff7e2553, 0xff008751,
    0xffab5236, 0xff5f574f, 0xffc2c3c7, 0xfffff1e8,
    0xffff004d, 0xffffa300, 0xffffec27, 0xff00e436,
    0xff29adff,
), 13)

GB_4 = Palette("GB_4", (0xff0f380f, 0xff306230, 0xff8bac0f, 0xff9bbc0f), 4)

SNES_32 = Palette("SNES_32", (
    0xff000000, 0xffffffff, 0xffc0c0c0, 0xff808080, 0xff404040,
    0xff1b1b3a, 0xff2d3a69, 0xff3b5dc9, 0xff6b9af5,
    0xff143d2b, 0xff217e4b, 0xff3dbb75, 0xff9bd6b4,
    0xff51220b, 0xff8b4513, 0xffc0723c, 0xffe0b47a,
    0xff3b0d2c, 0xff7a1b45, 0xffc43a5f, 0xfff58aa9,
    0xff3a1f0f, 0xff7a3f1f, 0xffbf7f3f, 0xffffaf6f,
    0xff161616, 0xff2c2c2c, 0xff4a4a4a, 0xff6f6f6f,
    0xff94c11f, 0xffd5e04a, 0xfff1f58f,
), 32)

BUILTIN_PALETTES: Dict[str, Palette] = {p.name: p for p in (NES_13, SNES_32, GB_4)}
DEFAULT_PALETTE_ID = "NES_13"


def parse_hex_color(code: str) -> int:
    """'#rgb' / '#rrggbb' / '0xAARRGGBB' -> opaque packed ARGB. Raises ValueError."""
    s = code.strip()
    if s.lower().startswith("0x"):
        return int(s, 16) & 0xFFFFFFFF
    s = s.lstrip("#")
    if len(s) == 3:
        s = "".join([c * 2 for c in s])
    if len(s) != 6:
        raise ValueError(f"Bad colour {code!r}")
    return 0xFF000000 | int(s, 16)


# =============== Nearest-colour mapping ===============
def nearest_color_index(palette: Palette, color: int) -> int:
    """Index of the closest palette colour by squared RGB distance.

    Exact ties go to the lowest index. Output reproducibility depends on this,
    so do not reorder the scan.
    """
    r, g, b = (color >> 16) & 0xFF, (color >> 8) & 0xFF, color & 0xFF
    best, best_d = 0, None
    for i, c in enumerate(palette.colors):
        dr = r - ((c >> 16) & 0xFF)
        dg = g - ((c >> 8) & 0xFF)
        db = b - (c & 0xFF)
        d = dr * dr + dg * dg + db * db
        if best_d is None or d < best_d:
            best, best_d = i, d
    return best


def _sq_distances(palette: Palette, rgb: np.ndarray) -> np.ndarray:
    diff = rgb[:, None, :].astype(np.int64) - palette.rgb[None, :, :].astype(np.int64)
    return (diff * diff).sum(axis=-1)


def nearest_indices(palette: Palette, rgb: np.ndarray) -> np.ndarray:
    """Vectorised `nearest_color_index` for an (n, 3) array (argmin keeps first-index ties)."""
    if rgb.shape[0] == 0:
        return np.zeros(0, dtype=np.int64)
    return np.argmin(_sq_distances(palette, rgb), axis=1)


def quantize(palette: Palette, buffer: PixelBuffer) -> None:
    """Snap every non-transparent pixel to its nearest palette RGB, keeping its alpha."""
    if buffer.empty or len(palette) == 0:
        return
    a, r, g, b = unpack(buffer.data)
    idx = np.nonzero(a > 0)[0]
    if idx.size == 0:
        return
    nearest = nearest_indices(palette, np.stack([r[idx], g[idx], b[idx]], axis=-1))
    targets = np.asarray(palette.colors, dtype=np.uint32)[nearest] & np.uint32(0x00FFFFFF)
    buffer.data[idx] = (a[idx].astype(np.uint32) << 24) | targets


# =============== Registry ===============
_ID_RE = re.compile(r"[^a-zA-Z0-9_]")


def sanitize_id(name: str) -> str:
    return _ID_RE.sub("_", name)


def _coerce_colors(raw: Any) -> Optional[List[int]]:
    """Accept a plain list, a fixed-width numeric array, or a {"0": c, "1": c} object."""
    if isinstance(raw, (list, tuple)):
        values: Iterable[Any] = raw
    elif isinstance(raw, np.ndarray):
        if raw.ndim != 1 or not np.issubdtype(raw.dtype, np.integer):
            return None
        values = raw.tolist()
    elif isinstance(raw, array.array):
        if raw.typecode in ("f", "d", "u"):
            return None
        values = raw.tolist()
    elif isinstance(raw, Mapping):
        keys = []
        for k in raw.keys():
            try:
                keys.append((int(k), k))
            except (TypeError, ValueError):
                continue
        values = [raw[k] for _, k in sorted(keys)]
    else:
        return None

    out: List[int] = []
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, np.integer)):
            return None
        out.append(int(v) & 0xFFFFFFFF)
    return out


def _palette_from_record(record: Any) -> Optional[Palette]:
    if not isinstance(record, Mapping):
        return None
    name = record.get("name")
    max_colors = record.get("maxColors")
    if not isinstance(name, str) or not name:
        return None
    if isinstance(max_colors, bool) or not isinstance(max_colors, (int, float)) or max_colors <= 0:
        return None
    colors = _coerce_colors(record.get("colors"))
    if not colors:
        return None
    return Palette(name, tuple(colors), max(1, int(max_colors)))


class PaletteRegistry:
    """Built-in plus user palettes, looked up by sanitized id.

    One registry is owned by the Engine and passed to whatever needs custom
    palette lookup. All methods are safe to call from several threads.
    """

    def __init__(self, builtins: Optional[Mapping[str, Palette]] = None) -> None:
        self._builtins: Dict[str, Palette] = dict(BUILTIN_PALETTES if builtins is None else builtins)
        self._custom: Dict[str, Palette] = {}
        self._lock = threading.RLock()

    def names(self) -> List[str]:
        with self._lock:
            return list(self._builtins) + [k for k in self._custom if k not in self._builtins]

    def all(self) -> Dict[str, Palette]:
        with self._lock:
            out = dict(self._builtins)
            for k, p in self._custom.items():
                out.setdefault(k, p)
            return out

    def custom(self) -> Dict[str, Palette]:
        with self._lock:
            return dict(self._custom)

    def __contains__(self, palette_id: str) -> bool:
        with self._lock:
            return palette_id in self._builtins or palette_id in self._custom

    def get(self, palette_id: Optional[str]) -> Palette:
        """Resolve an id; unknown ids fall back to the default palette."""
        with self._lock:
            if palette_id in self._builtins:
                return self._builtins[palette_id]
            if palette_id in self._custom:
                return self._custom[palette_id]
            log.warning("Unknown palette %r, falling back to %s", palette_id, DEFAULT_PALETTE_ID)
            return self._builtins.get(DEFAULT_PALETTE_ID, NES_13)

    def add(self, palette: Palette) -> str:
        pid = sanitize_id(palette.name)
        with self._lock:
            if pid in self._builtins:
                raise ValueError(f"Palette id {pid!r} is reserved by a built-in palette")
            self._custom[pid] = palette
        log.info("Registered palette %s (%d colours)", pid, len(palette))
        return pid

    def remove(self, palette_id: str) -> bool:
        with self._lock:
            return self._custom.pop(palette_id, None) is not None

    # ---- serialization ----
    def export_mapping(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {pid: p.to_record() for pid, p in self._custom.items()}

    def export_json(self, indent: int = 2) -> str:
        return json.dumps(self.export_mapping(), indent=indent)

    def import_mapping(self, data: Any) -> bool:
        """Register every valid record; skip malformed ones. True if any was accepted."""
        if not isinstance(data, Mapping):
            log.error("Palette import expects an object keyed by palette id, got %s", type(data).__name__)
            return False
        accepted = 0
        for raw_id, record in data.items():
            pid = sanitize_id(str(raw_id))
            palette = _palette_from_record(record)
            if palette is None:
                log.warning("Skipping malformed palette record %r", raw_id)
                continue
            with self._lock:
                if pid in self._builtins:
                    log.warning("Skipping palette %r: id shadows a built-in palette", raw_id)
                    continue
                self._custom[pid] = palette
            accepted += 1
        log.info("Imported %d of %d palette record(s)", accepted, len(data))
        return accepted > 0

    def import_json(self, text: str) -> bool:
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            log.error("Error importing palettes: %s", e)
            return False
        return self.import_mapping(data)
