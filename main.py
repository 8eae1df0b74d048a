from __future__ import annotations

import argparse
import dataclasses
import hashlib
import json
import logging
import mimetypes
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests
from PIL import Image

# Registration of the built-in generators happens at import time
from content import REGISTRY
from engine import Engine, GenerationRequest
from filters import DitherMode, QuantizerMode
from palettes import DEFAULT_PALETTE_ID, Palette, PaletteRegistry, parse_hex_color
from presets import Preset
from similarity import GuardConfig, SimilarityGuard

# =============== Logging ===============
log = logging.getLogger("pixelforge")


def setup_logging(verbosity: int = 0) -> None:
    level = [logging.WARNING, logging.INFO, logging.DEBUG][min(verbosity, 2)]
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


# =============== Fetching palette / preset files ===============
class FileFetcher:
    """Fetch bytes from http(s) / file:// / local path with a tiny, safe cache."""

    def __init__(self, cache_dir: Optional[Path] = None, timeout: float = 20.0) -> None:
        self.timeout = timeout
        self.cache_dir = cache_dir or Path(tempfile.gettempdir()) / "pixelforge_cache"
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "pixelforge/1.0 (+https://local)"})

    def fetch(self, src: str) -> Tuple[bytes, Optional[str]]:
        parsed = urlparse(src)
        scheme = (parsed.scheme or "").lower()
        if scheme in ("http", "https"):
            return self._fetch_http_cached(src)
        if scheme == "file":
            local_path = unquote(parsed.path)
            if os.name == "nt" and local_path.startswith("/"):
                local_path = local_path[1:]
            return self._fetch_local(local_path)
        if scheme == "" or (os.name == "nt" and len(scheme) == 1):
            return self._fetch_local(src)
        raise ValueError(f"Unsupported URL scheme: {scheme}")

    def fetch_text(self, src: str) -> str:
        raw, _ = self.fetch(src)
        return raw.decode("utf-8")

    def _cache_key(self, url: str) -> Path:
        h = hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]
        return self.cache_dir / f"{h}.bin"

    def _fetch_http_cached(self, url: str) -> Tuple[bytes, Optional[str]]:
        key = self._cache_key(url)
        if key.exists():
            try:
                raw = key.read_bytes()
                log.info("Cache hit: %s", key.name)
                return raw, mimetypes.guess_type(url)[0]
            except OSError as e:
                log.debug("Cache read failed for %s: %s", key.name, e)
        log.info("Fetching: %s", url)
        r = self._session.get(url, timeout=self.timeout)
        r.raise_for_status()
        raw = r.content
        try:
            key.write_bytes(raw)
        except OSError as e:
            log.debug("Cache write failed for %s: %s", key.name, e)
        return raw, r.headers.get("Content-Type")

    def _fetch_local(self, path_str: str) -> Tuple[bytes, Optional[str]]:
        p = Path(path_str)
        if not p.exists() or not p.is_file():
            raise FileNotFoundError(f"Input file not found: {p}")
        return p.read_bytes(), mimetypes.guess_type(p.name)[0]


# =============== Small CLI helpers ===============
def _parse_kv_pairs(pairs: Optional[List[str]]) -> Dict[str, str]:
    # values stay strings; params.coerce_params types them
    out: Dict[str, str] = {}
    if not pairs:
        return out
    for p in pairs:
        if "=" in p:
            k, v = p.split("=", 1)
            out[k.strip()] = v.strip()
        else:
            log.warning("Ignoring extra %r (expected key=value)", p)
    return out


def _infer_format_from_path(p: Path) -> str:
    ext = p.suffix.lower()
    if ext == ".webp":
        return "WEBP"
    if ext == ".gif":
        return "GIF"
    return "PNG"


def _load_palettes(registry: PaletteRegistry, sources: Optional[List[str]], fetcher: Optional[FileFetcher] = None) -> bool:
    """Import every palette file in `sources`. True if all of them contributed."""
    ok = True
    for src in sources or []:
        fetcher = fetcher or FileFetcher()
        if not registry.import_json(fetcher.fetch_text(src)):
            log.warning("No usable palettes in %s", src)
            ok = False
    return ok


def _save_image(buffer_img: Image.Image, out: Path, scale: int) -> None:
    if scale and scale > 1:
        w, h = buffer_img.size
        buffer_img = buffer_img.resize((w * scale, h * scale), Image.Resampling.NEAREST)
    out.parent.mkdir(parents=True, exist_ok=True)
    buffer_img.save(out, format=_infer_format_from_path(out))


def _jitter_strength(raw: Optional[float]) -> Optional[float]:
    # bare --jitter passes the -1 sentinel: keep the policy default
    if raw is None or raw < 0:
        return None
    return raw


def _request_from_args(args: argparse.Namespace, fetcher: FileFetcher) -> GenerationRequest:
    extras = _parse_kv_pairs(args.extra)
    if args.preset:
        preset = Preset.from_json(fetcher.fetch_text(args.preset))
        overrides: Dict[str, Any] = {}
        if args.seed is not None:
            overrides["seed"] = args.seed
        if extras:
            overrides["params"] = {**preset.params, **extras}
        overrides["micro_jitter"] = args.jitter is not None
        overrides["micro_jitter_strength"] = _jitter_strength(args.jitter)
        return preset.to_request(**overrides)

    if not args.generator:
        raise ValueError("Provide --generator NAME or --preset FILE.")
    return GenerationRequest(
        generator=args.generator,
        archetype=args.archetype,
        seed=args.seed if args.seed is not None else 0,
        size=args.size,
        palette=args.palette,
        dither=args.dither,
        quantizer=args.quantizer,
        outline=args.outline,
        params=extras,
        micro_jitter=args.jitter is not None,
        micro_jitter_strength=_jitter_strength(args.jitter),
    )


# =============== CLI ===============
def _add_generation_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--generator", choices=REGISTRY.names(), help="Content generator.")
    p.add_argument("--archetype", default=None, help="Archetype preset of the generator.")
    p.add_argument("--preset", default=None, help="Preset JSON (path, file:// or http(s) URL).")
    p.add_argument("--seed", type=int, default=None, help="32-bit seed (default 0).")
    p.add_argument("--size", type=int, default=32, help="Sprite width and height in pixels.")
    p.add_argument("--palette", default=DEFAULT_PALETTE_ID, help="Palette id (unknown ids fall back to NES_13).")
    p.add_argument("--palettes", nargs="*", default=None, help="Extra palette JSON files/URLs to import first.")
    p.add_argument("--dither", choices=[m.value for m in DitherMode], default="none")
    p.add_argument("--quantizer", choices=[m.value for m in QuantizerMode], default="nearest")
    p.add_argument("--outline", type=int, choices=(0, 1, 2), default=0)
    p.add_argument("--jitter", type=float, nargs="?", const=-1.0, default=None,
                   help="Enable palette micro-jitter, optionally with a strength (default 0.15).")
    p.add_argument("--scale", type=int, default=1, help="Nearest-neighbour upscale factor for the saved image.")
    p.add_argument("--extra", nargs="*", help="Generator params as k=v (e.g. roughness=0.8 vegetation=true).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Seeded retro pixel-art sprite generator")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v, -vv).")
    sub = p.add_subparsers(dest="cmd", required=True)

    lp = sub.add_parser("list", help="List generators, archetypes and palettes.")
    lp.add_argument("--palettes", nargs="*", default=None, help="Extra palette JSON files/URLs.")
    lp.set_defaults(func=cmd_list)

    rp = sub.add_parser("run", help="Generate one sprite.")
    _add_generation_args(rp)
    rp.add_argument("--out", type=Path, required=True, help="Output image (png/webp/gif).")
    rp.add_argument("--save-preset", type=Path, default=None, help="Also write the request as a preset JSON.")
    rp.set_defaults(func=cmd_run)

    bp = sub.add_parser("batch", help="Generate N sprites with the similarity guard on.")
    _add_generation_args(bp)
    bp.add_argument("--count", type=int, default=8)
    bp.add_argument("--out-dir", type=Path, required=True)
    bp.add_argument("--history", type=int, default=50, help="Similarity guard window.")
    bp.add_argument("--retries", type=int, default=5, help="Attempts per sprite before giving up on diversity.")
    bp.add_argument("--edge-threshold", type=float, default=0.85)
    bp.add_argument("--color-threshold", type=float, default=0.9)
    bp.add_argument("--same-seed", action="store_true", help="Reuse --seed for every sprite (guard does the varying).")
    bp.set_defaults(func=cmd_batch)

    bench = sub.add_parser("bench", help="Micro-benchmark one generator + retro pass.")
    _add_generation_args(bench)
    bench.add_argument("--runs", type=int, default=5)
    bench.set_defaults(func=cmd_bench)

    pp = sub.add_parser("palettes", help="Manage custom palette files.")
    psub = pp.add_subparsers(dest="palettes_cmd", required=True)
    pl = psub.add_parser("list", help="Show palettes in one or more files.")
    pl.add_argument("sources", nargs="+")
    pl.set_defaults(func=cmd_palettes_list)
    pa = psub.add_parser("add", help="Add a palette to a palette file (created if missing).")
    pa.add_argument("--file", type=Path, required=True)
    pa.add_argument("--name", required=True)
    pa.add_argument("--colors", nargs="+", required=True, help="Colours as #rgb, #rrggbb or 0xAARRGGBB.")
    pa.add_argument("--max-colors", type=int, default=None)
    pa.set_defaults(func=cmd_palettes_add)
    pr = psub.add_parser("remove", help="Remove a palette id from a palette file.")
    pr.add_argument("--file", type=Path, required=True)
    pr.add_argument("id")
    pr.set_defaults(func=cmd_palettes_remove)
    pm = psub.add_parser("merge", help="Import palette files/URLs and export them as one file.")
    pm.add_argument("sources", nargs="+")
    pm.add_argument("--out", type=Path, required=True)
    pm.set_defaults(func=cmd_palettes_merge)

    return p


# =============== Commands ===============
def cmd_list(args: argparse.Namespace) -> int:
    registry = PaletteRegistry()
    _load_palettes(registry, args.palettes)
    for name in REGISTRY.names():
        gen = REGISTRY.create(name)
        archetypes = ", ".join(a["id"] for a in gen.archetypes()) or "(none)"
        print(f"{name} v{gen.version}: archetypes {archetypes}")
        for prm in gen.get_params():
            print(f"    {prm['name']:<12} default={prm['default']!r:<8} {prm.get('help', '')}")
    print("Palettes:", ", ".join(registry.names()))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        fetcher = FileFetcher()
        engine = Engine()
        _load_palettes(engine.palettes, args.palettes, fetcher)
        request = _request_from_args(args, fetcher)

        result = engine.run(request)
        _save_image(result.buffer.to_image(), args.out, args.scale)
        log.info("Saved %s (%dx%d)", args.out, result.buffer.width, result.buffer.height)

        if args.save_preset:
            args.save_preset.parent.mkdir(parents=True, exist_ok=True)
            args.save_preset.write_text(Preset.from_request(request).to_json(), encoding="utf-8")
            log.info("Saved preset %s", args.save_preset)
        return 0
    except Exception as e:
        log.exception("Failed: %s", e)
        return 1


def cmd_batch(args: argparse.Namespace) -> int:
    try:
        fetcher = FileFetcher()
        guard = SimilarityGuard(GuardConfig(
            max_history=args.history,
            edge_threshold=args.edge_threshold,
            color_threshold=args.color_threshold,
            max_retries=args.retries,
        ))
        engine = Engine(guard=guard)
        _load_palettes(engine.palettes, args.palettes, fetcher)
        base = _request_from_args(args, fetcher)
        base.use_similarity_guard = True

        args.out_dir.mkdir(parents=True, exist_ok=True)
        retried = 0
        for i in range(max(0, args.count)):
            seed = base.seed if args.same_seed else (base.seed + i) & 0xFFFFFFFF
            request = dataclasses.replace(base, seed=seed)
            result = engine.run(request)
            retried += result.attempts > 1
            out = args.out_dir / f"{request.generator}_{i:03d}_{seed}.png"
            _save_image(result.buffer.to_image(), out, args.scale)
            log.info("[%d/%d] %s (%s, %d attempt(s))", i + 1, args.count, out.name,
                     result.state.value, result.attempts)
        print(f"Wrote {args.count} sprite(s) to {args.out_dir}; {retried} needed retries.")
        return 0
    except Exception as e:
        log.exception("Batch failed: %s", e)
        return 1


def cmd_bench(args: argparse.Namespace) -> int:
    try:
        fetcher = FileFetcher()
        engine = Engine()
        _load_palettes(engine.palettes, args.palettes, fetcher)
        request = _request_from_args(args, fetcher)

        times = []
        for _ in range(max(1, args.runs)):
            t0 = time.perf_counter()
            _ = engine.run(request)
            times.append(time.perf_counter() - t0)
        avg = sum(times) / len(times)
        print(
            f"{request.generator} {request.size}px: {len(times)} run(s), avg {avg*1000:.2f} ms, "
            f"min {min(times)*1000:.2f} ms, max {max(times)*1000:.2f} ms"
        )
        return 0
    except Exception as e:
        log.exception("Bench failed: %s", e)
        return 1


def _read_palette_file(path: Path) -> PaletteRegistry:
    """Load a palette file for rewriting. Raises ValueError rather than drop records."""
    registry = PaletteRegistry()
    if not path.exists():
        return registry
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ValueError(f"{path} is not valid JSON ({e}); refusing to overwrite it") from e
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not hold a palette object; refusing to overwrite it")
    registry.import_mapping(data)
    skipped = len(data) - len(registry.custom())
    if skipped:
        raise ValueError(f"{skipped} record(s) in {path} could not be loaded and would be lost; fix the file first")
    return registry


def cmd_palettes_list(args: argparse.Namespace) -> int:
    registry = PaletteRegistry()
    try:
        ok = _load_palettes(registry, args.sources)
    except (OSError, ValueError, requests.RequestException) as e:
        log.error("Cannot read palettes: %s", e)
        return 1
    for pid, pal in registry.custom().items():
        swatch = " ".join(f"#{c & 0xFFFFFF:06x}" for c in pal.colors)
        print(f"{pid}: {pal.name!r} max={pal.max_colors} [{swatch}]")
    return 0 if ok else 1


def cmd_palettes_add(args: argparse.Namespace) -> int:
    try:
        colors = tuple(parse_hex_color(c) for c in args.colors)
        palette = Palette(args.name, colors, args.max_colors or len(colors))
        registry = _read_palette_file(args.file)
        pid = registry.add(palette)
        args.file.parent.mkdir(parents=True, exist_ok=True)
        args.file.write_text(registry.export_json(), encoding="utf-8")
        print(f"Added {pid} ({len(colors)} colours) to {args.file}")
        return 0
    except ValueError as e:
        log.error("Cannot add palette: %s", e)
        return 1


def cmd_palettes_remove(args: argparse.Namespace) -> int:
    try:
        registry = _read_palette_file(args.file)
    except ValueError as e:
        log.error("Cannot remove palette: %s", e)
        return 1
    if not registry.remove(args.id):
        log.error("No custom palette %r in %s", args.id, args.file)
        return 1
    args.file.write_text(registry.export_json(), encoding="utf-8")
    print(f"Removed {args.id} from {args.file}")
    return 0


def cmd_palettes_merge(args: argparse.Namespace) -> int:
    try:
        registry = PaletteRegistry()
        _load_palettes(registry, args.sources)
        if not registry.custom():
            log.error("No palettes imported from %s", ", ".join(args.sources))
            return 1
        args.out.parent.mkdir(parents=True, exist_ok=True)
        args.out.write_text(registry.export_json(), encoding="utf-8")
        print(f"Wrote {len(registry.custom())} palette(s) to {args.out}")
        return 0
    except Exception as e:
        log.exception("Merge failed: %s", e)
        return 1


# =============== Entry ===============
def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
