"""
engine.py — wires generator, parameters and seed into a finished sprite.

    seed -> Stream -> generator.generate -> generator.tune -> enforce_retro
         -> (guard on) signature -> accept, or nudge params and retry

With the similarity guard on, attempt i draws from `root.split(f"attempt_{i}")`
and nudges draw from `root.split("nudge")`, so the whole retry sequence is a
pure function of the request. The loop is a small explicit state machine
(RetryLoop) that can be exercised without any generator at all.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any, Callable, Dict, Optional

from content import REGISTRY, BaseGenerator, GenerationContext, GeneratorRegistry
from filters import DitherMode, QuantizerMode, RetroPolicy, enforce_retro
from palettes import DEFAULT_PALETTE_ID, Palette, PaletteRegistry
from params import ParamMap, coerce_params
from pixels import PixelBuffer
from similarity import SimilarityGuard, SpriteSignature
from streams import Stream

log = logging.getLogger("pixelforge.engine")

__all__ = ["Engine", "GenerationRequest", "GenerationResult", "RetryLoop", "RetryState"]


@dataclass
class GenerationRequest:
    generator: str
    seed: int
    size: int = 32
    archetype: Optional[str] = None
    palette: str = DEFAULT_PALETTE_ID
    dither: DitherMode = DitherMode.NONE
    quantizer: QuantizerMode = QuantizerMode.NEAREST
    outline: int = 0
    params: Dict[str, Any] = field(default_factory=dict)
    use_similarity_guard: bool = False
    micro_jitter: bool = False
    micro_jitter_strength: Optional[float] = None
    time_budget_ms: float = 16.0

    def __post_init__(self) -> None:
        self.seed = int(self.seed) & 0xFFFFFFFF
        self.size = int(self.size)
        if self.size < 0:
            raise ValueError(f"size must be >= 0, got {self.size}")
        self.dither = DitherMode(self.dither)
        self.quantizer = QuantizerMode(self.quantizer)

    def retro_policy(self) -> RetroPolicy:
        # fresh per attempt: generators may retune jitter strength in place
        return RetroPolicy(
            outline_width=self.outline,
            micro_jitter=self.micro_jitter,
            micro_jitter_strength=self.micro_jitter_strength,
            dither=self.dither,
            quantizer=self.quantizer,
        )


class RetryState(Enum):
    ATTEMPTING = "attempting"
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"


@dataclass
class GenerationResult:
    buffer: PixelBuffer
    params: ParamMap
    attempts: int
    state: RetryState
    signature: Optional[SpriteSignature] = None


Attempt = Callable[[int, ParamMap], PixelBuffer]


class RetryLoop:
    """ATTEMPTING(i) -> ACCEPTED | ATTEMPTING(i+1) | EXHAUSTED.

    An attempt that is not similar to the guard's history is ACCEPTED. After
    `max_retries` similar attempts the loop is EXHAUSTED and the last attempt
    is returned anyway. Either way its signature joins the history.
    """

    def __init__(self, guard: SimilarityGuard, max_retries: Optional[int] = None) -> None:
        self.guard = guard
        self.max_retries = max_retries if max_retries is not None else guard.config.max_retries
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")

    def run(self, attempt: Attempt, params: ParamMap, nudge_stream: Stream) -> GenerationResult:
        state = RetryState.ATTEMPTING
        current = dict(params)
        i = 0
        while state is RetryState.ATTEMPTING:
            buffer = attempt(i, current)
            sig = self.guard.signature(buffer, current)
            i += 1
            if not self.guard.is_similar(sig):
                state = RetryState.ACCEPTED
            elif i >= self.max_retries:
                state = RetryState.EXHAUSTED
            else:
                log.debug("Attempt %d too similar, nudging %d param(s)", i - 1, len(current))
                current = self.guard.suggest_param_nudges(current, nudge_stream)

        if state is RetryState.EXHAUSTED:
            log.info("Similarity guard exhausted after %d attempt(s); keeping the last one", i)
        self.guard.add_to_history(sig)
        return GenerationResult(buffer, current, i, state, sig)


class Engine:
    def __init__(
        self,
        palettes: Optional[PaletteRegistry] = None,
        generators: Optional[GeneratorRegistry] = None,
        guard: Optional[SimilarityGuard] = None,
    ) -> None:
        self.palettes = palettes if palettes is not None else PaletteRegistry()
        self.generators = generators if generators is not None else REGISTRY
        self.guard = guard if guard is not None else SimilarityGuard()

    def _render(
        self,
        gen: BaseGenerator,
        request: GenerationRequest,
        palette: Palette,
        stream: Stream,
        params: ParamMap,
    ) -> PixelBuffer:
        buffer = PixelBuffer(request.size, request.size)
        ctx = GenerationContext(buffer, stream, palette, request.retro_policy(), request.time_budget_ms)
        gen.generate(ctx, params)
        gen.tune(ctx, params)
        enforce_retro(ctx)
        return buffer

    def run(self, request: GenerationRequest) -> GenerationResult:
        gen = self.generators.create(request.generator)
        palette = self.palettes.get(request.palette)
        merged = gen.archetype_params(request.archetype)
        merged.update(request.params)
        params = coerce_params(merged)
        root = Stream(request.seed)

        t0 = perf_counter()
        if not request.use_similarity_guard:
            buffer = self._render(gen, request, palette, root, params)
            result = GenerationResult(buffer, params, 1, RetryState.ACCEPTED)
        else:
            loop = RetryLoop(self.guard)
            result = loop.run(
                lambda i, p: self._render(gen, request, palette, root.split(f"attempt_{i}"), p),
                params,
                root.split("nudge"),
            )
        log.info(
            "%s seed=%d size=%d palette=%s -> %s in %d attempt(s), %.1f ms",
            gen.id, request.seed, request.size, palette.name, result.state.value,
            result.attempts, (perf_counter() - t0) * 1000,
        )
        return result
