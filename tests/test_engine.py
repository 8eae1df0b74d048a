"""Tests for the orchestrator, the retry loop and the bundled generators."""
import logging

import numpy as np
import pytest

from conftest import draw_square, palette_rgb_set
from content import REGISTRY, BaseGenerator, GenerationContext, GeneratorRegistry
from engine import Engine, GenerationRequest, RetryLoop, RetryState
from filters import OUTLINE_COLOR, RetroPolicy
from palettes import NES_13, SNES_32
from params import Choice, Flag, Number
from pixels import PixelBuffer, argb
from similarity import GuardConfig, SimilarityGuard
from streams import Stream

RED = argb(255, 255, 0, 0)
BLUE = argb(255, 0, 0, 255)


def red_square():
    return draw_square(PixelBuffer(16, 16), 4, 4, 12, 12, RED)


def half_and_half():
    buf = PixelBuffer(16, 16)
    draw_square(buf, 0, 0, 8, 16, RED)
    return draw_square(buf, 8, 0, 16, 16, BLUE)


@pytest.fixture
def square_generators():
    """Registry with one generator that always draws the same red square, counting calls."""
    calls = []

    class SquareGenerator(BaseGenerator):
        id = "square"

        def generate(self, ctx, params):
            calls.append(dict(params))
            draw_square(ctx.buffer, 4, 4, 12, 12, RED)

    reg = GeneratorRegistry()
    reg.register("square", SquareGenerator)
    return reg, calls


class TestRetryLoop:
    def test_accepts_first_dissimilar_attempt(self):
        guard = SimilarityGuard()
        guard.add_to_history(guard.signature(red_square()))
        seen = []

        def attempt(i, params):
            seen.append(i)
            return red_square() if i < 2 else half_and_half()

        result = RetryLoop(guard).run(attempt, {"k": Number(0.5)}, Stream(1))
        assert result.state is RetryState.ACCEPTED
        assert result.attempts == 3
        assert seen == [0, 1, 2]
        assert len(guard) == 2
        assert guard.history[-1] == result.signature

    def test_exhausts_and_keeps_last(self):
        guard = SimilarityGuard()
        guard.add_to_history(guard.signature(red_square()))
        produced = []

        def attempt(i, params):
            produced.append(red_square())
            return produced[-1]

        result = RetryLoop(guard).run(attempt, {}, Stream(1))
        assert result.state is RetryState.EXHAUSTED
        assert result.attempts == 5
        assert result.buffer is produced[-1]
        assert len(guard) == 2

    def test_single_retry_budget(self):
        guard = SimilarityGuard()
        guard.add_to_history(guard.signature(red_square()))
        result = RetryLoop(guard, max_retries=1).run(lambda i, p: red_square(), {}, Stream(1))
        assert result.state is RetryState.EXHAUSTED
        assert result.attempts == 1

    def test_params_are_nudged_between_attempts(self):
        guard = SimilarityGuard()
        guard.add_to_history(guard.signature(red_square()))
        seen = []

        def attempt(i, params):
            seen.append(params)
            return red_square()

        RetryLoop(guard, max_retries=3).run(attempt, {"k": Number(0.5), "f": Flag(True)}, Stream(4))
        assert seen[0] == {"k": Number(0.5), "f": Flag(True)}
        assert all(p["f"] == Flag(True) for p in seen)
        assert len({p["k"].value for p in seen}) > 1

    def test_rejects_zero_budget(self):
        with pytest.raises(ValueError):
            RetryLoop(SimilarityGuard(), max_retries=0)


class TestEngine:
    def test_deterministic(self):
        req = GenerationRequest("tile", seed=12345, size=16, archetype="grass", dither="bayer4", micro_jitter=True)
        a = Engine().run(req)
        b = Engine().run(req)
        assert a.buffer == b.buffer
        assert a.state is RetryState.ACCEPTED
        assert a.attempts == 1

    def test_seed_changes_output(self):
        a = Engine().run(GenerationRequest("tile", seed=1, size=16))
        b = Engine().run(GenerationRequest("tile", seed=2, size=16))
        assert a.buffer != b.buffer

    def test_guarded_sequence_is_reproducible(self):
        def sequence():
            engine = Engine()
            return [engine.run(GenerationRequest("crystal", seed=7, size=16, use_similarity_guard=True)).buffer
                    for _ in range(3)]
        assert sequence() == sequence()

    def test_guard_converges_on_fixed_pattern(self, square_generators, caplog):
        reg, calls = square_generators
        engine = Engine(generators=reg)
        req = GenerationRequest("square", seed=12345, size=16, use_similarity_guard=True,
                                params={"density": 0.5})

        first = engine.run(req)
        assert first.state is RetryState.ACCEPTED
        assert len(calls) == 1
        for _ in range(2):
            assert engine.run(req).state is RetryState.EXHAUSTED
        assert len(engine.guard) == 3
        assert len({(s.edge_histogram, s.color_histogram) for s in engine.guard.history}) == 1

        before = len(calls)
        with caplog.at_level(logging.INFO, logger="pixelforge.engine"):
            fourth = engine.run(req)
        assert fourth.state is RetryState.EXHAUSTED
        assert fourth.attempts == 5
        assert len(calls) - before == 5
        assert "exhausted" in caplog.text
        assert calls[before] == {"density": Number(0.5)}
        assert calls[before + 1] != calls[before]
        assert len(engine.guard) == 4

    def test_guard_off_never_retries(self, square_generators):
        reg, calls = square_generators
        engine = Engine(generators=reg)
        for _ in range(3):
            engine.run(GenerationRequest("square", seed=1, size=16))
        assert len(calls) == 3
        assert len(engine.guard) == 0

    def test_guard_budget_from_config(self, square_generators):
        reg, calls = square_generators
        engine = Engine(generators=reg, guard=SimilarityGuard(GuardConfig(max_retries=2)))
        req = GenerationRequest("square", seed=3, size=16, use_similarity_guard=True)
        engine.run(req)
        assert engine.run(req).attempts == 2

    def test_archetype_merged_under_request_params(self):
        result = Engine().run(GenerationRequest("tile", seed=5, size=8, archetype="metal", params={"roughness": 0.9}))
        assert result.params["roughness"] == Number(0.9)
        assert result.params["material"] == Choice("metal")
        assert result.params["vegetation"] == Flag(False)

    def test_unknown_archetype_is_ignored(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pixelforge.content"):
            result = Engine().run(GenerationRequest("tile", seed=5, size=8, archetype="lava"))
        assert result.params == {}
        assert "lava" in caplog.text

    def test_unknown_palette_falls_back(self):
        result = Engine().run(GenerationRequest("tile", seed=5, size=16, palette="nope"))
        opaque = result.buffer.data[(result.buffer.data >> 24) > 0]
        assert {int(c) & 0xFFFFFF for c in opaque} <= palette_rgb_set(NES_13)

    def test_unknown_generator(self):
        with pytest.raises(KeyError):
            Engine().run(GenerationRequest("dragon", seed=1))

    def test_zero_size(self):
        result = Engine().run(GenerationRequest("crystal", seed=1, size=0, outline=1, use_similarity_guard=True))
        assert result.buffer.empty
        assert result.state is RetryState.ACCEPTED

    def test_request_validation(self):
        with pytest.raises(ValueError):
            GenerationRequest("tile", seed=1, size=-1)
        assert GenerationRequest("tile", seed=-1).seed == 0xFFFFFFFF


class TestGenerators:
    @pytest.mark.parametrize("name,archetype", [
        ("tile", "grass"), ("tile", "rock"), ("tile", "metal"),
        ("crystal", "shard"), ("crystal", "geode"),
    ])
    def test_output_in_palette(self, name, archetype):
        req = GenerationRequest(name, seed=99, size=24, archetype=archetype, palette="SNES_32",
                                dither="bayer8", outline=1, micro_jitter=True)
        buf = Engine().run(req).buffer
        opaque = buf.data[(buf.data >> 24) > 0]
        assert opaque.size > 0
        allowed = palette_rgb_set(SNES_32) | {OUTLINE_COLOR & 0xFFFFFF}
        assert {int(c) & 0xFFFFFF for c in opaque} <= allowed

    def test_tile_is_opaque(self):
        buf = Engine().run(GenerationRequest("tile", seed=4, size=16)).buffer
        assert np.all((buf.data >> 24) == 0xFF)

    def test_crystal_has_transparent_background(self):
        buf = Engine().run(GenerationRequest("crystal", seed=4, size=24)).buffer
        assert buf.get(0, 0) == 0
        assert (buf.data >> 24).any()

    def test_tile_metal_doubles_jitter(self):
        ctx = GenerationContext(PixelBuffer(4, 4), Stream(1), NES_13, RetroPolicy(micro_jitter=True))
        REGISTRY.create("tile").tune(ctx, {"material": Choice("metal")})
        assert ctx.retro.micro_jitter_strength == pytest.approx(0.3)

    def test_tile_tune_needs_jitter(self):
        ctx = GenerationContext(PixelBuffer(4, 4), Stream(1), NES_13, RetroPolicy())
        REGISTRY.create("tile").tune(ctx, {"material": Choice("metal")})
        assert ctx.retro.micro_jitter_strength is None

    def test_crystal_sparkle_raises_jitter(self):
        ctx = GenerationContext(PixelBuffer(4, 4), Stream(1), NES_13, RetroPolicy(micro_jitter=True))
        REGISTRY.create("crystal").tune(ctx, {"sparkle": Flag(True)})
        assert ctx.retro.micro_jitter_strength == pytest.approx(0.225)

    def test_registry(self):
        assert REGISTRY.names() == ["crystal", "tile"]
        assert REGISTRY.create(" Tile ").id == "tile"
        with pytest.raises(KeyError):
            REGISTRY.create("nope")

    def test_param_schema_matches_archetypes(self):
        for name in REGISTRY.names():
            gen = REGISTRY.create(name)
            known = {p["name"] for p in gen.get_params()}
            for arch in gen.archetypes():
                assert set(arch["params"]) <= known
