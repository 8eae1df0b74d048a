"""Tests for preset records."""
import json
import logging

import pytest

from engine import Engine, GenerationRequest
from filters import DitherMode, QuantizerMode
from presets import PRESET_VERSION, Preset


@pytest.fixture
def preset():
    return Preset(sprite_type="tile", archetype="rock", seed=4242, size=16, palette="GB_4",
                  dither=DitherMode.BAYER8, outline=1, params={"roughness": 0.7, "vegetation": True})


class TestPresetRecord:
    def test_json_keys(self, preset):
        data = json.loads(preset.to_json())
        assert data == {
            "version": PRESET_VERSION,
            "spriteType": "tile",
            "archetype": "rock",
            "seed": 4242,
            "size": 16,
            "palette": "GB_4",
            "dither": "bayer8",
            "quantizer": "nearest",
            "outline": 1,
            "params": {"roughness": 0.7, "vegetation": True},
        }

    def test_json_round_trip(self, preset):
        assert Preset.from_json(preset.to_json()) == preset

    def test_missing_fields_default(self):
        p = Preset.from_dict({"spriteType": "crystal"})
        assert p.sprite_type == "crystal"
        assert p.size == 32
        assert p.palette == "NES_13"
        assert p.dither is DitherMode.NONE
        assert p.quantizer is QuantizerMode.NEAREST
        assert p.params == {}

    def test_bad_values_fall_back_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pixelforge.presets"):
            p = Preset.from_dict({"seed": "abc", "dither": "floyd", "outline": 7, "size": -4, "params": [1, 2]})
        assert p.seed == 0
        assert p.dither is DitherMode.NONE
        assert p.outline == 0
        assert p.size == 0
        assert p.params == {}
        assert "floyd" in caplog.text

    def test_newer_version_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pixelforge.presets"):
            p = Preset.from_dict({"version": PRESET_VERSION + 1, "seed": 3})
        assert p.seed == 3
        assert "newer" in caplog.text

    def test_not_an_object(self):
        assert Preset.from_dict([1, 2, 3]) == Preset()


class TestPresetRequest:
    def test_to_request(self, preset):
        req = preset.to_request()
        assert isinstance(req, GenerationRequest)
        assert (req.generator, req.archetype, req.seed, req.size) == ("tile", "rock", 4242, 16)
        assert req.dither is DitherMode.BAYER8
        assert req.params == {"roughness": 0.7, "vegetation": True}
        assert not req.use_similarity_guard

    def test_overrides(self, preset):
        req = preset.to_request(seed=1, micro_jitter=True)
        assert req.seed == 1
        assert req.micro_jitter

    def test_from_request(self):
        req = GenerationRequest("crystal", seed=9, size=20, archetype="geode", outline=2, params={"density": 0.4})
        p = Preset.from_request(req)
        assert p.to_request() == req

    def test_preset_reproduces_sprite(self, preset):
        direct = Engine().run(GenerationRequest("tile", seed=4242, size=16, archetype="rock", palette="GB_4",
                                                dither="bayer8", outline=1,
                                                params={"roughness": 0.7, "vegetation": True}))
        via_json = Engine().run(Preset.from_json(preset.to_json()).to_request())
        assert direct.buffer == via_json.buffer
