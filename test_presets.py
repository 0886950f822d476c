import json

import pytest

import ops
from filters import GRAIN_DENSITY, SCRATCH_SCALE_Y
from raster import Rect
from presets import FilmPreset, TUNABLES, Float, Enum, load_preset, save_preset


def test_defaults_match_the_calibrated_look():
    p = FilmPreset()
    assert p.sepia_intensity == 1.0
    assert p.grain_density == GRAIN_DENSITY
    assert p.scratch_scale_y == SCRATCH_SCALE_Y
    assert p.sampling == ops.LINEAR_SAMPLING
    assert set(p.tunables()) == set(TUNABLES)
    assert load_preset(None) == p


def test_tunables_table_types():
    assert isinstance(TUNABLES["sepia_intensity"], Float)
    assert isinstance(TUNABLES["sampling"], Enum)
    assert TUNABLES["sampling"].choices == list(ops.SAMPLING_MODES)


@pytest.mark.parametrize("changes", [
    {"sepia_intensity": 1.5},
    {"grain_density": -0.1},
    {"sampling": "cubic"},
    {"video_crf": 99},
    {"scratch_scale_x": 0.5},
    {"scratch_scale_y": 0.1},
])
def test_updated_validates(changes):
    with pytest.raises(ValueError):
        FilmPreset().updated(**changes)


def test_updated_rejects_unknown_keys():
    with pytest.raises(ValueError):
        FilmPreset().updated(vignette=0.3)


def test_json_round_trip(tmp_path):
    p = FilmPreset().updated(seed=42, scratch_gain=2.5, sampling=ops.NEAREST)
    path = tmp_path / "presets" / "look.json"
    save_preset(p, str(path))
    assert json.loads(path.read_text(encoding="utf-8"))["seed"] == 42
    assert load_preset(str(path)) == p


def test_from_json_fills_missing_keys_and_validates():
    assert FilmPreset.from_json('{"grain_density": 0.01}').grain_density == 0.01
    with pytest.raises(ValueError):
        FilmPreset.from_json('{"scratch_scale_x": 0}')
    with pytest.raises(ValueError):
        FilmPreset.from_json("[1, 2]")


def test_build_pipeline_uses_preset_values():
    p = FilmPreset().updated(sepia_intensity=0.25, scratch_scale_y=10.0, seed=1, concurrency=2)
    with p.make_context() as ctx:
        assert ctx.workers == 2
        pipeline = p.build_pipeline(ctx)
    assert pipeline.sepia.intensity == 0.25
    assert pipeline.scratch.scale_y == 10.0
    assert pipeline.noise.seed == 1


def test_smallest_scales_keep_hd_noise_within_budget():
    p = FilmPreset().updated(scratch_scale_x=1.0, scratch_scale_y=1.0)
    frame = Rect(0, 0, 1920, 1080)
    with p.make_context() as ctx:
        pipeline = p.build_pipeline(ctx)
        noise = frame.union(pipeline.scratch.source_region(frame))
        assert noise.width * noise.height <= ctx.max_pixels
        assert noise.width <= 1922 and noise.height <= 1082
