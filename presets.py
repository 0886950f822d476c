from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, asdict, fields
from typing import Dict, Any, Optional

from filters import (NoiseGenerator, SepiaStage, GrainStage, ScratchStage, SEPIA_INTENSITY,
                     GRAIN_DENSITY, SCRATCH_GAIN, SCRATCH_SCALE_X, SCRATCH_SCALE_Y)
from pipeline import OldFilmPipeline
from render_context import RenderContext
import ops

logger = logging.getLogger(__name__)

PRESET_VERSION = 1


# ---------------- option descriptors ----------------
@dataclass
class Option:
    default: Any
    label: str = ""

    def check(self, key: str, value: Any) -> None:
        pass

class Int(Option):
    def __init__(self, default: int, min_value: int, max_value: int, step: int = 1, label: str = ""):
        super().__init__(default, label); self.min = min_value; self.max = max_value; self.step = step
    def check(self, key, value):
        if not self.min <= int(value) <= self.max:
            raise ValueError(f"{key}={value} outside [{self.min}, {self.max}]")

class Float(Option):
    def __init__(self, default: float, min_value: float, max_value: float, step: float = 0.01, label: str = ""):
        super().__init__(default, label); self.min = min_value; self.max = max_value; self.step = step
    def check(self, key, value):
        if not self.min <= float(value) <= self.max:
            raise ValueError(f"{key}={value} outside [{self.min}, {self.max}]")

class Enum(Option):
    def __init__(self, default: str, choices, label: str = ""):
        super().__init__(default, label); self.choices = list(choices)
    def check(self, key, value):
        if value not in self.choices:
            raise ValueError(f"{key}={value!r} not one of {self.choices}")


# The look itself; the viewer builds its option panel from this table.
TUNABLES: Dict[str, Option] = {
    "sepia_intensity": Float(SEPIA_INTENSITY, 0.0, 1.0, 0.05, label="Sepia intensity"),
    "grain_density": Float(GRAIN_DENSITY, 0.0, 0.1, 0.001, label="Grain density"),
    "scratch_gain": Float(SCRATCH_GAIN, 0.0, 16.0, 0.25, label="Scratch gain"),
    # stretch only: a shrinking scale grows the noise draw by 1/(sx*sy)
    "scratch_scale_x": Float(SCRATCH_SCALE_X, 1.0, 10.0, 0.1, label="Scratch scale X"),
    "scratch_scale_y": Float(SCRATCH_SCALE_Y, 1.0, 100.0, 1.0, label="Scratch scale Y"),
    "sampling": Enum(ops.LINEAR_SAMPLING, ops.SAMPLING_MODES, label="Scratch sampling"),
}

# Output/runtime knobs
RUNTIME: Dict[str, Option] = {
    "concurrency": Int(0, 0, 256, label="Worker threads (0 = all cores)"),
    "video_fps": Int(0, 0, 240, label="Video FPS (0 = source)"),
    "video_crf": Int(20, 0, 51, label="Video CRF"),
}


@dataclass
class FilmPreset:
    version: int = PRESET_VERSION
    sepia_intensity: float = SEPIA_INTENSITY
    grain_density: float = GRAIN_DENSITY
    scratch_gain: float = SCRATCH_GAIN
    scratch_scale_x: float = SCRATCH_SCALE_X
    scratch_scale_y: float = SCRATCH_SCALE_Y
    sampling: str = ops.LINEAR_SAMPLING
    seed: Optional[int] = None
    concurrency: int = 0
    video_fps: int = 0
    video_crf: int = 20

    def validate(self) -> "FilmPreset":
        for key, opt in {**TUNABLES, **RUNTIME}.items():
            opt.check(key, getattr(self, key))
        return self

    def tunables(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in TUNABLES}

    def updated(self, **changes) -> "FilmPreset":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"unknown preset keys: {unknown}")
        data = asdict(self); data.update(changes)
        return FilmPreset(**data).validate()

    def make_context(self) -> RenderContext:
        return RenderContext(workers=self.concurrency or None)

    def build_pipeline(self, ctx: RenderContext) -> OldFilmPipeline:
        self.validate()
        return OldFilmPipeline(
            ctx,
            sepia=SepiaStage(self.sepia_intensity),
            noise=NoiseGenerator(self.seed),
            grain=GrainStage(self.grain_density),
            scratch=ScratchStage(self.scratch_gain, self.scratch_scale_x, self.scratch_scale_y, self.sampling),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    @staticmethod
    def from_json(s: str) -> "FilmPreset":
        obj = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("preset must be a JSON object")
        seed = obj.get("seed")
        return FilmPreset(
            version=int(obj.get("version", PRESET_VERSION)),
            sepia_intensity=float(obj.get("sepia_intensity", SEPIA_INTENSITY)),
            grain_density=float(obj.get("grain_density", GRAIN_DENSITY)),
            scratch_gain=float(obj.get("scratch_gain", SCRATCH_GAIN)),
            scratch_scale_x=float(obj.get("scratch_scale_x", SCRATCH_SCALE_X)),
            scratch_scale_y=float(obj.get("scratch_scale_y", SCRATCH_SCALE_Y)),
            sampling=str(obj.get("sampling", ops.LINEAR_SAMPLING)),
            seed=None if seed is None else int(seed),
            concurrency=int(obj.get("concurrency", 0)),
            video_fps=int(obj.get("video_fps", 0)),
            video_crf=int(obj.get("video_crf", 20)),
        ).validate()


def load_preset(path: Optional[str]) -> FilmPreset:
    if not path:
        return FilmPreset()
    with open(path, "r", encoding="utf-8") as f:
        p = FilmPreset.from_json(f.read())
    logger.info("Loaded preset %s", path)
    return p

def save_preset(preset: FilmPreset, path: str) -> None:
    d = os.path.dirname(os.path.abspath(path))
    os.makedirs(d, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(preset.validate().to_json())
    logger.info("Saved preset %s", path)
