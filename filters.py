from __future__ import annotations
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from errors import InvalidImage
from raster import RasterImage, Rect, ColorMatrix, AffineTransform2D, IDENTITY_MATRIX
from render_context import RenderContext
import ops

logger = logging.getLogger(__name__)

# Calibration of the "analog film" look; change only with product sign-off.
SEPIA_INTENSITY = 1.0
GRAIN_DENSITY = 0.005
SCRATCH_GAIN = 4.0
SCRATCH_SCALE_X = 1.5
SCRATCH_SCALE_Y = 25.0

SEPIA_MATRIX = ColorMatrix(
    r=(0.393, 0.769, 0.189, 0.0),
    g=(0.349, 0.686, 0.168, 0.0),
    b=(0.272, 0.534, 0.131, 0.0),
    a=(0.0, 0.0, 0.0, 1.0),
)


def grain_matrix(density: float = GRAIN_DENSITY) -> ColorMatrix:
    # green -> white specks, alpha = density * green
    whiten = (0.0, 1.0, 0.0, 0.0)
    return ColorMatrix(r=whiten, g=whiten, b=whiten, a=(0.0, density, 0.0, 0.0))


def scratch_matrix(gain: float = SCRATCH_GAIN) -> ColorMatrix:
    # amplified red with G = B = A = 1 gives cyan streaks
    zero = (0.0, 0.0, 0.0, 0.0)
    return ColorMatrix(r=(gain, 0.0, 0.0, 0.0), g=zero, b=zero, a=zero, bias=(0.0, 1.0, 1.0, 1.0))


class Stage(ABC):
    """One step of the film chain: RasterImage(s) in, RasterImage out."""
    name = "stage"

    @abstractmethod
    def run(self, ctx: RenderContext, *images: RasterImage, **kwargs) -> RasterImage:
        ...

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items() if not k.startswith("_"))
        return f"{type(self).__name__}({fields})"


class NoiseGenerator:
    """
    Uniform random RGBA field, fresh on every call.

    With a seed the sequence of draws repeats across runs; draws are
    serialized so one generator can serve concurrent pipelines.
    """
    name = "noise"

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def generate(self, ctx: RenderContext, extent: Rect) -> RasterImage:
        r = extent.integral()
        if r.is_empty():
            raise InvalidImage(f"cannot generate noise over empty extent {extent}")
        buf = ctx.allocate(int(r.height), int(r.width))
        with self._lock:
            self._rng.random(out=buf, dtype=np.float32)
        return RasterImage.from_float(buf, r, ctx.working_color_space, (int(r.x), int(r.y)))

    def __repr__(self) -> str:
        return f"NoiseGenerator(seed={self.seed!r})"


class SepiaStage(Stage):
    name = "sepia"

    def __init__(self, intensity: float = SEPIA_INTENSITY):
        if not 0.0 <= intensity <= 1.0:
            raise ValueError(f"sepia intensity must be within [0, 1], got {intensity}")
        self.intensity = float(intensity)
        self._matrix = ColorMatrix.blend(IDENTITY_MATRIX, SEPIA_MATRIX, self.intensity)

    def run(self, ctx: RenderContext, image: RasterImage) -> RasterImage:
        return ops.color_matrix(ctx, image, self._matrix)


class GrainStage(Stage):
    """White specks from the noise's green channel, laid over the background."""
    name = "grain"

    def __init__(self, density: float = GRAIN_DENSITY):
        self.density = float(density)
        self._matrix = grain_matrix(self.density)

    def specks(self, ctx: RenderContext, noise: RasterImage) -> RasterImage:
        return ops.color_matrix(ctx, noise, self._matrix)

    def run(self, ctx: RenderContext, noise: RasterImage, background: RasterImage) -> RasterImage:
        return ops.composite(ctx, ops.CompositingOp.SOURCE_OVER, self.specks(ctx, noise), background,
                             background.extent)


class ScratchStage(Stage):
    """Stretch the noise into vertical streaks and turn them into a darkness mask."""
    name = "scratch"

    def __init__(self, gain: float = SCRATCH_GAIN, scale_x: float = SCRATCH_SCALE_X,
                 scale_y: float = SCRATCH_SCALE_Y, sampling: str = ops.LINEAR_SAMPLING):
        if sampling not in ops.SAMPLING_MODES:
            raise ValueError(f"unknown sampling mode {sampling!r}")
        self.gain = float(gain)
        self.scale_x = float(scale_x)
        self.scale_y = float(scale_y)
        self.sampling = sampling
        self.transform = AffineTransform2D.scale(self.scale_x, self.scale_y)
        # raises early on a zero scale
        self.transform.inverted()
        self._matrix = scratch_matrix(self.gain)

    def source_region(self, roi: Rect) -> Rect:
        return ops.source_region(self.transform, roi)

    def run(self, ctx: RenderContext, noise: RasterImage, roi: Optional[Rect] = None) -> RasterImage:
        # materialize only the noise field's own extent unless told otherwise
        roi = roi if roi is not None else noise.extent
        stretched = ops.affine_resample(ctx, noise, self.transform, roi, self.sampling)
        cyan = ops.color_matrix(ctx, stretched, self._matrix)
        return ops.minimum_component(ctx, cyan)


class Compositor(Stage):
    """Multiply the scratch mask into the speckled image, then crop to the frame."""
    name = "compose"

    def run(self, ctx: RenderContext, dark_scratches: RasterImage, speckled: RasterImage,
            output_extent: Optional[Rect] = None) -> RasterImage:
        extent = output_extent if output_extent is not None else speckled.extent
        blended = ops.composite(ctx, ops.CompositingOp.MULTIPLY, dark_scratches, speckled, extent)
        return blended.cropped(extent)


# ---------- functional shortcuts ----------
def apply_sepia(ctx: RenderContext, image: RasterImage, intensity: float = SEPIA_INTENSITY) -> RasterImage:
    return SepiaStage(intensity).run(ctx, image)

def apply_grain(ctx: RenderContext, noise: RasterImage, background: RasterImage) -> RasterImage:
    return GrainStage().run(ctx, noise, background)

def apply_scratches(ctx: RenderContext, noise: RasterImage, roi: Optional[Rect] = None) -> RasterImage:
    return ScratchStage().run(ctx, noise, roi)

def compose(ctx: RenderContext, dark_scratches: RasterImage, speckled: RasterImage,
            output_extent: Rect) -> RasterImage:
    return Compositor().run(ctx, dark_scratches, speckled, output_extent)
