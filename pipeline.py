from __future__ import annotations
import logging
import time
from typing import Optional

from errors import PipelineError, AllocationFailure, InvalidImage
from raster import RasterImage
from render_context import RenderContext
from filters import (NoiseGenerator, SepiaStage, GrainStage, ScratchStage, Compositor)

logger = logging.getLogger(__name__)


class OldFilmPipeline:
    """
    sepia -> grain over sepia -> scratches multiplied in -> crop to the input frame.

    ``process`` is stateless apart from the noise generator's draw sequence,
    so one pipeline may serve many threads. Any stage failure is raised as a
    PipelineError and no partial image is returned.
    """

    def __init__(self, ctx: RenderContext, *, sepia: Optional[SepiaStage] = None,
                 noise: Optional[NoiseGenerator] = None, grain: Optional[GrainStage] = None,
                 scratch: Optional[ScratchStage] = None, compositor: Optional[Compositor] = None):
        self.ctx = ctx
        self.sepia = sepia or SepiaStage()
        self.noise = noise or NoiseGenerator()
        self.grain = grain or GrainStage()
        self.scratch = scratch or ScratchStage()
        self.compositor = compositor or Compositor()

    def __repr__(self) -> str:
        return (f"OldFilmPipeline({self.sepia!r}, {self.noise!r}, {self.grain!r}, "
                f"{self.scratch!r}, {self.compositor!r})")

    def _timed(self, name: str, fn, *args):
        t0 = time.perf_counter()
        try:
            return fn(*args)
        except PipelineError:
            logger.debug("Stage %s failed", name, exc_info=True)
            raise
        except MemoryError as e:
            raise AllocationFailure(f"out of memory in stage {name}") from e
        finally:
            logger.debug("stage %-8s %.2f ms", name, (time.perf_counter() - t0) * 1000.0)

    def process(self, image: RasterImage, noise_field: Optional[RasterImage] = None) -> RasterImage:
        """
        Run the whole chain over ``image``.

        ``noise_field`` replaces the random draw with a fixed realization
        (read with clamp-to-edge), which makes the output reproducible.
        The result has the input's extent, sample type and color space.
        """
        if not isinstance(image, RasterImage):
            raise InvalidImage(f"expected a RasterImage, got {type(image).__name__}")
        ctx = self.ctx
        extent = image.extent.integral()
        base = self._timed("convert", lambda: image.to_float().in_color_space(ctx.working_color_space))

        sepia = self._timed(self.sepia.name, self.sepia.run, ctx, base)

        if noise_field is None:
            noise_extent = extent.union(self.scratch.source_region(extent))
            noise_field = self._timed(self.noise.name, self.noise.generate, ctx, noise_extent)

        speckled = self._timed(self.grain.name, self.grain.run, ctx, noise_field, sepia)
        scratches = self._timed(self.scratch.name, self.scratch.run, ctx, noise_field, extent)
        film = self._timed(self.compositor.name, self.compositor.run, ctx, scratches, speckled, extent)

        out = self._timed("output", lambda: film.in_color_space(image.color_space).to_dtype(image.dtype))
        if out.extent != extent:
            raise InvalidImage(f"output extent {out.extent} differs from input extent {extent}")
        return out

    __call__ = process


def process(image: RasterImage, ctx: Optional[RenderContext] = None, seed: Optional[int] = None) -> RasterImage:
    """One-shot convenience wrapper; long-lived callers should keep their own pipeline."""
    if ctx is not None:
        return OldFilmPipeline(ctx, noise=NoiseGenerator(seed)).process(image)
    with RenderContext() as own:
        return OldFilmPipeline(own, noise=NoiseGenerator(seed)).process(image)
