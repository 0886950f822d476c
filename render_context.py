from __future__ import annotations
import logging
import os
import threading
import concurrent.futures as cf
from typing import Callable, List, Optional, Tuple

import numpy as np

from errors import AllocationFailure
from raster import LINEAR, COLOR_SPACES

logger = logging.getLogger(__name__)

# Intermediates above this many pixels are refused (about 1.6 GB of float32 RGBA)
MAX_PIXELS = 100_000_000
BAND_ROWS = 64


class RenderContext:
    """
    Owns the worker pool and the resource limits used by every stage.

    Create one per application (or per test), share it across calls, and
    close it on shutdown; it is also a context manager.
    """

    def __init__(self, workers: Optional[int] = None, band_rows: int = BAND_ROWS,
                 max_pixels: int = MAX_PIXELS, working_color_space: str = LINEAR):
        if working_color_space not in COLOR_SPACES:
            raise ValueError(f"unknown working color space {working_color_space!r}")
        self.workers = max(1, int(workers if workers else (os.cpu_count() or 1)))
        self.band_rows = max(1, int(band_rows))
        self.max_pixels = int(max_pixels)
        self.working_color_space = working_color_space
        self._executor: Optional[cf.ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "RenderContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"RenderContext(workers={self.workers}, band_rows={self.band_rows})"

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            self._closed = True
            ex, self._executor = self._executor, None
        if ex is not None:
            ex.shutdown(wait=True)
            logger.debug("Render pool shut down")

    def _pool(self) -> cf.ThreadPoolExecutor:
        with self._lock:
            if self._closed:
                raise RuntimeError("RenderContext is closed")
            if self._executor is None:
                self._executor = cf.ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="oldfilm-band")
                logger.debug("Render pool started with %d workers", self.workers)
            return self._executor

    # ----- buffers -----
    def allocate(self, height: int, width: int, channels: int = 4) -> np.ndarray:
        pixels = int(height) * int(width)
        if pixels > self.max_pixels:
            raise AllocationFailure(f"intermediate of {width}x{height} exceeds the {self.max_pixels} pixel budget")
        try:
            return np.empty((int(height), int(width), channels), dtype=np.float32)
        except MemoryError as e:
            raise AllocationFailure(f"cannot allocate {width}x{height}x{channels} buffer") from e

    # ----- banded execution -----
    def bands(self, height: int) -> List[Tuple[int, int]]:
        return [(y, min(y + self.band_rows, height)) for y in range(0, height, self.band_rows)]

    def for_each_band(self, height: int, fn: Callable[[int, int], None]) -> None:
        """Run fn(y0, y1) over horizontal bands and wait for all of them."""
        bands = self.bands(height)
        if self.workers == 1 or len(bands) == 1:
            for y0, y1 in bands:
                fn(y0, y1)
            return
        futures = [self._pool().submit(fn, y0, y1) for y0, y1 in bands]
        try:
            for fut in futures:
                fut.result()
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
