from __future__ import annotations
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Any

import numpy as np

from raster import RasterImage, SRGB

logger = logging.getLogger(__name__)


class SourceState(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class MediaInfo:
    width: int
    height: int
    fps: float
    frame_count: Optional[int] = None
    duration: Optional[float] = None


def _imageio_reader(path: str):
    import imageio
    return imageio.get_reader(path, format="ffmpeg")


def frame_to_raster(frame: Any) -> RasterImage:
    """Decoded video frame (H, W, 3|4 uint8) -> RGBA8 sRGB raster."""
    arr = np.asarray(frame)
    if arr.ndim == 2:
        arr = np.repeat(arr[..., None], 3, axis=2)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 3 and arr.shape[2] == 3:
        alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
        arr = np.concatenate([arr, alpha], axis=2)
    return RasterImage(arr, color_space=SRGB)


class VideoSource:
    """
    Movie file as a sequence of RasterImages.

    State only changes through ``open`` and ``close``:
    IDLE -open-> LOADING -> READY | FAILED, and any state -close-> IDLE.
    Listeners get (old, new) on every transition.
    """

    def __init__(self, path: str, reader_factory: Optional[Callable[[str], Any]] = None):
        self.path = path
        self._factory = reader_factory or _imageio_reader
        self._reader = None
        self._state = SourceState.IDLE
        self._lock = threading.Lock()
        self.info: Optional[MediaInfo] = None
        self.error: Optional[BaseException] = None
        self._listeners = []

    @property
    def state(self) -> SourceState:
        return self._state

    def add_listener(self, fn: Callable[[SourceState, SourceState], None]) -> None:
        self._listeners.append(fn)

    def _transition(self, new: SourceState) -> None:
        old, self._state = self._state, new
        logger.info("%s: %s -> %s", self.path, old.value, new.value)
        for fn in list(self._listeners):
            fn(old, new)

    def open(self) -> SourceState:
        with self._lock:
            if self._state is not SourceState.IDLE:
                raise RuntimeError(f"cannot open a source in state {self._state.value}")
            self._transition(SourceState.LOADING)
            try:
                reader = self._factory(self.path)
                meta = reader.get_meta_data()
                w, h = meta.get("size") or meta.get("source_size") or (0, 0)
                fps = float(meta.get("fps") or 0.0)
                if w <= 0 or h <= 0 or fps <= 0:
                    reader.close()
                    raise ValueError(f"no usable video stream (size={w}x{h}, fps={fps})")
                nframes = meta.get("nframes")
                self.info = MediaInfo(
                    width=int(w), height=int(h), fps=fps,
                    frame_count=int(nframes) if isinstance(nframes, (int, float)) and nframes != float("inf") else None,
                    duration=meta.get("duration"),
                )
            except Exception as e:
                self.error = e
                logger.error("Failed to open %s: %s", self.path, e)
                self._transition(SourceState.FAILED)
                return self._state
            self._reader = reader
            self.error = None
            self._transition(SourceState.READY)
            return self._state

    def close(self) -> None:
        with self._lock:
            reader, self._reader = self._reader, None
            if reader is not None:
                reader.close()
            if self._state is not SourceState.IDLE:
                self._transition(SourceState.IDLE)
            self.info = None

    def __enter__(self) -> "VideoSource":
        if self.open() is SourceState.FAILED:
            raise RuntimeError(f"cannot open {self.path}: {self.error}") from self.error
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def frames(self) -> Iterator[RasterImage]:
        if self._state is not SourceState.READY or self._reader is None:
            raise RuntimeError(f"source is {self._state.value}, not ready")
        for frame in self._reader:
            yield frame_to_raster(frame)
