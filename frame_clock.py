from __future__ import annotations
import collections
import logging
import threading
import time
import concurrent.futures as cf
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Deque

from errors import PipelineError
from raster import RasterImage
from media_source import VideoSource
from encode_mp4 import encode_frames_to_mp4

logger = logging.getLogger(__name__)


@dataclass
class ClockStats:
    rendered: int = 0
    dropped: int = 0
    failed: int = 0
    exhausted: bool = False

    def __str__(self) -> str:
        return f"rendered={self.rendered} dropped={self.dropped} failed={self.failed}"


class FrameClock:
    """
    Paces ``process`` calls to a target frame rate.

    Each tick pulls one source frame, filters it and hands it to the sink.
    When filtering falls behind, the source frames whose display time has
    already passed are dropped so playback stays in step with the clock. A
    frame that fails in the pipeline is skipped and counted.
    """

    def __init__(self, fps: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        self.fps = float(fps)
        self.period = 1.0 / self.fps
        self._clock = clock
        self._sleep = sleep
        self._next_tick: Optional[float] = None
        self.stats = ClockStats()

    def reset(self) -> None:
        self._next_tick = None
        self.stats = ClockStats()

    def step(self, frames: Iterator[RasterImage], process: Callable[[RasterImage], RasterImage],
             sink: Callable[[RasterImage], None]) -> bool:
        """One tick without sleeping. Returns False once the source is exhausted."""
        now = self._clock()
        if self._next_tick is None:
            self._next_tick = now
        late = now - self._next_tick
        if late >= self.period:
            missed = int(late / self.period)
            for _ in range(missed):
                if next(frames, None) is None:
                    self.stats.exhausted = True
                    return False
            self.stats.dropped += missed
            self._next_tick += missed * self.period
            logger.debug("Behind by %.1f ms, dropped %d frame(s)", late * 1000.0, missed)

        frame = next(frames, None)
        if frame is None:
            self.stats.exhausted = True
            return False
        try:
            out = process(frame)
        except PipelineError as e:
            self.stats.failed += 1
            logger.warning("Skipping frame: %s", e)
        else:
            sink(out)
            self.stats.rendered += 1
        self._next_tick += self.period
        return True

    def run(self, frames: Iterator[RasterImage], process: Callable[[RasterImage], RasterImage],
            sink: Callable[[RasterImage], None], max_frames: Optional[int] = None) -> ClockStats:
        frames = iter(frames)
        while max_frames is None or self.stats.rendered + self.stats.failed < max_frames:
            if not self.step(frames, process, sink):
                break
            wait = self._next_tick - self._clock()
            if wait > 0:
                self._sleep(wait)
        logger.info("Playback finished: %s", self.stats)
        return self.stats


def play(source: VideoSource, process: Callable[[RasterImage], RasterImage],
         sink: Callable[[RasterImage], None], stop: threading.Event,
         clock_factory: Callable[[float], FrameClock] = FrameClock) -> ClockStats:
    """
    Live playback of an opened source until it ends or ``stop`` is set.

    The source belongs to this playback and is closed on the way out, so a
    newer playback never shares a reader with an older one.
    """
    try:
        clock = clock_factory(source.info.fps)

        def frames():
            for frame in source.frames():
                if stop.is_set():
                    return
                yield frame

        return clock.run(frames(), process, sink)
    finally:
        source.close()


def filter_in_order(frames: Iterator[RasterImage], process: Callable[[RasterImage], RasterImage],
                    workers: int, stats: ClockStats) -> Iterator[RasterImage]:
    """Filter frames on a thread pool, yielding results in source order; failed frames are skipped."""
    window = max(1, workers) * 2
    with cf.ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="oldfilm-frame") as ex:
        pending: Deque[cf.Future] = collections.deque()
        index = 0

        def drain_one():
            nonlocal index
            fut = pending.popleft()
            try:
                out = fut.result()
            except PipelineError as e:
                stats.failed += 1
                logger.warning("Skipping frame %d: %s", index, e)
                out = None
            index += 1
            return out

        for frame in frames:
            pending.append(ex.submit(process, frame))
            if len(pending) >= window:
                out = drain_one()
                if out is not None:
                    stats.rendered += 1
                    yield out
        while pending:
            out = drain_one()
            if out is not None:
                stats.rendered += 1
                yield out
    stats.exhausted = True


def render_video(src_path: str, out_path: str, process: Callable[[RasterImage], RasterImage],
                 workers: int = 4, fps: Optional[float] = None, crf: int = 20,
                 reader_factory=None, encoder=encode_frames_to_mp4) -> ClockStats:
    """Offline render: decode, filter every frame, encode MP4. No frames are dropped."""
    stats = ClockStats()
    source = VideoSource(src_path, reader_factory=reader_factory)
    t0 = time.perf_counter()
    with source:
        out_fps = fps or source.info.fps
        logger.info("Rendering %s (%dx%d @ %.2f fps) -> %s", src_path, source.info.width,
                    source.info.height, out_fps, out_path)
        encoder(filter_in_order(source.frames(), process, workers, stats), out_path, fps=out_fps, crf=crf)
    logger.info("Rendered %s in %.1fs: %s", out_path, time.perf_counter() - t0, stats)
    return stats
