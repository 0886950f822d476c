import threading
import time

import numpy as np
import pytest

from encode_mp4 import raster_to_frame, _pad_even
from errors import InvalidImage
from frame_clock import FrameClock, ClockStats, filter_in_order, play, render_video
from media_source import VideoSource, SourceState, frame_to_raster
from raster import RasterImage, SRGB


class FakeReader:
    def __init__(self, n=3, meta=None):
        self.frames = [np.full((3, 4, 3), i, dtype=np.uint8) for i in range(n)]
        self.meta = meta if meta is not None else {"size": (4, 3), "fps": 25.0, "nframes": n, "duration": n / 25.0}
        self.closed = False

    def get_meta_data(self):
        return self.meta

    def __iter__(self):
        return iter(self.frames)

    def close(self):
        self.closed = True


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, s):
        self.sleeps.append(s)
        self.now += s


# ---------------- video source ----------------
def test_video_source_state_machine():
    reader = FakeReader()
    seen = []
    src = VideoSource("clip.mov", reader_factory=lambda path: reader)
    src.add_listener(lambda old, new: seen.append((old, new)))
    assert src.state is SourceState.IDLE
    assert src.open() is SourceState.READY
    assert src.info.width == 4 and src.info.height == 3 and src.info.fps == 25.0
    assert src.info.frame_count == 3
    frames = list(src.frames())
    assert len(frames) == 3 and frames[2].pixels[0, 0, 0] == 2
    with pytest.raises(RuntimeError):
        src.open()
    src.close()
    assert reader.closed
    assert src.state is SourceState.IDLE
    assert seen == [(SourceState.IDLE, SourceState.LOADING),
                    (SourceState.LOADING, SourceState.READY),
                    (SourceState.READY, SourceState.IDLE)]


def test_video_source_failure_is_reported():
    def broken(path):
        raise OSError("no such movie")

    src = VideoSource("missing.mov", reader_factory=broken)
    assert src.open() is SourceState.FAILED
    assert isinstance(src.error, OSError)
    with pytest.raises(RuntimeError):
        next(src.frames())
    src.close()
    assert src.state is SourceState.IDLE


def test_video_source_without_stream_fails_and_closes_reader():
    reader = FakeReader(meta={"size": (4, 3), "fps": 0})
    src = VideoSource("audio.m4a", reader_factory=lambda path: reader)
    assert src.open() is SourceState.FAILED
    assert reader.closed


def test_video_source_context_manager_raises_on_failure():
    with pytest.raises(RuntimeError):
        with VideoSource("x.mov", reader_factory=lambda path: FakeReader(meta={})):
            pass


def test_frame_to_raster_adds_alpha():
    img = frame_to_raster(np.zeros((2, 5), dtype=np.uint8))
    assert img.pixels.shape == (2, 5, 4)
    assert img.color_space == SRGB
    assert (img.pixels[..., 3] == 255).all()


# ---------------- frame clock ----------------
def test_frame_clock_keeps_pace_when_fast():
    t = FakeTime()
    clock = FrameClock(4, clock=t.clock, sleep=t.sleep)
    sunk = []
    stats = clock.run(iter(range(5)), lambda f: f, sunk.append)
    assert sunk == [0, 1, 2, 3, 4]
    assert stats.dropped == 0 and stats.exhausted
    assert t.sleeps == [0.25] * 5


def test_frame_clock_drops_late_frames():
    t = FakeTime()
    clock = FrameClock(4, clock=t.clock, sleep=t.sleep)

    def slow(f):
        t.now += 0.5
        return f

    sunk = []
    stats = clock.run(iter(range(10)), slow, sunk.append)
    assert sunk == [0, 2, 4, 6, 8]
    assert stats.rendered == 5 and stats.dropped == 5


def test_frame_clock_skips_failed_frames():
    t = FakeTime()
    clock = FrameClock(4, clock=t.clock, sleep=t.sleep)

    def flaky(f):
        if f == 1:
            raise InvalidImage("bad frame")
        return f

    sunk = []
    stats = clock.run(iter(range(4)), flaky, sunk.append)
    assert sunk == [0, 2, 3]
    assert stats.failed == 1


def test_frame_clock_max_frames_and_bad_fps():
    t = FakeTime()
    stats = FrameClock(10, clock=t.clock, sleep=t.sleep).run(iter(range(100)), lambda f: f, lambda f: None, max_frames=3)
    assert stats.rendered == 3 and not stats.exhausted
    with pytest.raises(ValueError):
        FrameClock(0)


# ---------------- offline rendering ----------------
def test_filter_in_order_keeps_source_order():
    def slow(i):
        time.sleep(0.002 * (3 - i % 3))
        if i == 4:
            raise InvalidImage("bad frame")
        return i * 10

    stats = ClockStats()
    out = list(filter_in_order(iter(range(9)), slow, workers=3, stats=stats))
    assert out == [0, 10, 20, 30, 50, 60, 70, 80]
    assert stats.rendered == 8 and stats.failed == 1 and stats.exhausted


def test_render_video_with_fake_encoder():
    written = {}

    def encoder(frames, out_path, fps, crf):
        written["frames"] = list(frames)
        written["args"] = (out_path, fps, crf)
        return len(written["frames"])

    stats = render_video("in.mov", "out.mp4", lambda img: img, workers=2, crf=18,
                         reader_factory=lambda path: FakeReader(4), encoder=encoder)
    assert stats.rendered == 4
    assert written["args"] == ("out.mp4", 25.0, 18)
    assert all(isinstance(f, RasterImage) for f in written["frames"])


def test_encoder_frame_helpers():
    img = RasterImage(np.full((3, 5, 4), 200, dtype=np.uint8), color_space=SRGB)
    frame = raster_to_frame(img)
    assert frame.shape == (3, 5, 3) and frame.dtype == np.uint8
    assert _pad_even(frame).shape == (4, 6, 3)


def test_play_stops_on_request_and_closes_its_source():
    t = FakeTime()
    reader = FakeReader(6)
    source = VideoSource("clip.mov", reader_factory=lambda path: reader)
    source.open()
    stop = threading.Event()
    shown = []

    def sink(img):
        shown.append(img)
        if len(shown) == 2:
            stop.set()

    stats = play(source, lambda img: img, sink, stop,
                 clock_factory=lambda fps: FrameClock(fps, clock=t.clock, sleep=t.sleep))
    assert stats.rendered == 2
    assert reader.closed and source.state is SourceState.IDLE


def test_back_to_back_playbacks_keep_their_own_sources():
    first_reader, second_reader = FakeReader(3), FakeReader(3)
    first = VideoSource("a.mov", reader_factory=lambda path: first_reader)
    second = VideoSource("b.mov", reader_factory=lambda path: second_reader)
    first.open()
    second.open()
    first_stop, second_stop = threading.Event(), threading.Event()
    first_stop.set()
    t = FakeTime()
    make_clock = lambda fps: FrameClock(fps, clock=t.clock, sleep=t.sleep)

    assert play(first, lambda img: img, lambda img: None, first_stop, make_clock).rendered == 0
    assert first_reader.closed
    # the stopped playback leaves the newer one untouched
    assert not second_reader.closed and second.state is SourceState.READY
    assert play(second, lambda img: img, lambda img: None, second_stop, make_clock).rendered == 3
    assert second_reader.closed
