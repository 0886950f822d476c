import os
from types import SimpleNamespace

from PIL import Image
import pytest

import media_source
import oldfilm_cli
from watcher import _EnqueueHandler


@pytest.fixture
def quiet(monkeypatch):
    # keep the test run's own logging and hooks in place
    monkeypatch.setattr(oldfilm_cli, "setup_logging", lambda level, log_dir: None)
    monkeypatch.setattr(oldfilm_cli, "install_global_exception_hooks", lambda: None)


def test_parser_defaults():
    args = oldfilm_cli.build_parser().parse_args(["video", "in.mov", "out.mp4"])
    assert args.func is oldfilm_cli.cmd_video
    assert args.frame_workers == 2 and args.fps is None


def test_collect_inputs_expands_folders(tmp_path):
    for name in ("b.png", "a.jpg", "notes.txt"):
        (tmp_path / name).write_bytes(b"")
    explicit = str(tmp_path / "other.tif")
    found = oldfilm_cli.collect_inputs([str(tmp_path), explicit])
    assert found == [str(tmp_path / "a.jpg"), str(tmp_path / "b.png"), explicit]


def test_still_command_filters_a_folder(tmp_path, quiet):
    src = tmp_path / "in"
    src.mkdir()
    Image.new("RGB", (12, 8), (90, 140, 200)).save(src / "one.png")
    Image.new("L", (5, 5), 77).save(src / "two.png")
    out = tmp_path / "out"
    rc = oldfilm_cli.main(["--seed", "1", "--workers", "1", "still", str(src), "--out", str(out)])
    assert rc == 0
    assert sorted(os.listdir(out)) == ["one_oldfilm.png", "two_oldfilm.png"]
    with Image.open(out / "one_oldfilm.png") as img:
        assert img.size == (12, 8)


def test_still_command_reports_failures(tmp_path, quiet):
    bad = tmp_path / "broken.png"
    bad.write_text("nope")
    rc = oldfilm_cli.main(["still", str(bad), "--out", str(tmp_path / "out")])
    assert rc == 1


def test_watch_handler_waits_for_files_to_settle(tmp_path):
    got = []
    out_dir = tmp_path / "_oldfilm"
    handler = _EnqueueHandler(got.extend, ignore_dir=str(out_dir), settle=0.5)
    img = tmp_path / "new.png"
    img.write_bytes(b"x")
    ignored = str(out_dir / "done.png")

    handler.on_created(SimpleNamespace(is_directory=False, src_path=str(img)))
    handler.on_created(SimpleNamespace(is_directory=False, src_path=ignored))
    handler.on_created(SimpleNamespace(is_directory=False, src_path=str(tmp_path / "clip.mov")))
    assert handler.flush(now=0.0) == []
    assert handler.flush(now=1e9) == [str(img)]
    assert got == [str(img)]
    assert handler.flush(now=2e9) == []


def test_video_command_reports_unreadable_movie(tmp_path, quiet, monkeypatch):
    def broken(path):
        raise OSError(f"cannot decode {path}")

    monkeypatch.setattr(media_source, "_imageio_reader", broken)
    rc = oldfilm_cli.main(["video", str(tmp_path / "missing.mov"), str(tmp_path / "out.mp4")])
    assert rc == 1


def test_video_command_reports_empty_output(tmp_path, quiet, monkeypatch):
    def nothing_encoded(*args, **kwargs):
        raise ValueError("No frames to encode")

    monkeypatch.setattr(oldfilm_cli, "render_video", nothing_encoded)
    rc = oldfilm_cli.main(["video", "in.mov", str(tmp_path / "out.mp4")])
    assert rc == 1
