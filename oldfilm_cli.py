#!/usr/bin/env python3
from __future__ import annotations
import argparse
import logging
import os
import sys
import time
import concurrent.futures as cf
from typing import List, Optional

from errors import PipelineError, install_global_exception_hooks
from io_utils import load_raster, save_raster, make_output_path, is_image_path
from logconf import setup_logging
from pipeline import OldFilmPipeline
from presets import FilmPreset, load_preset
from frame_clock import render_video
from watcher import FolderWatcher

logger = logging.getLogger("oldfilm")


def collect_inputs(paths: List[str]) -> List[str]:
    """Expand directories (non-recursive) into their image files, keeping explicit files as given."""
    out: List[str] = []
    for p in paths:
        if os.path.isdir(p):
            out.extend(sorted(os.path.join(p, n) for n in os.listdir(p)
                              if is_image_path(n) and os.path.isfile(os.path.join(p, n))))
        else:
            out.append(p)
    return out


def render_still(pipeline: OldFilmPipeline, in_path: str, out_dir: str, overwrite: bool = True) -> str:
    dst = make_output_path(out_dir, in_path, "oldfilm", "png")
    t0 = time.perf_counter()
    out = pipeline.process(load_raster(in_path))
    save_raster(out, dst, overwrite=overwrite)
    logger.info("Wrote %s (%.0f ms)", dst, (time.perf_counter() - t0) * 1000.0)
    return dst


def cmd_still(args, preset: FilmPreset) -> int:
    files = collect_inputs(args.inputs)
    if not files:
        logger.error("No images found."); return 1
    failures = 0
    with preset.make_context() as ctx:
        pipeline = preset.build_pipeline(ctx)
        # files run one after another; each image already fans out over the context's bands
        for path in files:
            try:
                render_still(pipeline, path, args.out, overwrite=not args.keep_existing)
            except (PipelineError, OSError) as e:
                # an error aborts this image only; the rest of the batch still runs
                failures += 1
                logger.error("Failed %s: %s", path, e)
    logger.info("Done -> %s (%d ok, %d failed)", args.out, len(files) - failures, failures)
    return 1 if failures else 0


def cmd_video(args, preset: FilmPreset) -> int:
    fps = args.fps or preset.video_fps or None
    crf = args.crf if args.crf is not None else preset.video_crf
    with preset.make_context() as ctx:
        pipeline = preset.build_pipeline(ctx)
        try:
            stats = render_video(args.input, args.output, pipeline.process,
                                 workers=max(1, args.frame_workers), fps=fps, crf=crf)
        except (RuntimeError, ValueError, OSError) as e:
            # unreadable source, or nothing left to encode after skipped frames
            logger.error("Failed %s: %s", args.input, e)
            return 1
    if stats.failed:
        logger.warning("%d frame(s) skipped after pipeline errors", stats.failed)
    return 0


def cmd_watch(args, preset: FilmPreset) -> int:
    out_dir = args.out or os.path.join(args.folder, "_oldfilm")
    os.makedirs(out_dir, exist_ok=True)
    with preset.make_context() as ctx:
        pipeline = preset.build_pipeline(ctx)
        pool = cf.ThreadPoolExecutor(max_workers=1, thread_name_prefix="oldfilm-watch-render")

        def enqueue(paths: List[str]):
            for p in paths:
                pool.submit(_render_logged, pipeline, p, out_dir)

        watcher = FolderWatcher(enqueue, ignore_dir=out_dir)
        watcher.start(args.folder)
        try:
            while True:
                time.sleep(0.5)
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            watcher.stop()
            pool.shutdown(wait=True)
    return 0


def _render_logged(pipeline: OldFilmPipeline, path: str, out_dir: str) -> Optional[str]:
    try:
        return render_still(pipeline, path, out_dir)
    except (PipelineError, OSError) as e:
        logger.error("Failed %s: %s", path, e)
        return None


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="oldfilm", description="Scratchy old analog film look for stills and video.")
    ap.add_argument("--preset", help="JSON preset with look and runtime settings")
    ap.add_argument("--seed", type=int, help="seed the grain/scratch noise (reproducible output)")
    ap.add_argument("--workers", type=int, help="band worker threads per image (default: all cores)")
    ap.add_argument("--log-level", default="INFO")
    ap.add_argument("--log-dir", default=None)
    sub = ap.add_subparsers(dest="command", required=True)

    s = sub.add_parser("still", help="filter image files or folders of images")
    s.add_argument("inputs", nargs="+")
    s.add_argument("--out", default="_oldfilm")
    s.add_argument("--keep-existing", action="store_true", help="fail instead of overwriting outputs")
    s.set_defaults(func=cmd_still)

    v = sub.add_parser("video", help="filter every frame of a movie into an MP4")
    v.add_argument("input")
    v.add_argument("output")
    v.add_argument("--fps", type=float, default=None, help="output frame rate (default: source)")
    v.add_argument("--crf", type=int, default=None)
    v.add_argument("--frame-workers", type=int, default=2, help="frames filtered concurrently")
    v.set_defaults(func=cmd_video)

    w = sub.add_parser("watch", help="filter images as they appear in a folder")
    w.add_argument("folder")
    w.add_argument("--out", default=None)
    w.set_defaults(func=cmd_watch)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_dir)
    install_global_exception_hooks()
    preset = load_preset(args.preset)
    overrides = {}
    if args.seed is not None:
        overrides["seed"] = args.seed
    if args.workers is not None:
        overrides["concurrency"] = args.workers
    if overrides:
        preset = preset.updated(**overrides)
    logger.debug("Preset: %s", preset)
    return args.func(args, preset)


if __name__ == "__main__":
    sys.exit(main())
