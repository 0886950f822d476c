import logging
import os
from logging.handlers import RotatingFileHandler
import sys
from typing import Optional, Union

_LOG_DIR = os.path.abspath("logs")
_LOG_NAME = "oldfilm.log"
_log_file = os.path.join(_LOG_DIR, _LOG_NAME)

def setup_logging(level: Union[int, str] = logging.INFO, log_dir: Optional[str] = None) -> None:
    global _log_file
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"unknown log level {level!r}")
    log_dir = os.path.abspath(log_dir) if log_dir else _LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    _log_file = os.path.join(log_dir, _LOG_NAME)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(min(level, logging.DEBUG))

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s")

    ch = logging.StreamHandler(stream=sys.stdout)
    ch.setFormatter(fmt)
    ch.setLevel(level)
    root.addHandler(ch)

    fh = RotatingFileHandler(_log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)
    root.addHandler(fh)

    # Tame noisy libs
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("imageio").setLevel(logging.WARNING)
    logging.getLogger("imageio_ffmpeg").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.INFO)

def log_path() -> str:
    return _log_file
