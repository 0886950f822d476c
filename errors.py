from __future__ import annotations
import faulthandler
import os
import sys
import threading
import traceback
import functools
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

logger = logging.getLogger("Errors")

_CRASH_DIR = os.path.abspath("logs")
_CRASH_DUMP = os.path.join(_CRASH_DIR, "crash.dump")

# Keep strong refs so they aren't GC'd
_faulthandler_file: Optional[object] = None
_qt_handler_ref: Optional[Callable] = None


# ---------------- pipeline failures ----------------
class PipelineError(Exception):
    """Base class for every failure raised out of the filter pipeline."""


class InvalidImage(PipelineError):
    """Zero-sized or malformed pixel buffer."""


class UnsupportedFormat(PipelineError):
    """Pixel data that cannot be interpreted as RGBA."""


class AllocationFailure(PipelineError):
    """An intermediate buffer could not be allocated."""


# ---------------- process-wide hooks ----------------
def _ensure_dirs():
    os.makedirs(_CRASH_DIR, exist_ok=True)

def _write_dump(prefix: str, exc_text: str) -> None:
    _ensure_dirs()
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    path = os.path.join(_CRASH_DIR, f"{prefix}_{ts}.dump")
    with open(path, "w", encoding="utf-8") as f:
        f.write(exc_text)
    logger.error("Wrote exception dump: %s", path)

def install_global_exception_hooks(install_qt_handler: bool = False) -> None:
    """
    Route uncaught, thread and unraisable exceptions to the log plus a dump
    file, and enable faulthandler for native crashes. The viewer also asks
    for Qt messages to be forwarded.
    """
    global _faulthandler_file, _qt_handler_ref
    _ensure_dirs()

    def excepthook(exc_type, exc, tb):
        buf = "".join(traceback.format_exception(exc_type, exc, tb))
        logger.critical("Uncaught exception:\n%s", buf)
        _write_dump("uncaught", buf)
        sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = excepthook

    # Render workers and the folder watcher run on threads
    def threading_hook(args: threading.ExceptHookArgs):
        buf = "".join(traceback.format_exception(args.exc_type, args.exc_value, args.exc_traceback))
        logger.critical("Thread exception in %s:\n%s", getattr(args.thread, "name", "<unknown>"), buf)
        _write_dump("thread", buf)

    threading.excepthook = threading_hook

    def unraisable_hook(unraisable):
        buf = "".join(traceback.format_exception(unraisable.exc_type, unraisable.exc_value, unraisable.exc_traceback))
        where = getattr(unraisable, "object", None)
        logger.error("Unraisable exception in %r:\n%s", where, buf)
        _write_dump("unraisable", buf)

    sys.unraisablehook = unraisable_hook

    if install_qt_handler:
        from PySide6 import QtCore

        levels = {
            QtCore.QtMsgType.QtDebugMsg: logging.DEBUG,
            QtCore.QtMsgType.QtInfoMsg: logging.INFO,
            QtCore.QtMsgType.QtWarningMsg: logging.WARNING,
            QtCore.QtMsgType.QtCriticalMsg: logging.ERROR,
            QtCore.QtMsgType.QtFatalMsg: logging.CRITICAL,
        }

        def qt_message_handler(mode, context, message):
            file = getattr(context, "file", None) or "<qt>"
            text = f"{file}:{getattr(context, 'line', None)} {message}"
            logger.log(levels.get(mode, logging.INFO), "QT: %s", text)
            if mode == QtCore.QtMsgType.QtFatalMsg:
                _write_dump("qt_fatal", text)

        _qt_handler_ref = qt_message_handler
        QtCore.qInstallMessageHandler(_qt_handler_ref)

    # faulthandler needs a binary file that stays open
    try:
        _faulthandler_file = open(_CRASH_DUMP, "ab", buffering=0)
        faulthandler.enable(file=_faulthandler_file, all_threads=True)
        logger.info("Faulthandler enabled: %s", _CRASH_DUMP)
    except OSError as e:
        logger.warning("Failed to enable faulthandler: %s", e)

def safe_slot(fn: Callable) -> Callable:
    """Decorator for Qt slots/callbacks: logs exceptions instead of letting them bubble into Qt."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            buf = traceback.format_exc()
            logger.error("Exception in slot %s:\n%s", getattr(fn, "__name__", str(fn)), buf)
            _write_dump("slot", buf)
    return wrapper
