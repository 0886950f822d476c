from __future__ import annotations
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler
import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional

from io_utils import is_image_path

logger = logging.getLogger(__name__)

SETTLE_SECONDS = 0.5


class _EnqueueHandler(FileSystemEventHandler):
    """Collects new image paths; files still being written are held until their size settles."""

    def __init__(self, callback: Callable[[List[str]], None], ignore_dir: Optional[str],
                 settle: float = SETTLE_SECONDS):
        self.cb = callback
        self.ignore_dir = os.path.abspath(ignore_dir) if ignore_dir else None
        self.settle = settle
        self._pending: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _accept(self, path: str) -> bool:
        if not is_image_path(path):
            return False
        if self.ignore_dir and os.path.abspath(path).startswith(self.ignore_dir + os.sep):
            return False
        return True

    def _note(self, path: str) -> None:
        if self._accept(path):
            with self._lock:
                self._pending[path] = time.monotonic()

    def on_created(self, event):
        if not event.is_directory:
            self._note(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            with self._lock:
                if event.src_path in self._pending:
                    self._pending[event.src_path] = time.monotonic()

    def on_moved(self, event):
        # editors and downloaders often write to a temp name, then rename
        if not event.is_directory:
            self._note(event.dest_path)

    def flush(self, now: Optional[float] = None) -> List[str]:
        now = time.monotonic() if now is None else now
        with self._lock:
            ready = [p for p, t in self._pending.items() if now - t >= self.settle]
            for p in ready:
                del self._pending[p]
        ready = [p for p in ready if os.path.isfile(p)]
        if ready:
            self.cb(sorted(ready))
        return ready


class FolderWatcher:
    def __init__(self, callback: Callable[[List[str]], None], ignore_dir: Optional[str] = None,
                 settle: float = SETTLE_SECONDS):
        self._obs: Optional[Observer] = None
        self._path: Optional[str] = None
        self._cb = callback
        self._ignore_dir = ignore_dir
        self._settle = settle
        self._handler: Optional[_EnqueueHandler] = None
        self._stop = threading.Event()
        self._flusher: Optional[threading.Thread] = None

    def start(self, path: str):
        self.stop()
        self._path = path
        self._handler = _EnqueueHandler(self._cb, self._ignore_dir, self._settle)
        self._obs = Observer()
        self._obs.schedule(self._handler, path, recursive=False)
        self._obs.start()
        self._stop.clear()
        self._flusher = threading.Thread(target=self._flush_loop, name="oldfilm-watch", daemon=True)
        self._flusher.start()
        logger.info("Watching %s", path)

    def _flush_loop(self):
        while not self._stop.wait(self._settle / 2):
            handler = self._handler
            if handler is not None:
                handler.flush()

    def stop(self):
        self._stop.set()
        if self._flusher:
            self._flusher.join(timeout=2.0)
            self._flusher = None
        if self._obs:
            self._obs.stop()
            self._obs.join(timeout=2.0)
            self._obs = None
            logger.info("Stopped watching %s", self._path)
        self._path = None
        self._handler = None

    def is_running(self) -> bool:
        return self._obs is not None

    def path(self) -> Optional[str]:
        return self._path
