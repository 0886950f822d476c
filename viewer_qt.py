from __future__ import annotations
import sys
import os
import logging
import threading
from typing import Dict, Any, Optional
from PySide6 import QtCore, QtGui, QtWidgets

from errors import PipelineError, install_global_exception_hooks, safe_slot
from frame_clock import play
from io_utils import load_image, pil_to_raster, downscale_for_preview, save_raster, make_output_path
from logconf import setup_logging
from media_source import VideoSource, SourceState
from presets import FilmPreset, TUNABLES, Float, Enum, load_preset, save_preset
from raster import RasterImage, SRGB

import numpy as np

APP_TITLE = "Old Film Viewer"
PREVIEW_DEBOUNCE_MS = 150


def raster_to_qpixmap(img: RasterImage) -> QtGui.QPixmap:
    arr = np.ascontiguousarray(img.in_color_space(SRGB).to_dtype(np.uint8).pixels)
    h, w = arr.shape[:2]
    qimg = QtGui.QImage(arr.data, w, h, 4 * w, QtGui.QImage.Format_RGBA8888)
    return QtGui.QPixmap.fromImage(qimg.copy())


class TunablesPanel(QtWidgets.QWidget):
    optionsChanged = QtCore.Signal(dict)

    def __init__(self):
        super().__init__()
        self._layout = QtWidgets.QFormLayout(self)
        self._controls: Dict[str, QtWidgets.QWidget] = {}
        for key, opt in TUNABLES.items():
            if isinstance(opt, Float):
                w = QtWidgets.QDoubleSpinBox(); w.setRange(opt.min, opt.max); w.setSingleStep(opt.step)
                w.setDecimals(3); w.setValue(float(opt.default)); w.valueChanged.connect(lambda _=None: self.emit())
            elif isinstance(opt, Enum):
                w = QtWidgets.QComboBox(); w.addItems(opt.choices); w.setCurrentText(opt.default)
                w.currentTextChanged.connect(lambda _=None: self.emit())
            else:
                w = QtWidgets.QLabel("Unsupported option type")
            self._controls[key] = w
            self._layout.addRow(opt.label or key, w)

    def values(self) -> Dict[str, Any]:
        vals: Dict[str, Any] = {}
        for key, w in self._controls.items():
            if isinstance(w, QtWidgets.QDoubleSpinBox): vals[key] = w.value()
            elif isinstance(w, QtWidgets.QComboBox): vals[key] = w.currentText()
        return vals

    def set_values(self, values: Dict[str, Any]):
        for key, w in self._controls.items():
            if key not in values: continue
            w.blockSignals(True)
            if isinstance(w, QtWidgets.QDoubleSpinBox): w.setValue(float(values[key]))
            elif isinstance(w, QtWidgets.QComboBox): w.setCurrentText(str(values[key]))
            w.blockSignals(False)
        self.emit()

    def emit(self): self.optionsChanged.emit(self.values())


class SplitView(QtWidgets.QWidget):
    """Original on the left of the handle, filtered on the right; drag to move the handle."""

    def __init__(self):
        super().__init__()
        self.setMinimumSize(400, 300)
        self._pix_orig: Optional[QtGui.QPixmap] = None
        self._pix_proc: Optional[QtGui.QPixmap] = None
        self._split = 0.5
        self._busy = False

    def set_images(self, orig: Optional[RasterImage], proc: Optional[RasterImage]):
        self._pix_orig = raster_to_qpixmap(orig) if orig is not None else None
        self._pix_proc = raster_to_qpixmap(proc) if proc is not None else None
        self._busy = False; self.update()

    def set_frame(self, proc: RasterImage):
        # movie playback shows the filtered frame only
        self._pix_orig = None
        self._pix_proc = raster_to_qpixmap(proc)
        self.update()

    def set_busy(self, busy: bool):
        self._busy = busy; self.update()

    def mousePressEvent(self, e: QtGui.QMouseEvent): self._update_split(e.position().x())
    def mouseMoveEvent(self, e: QtGui.QMouseEvent):
        if e.buttons() & QtCore.Qt.LeftButton: self._update_split(e.position().x())

    def _update_split(self, x: float):
        r = self.rect()
        if r.width() > 0: self._split = max(0.0, min(1.0, (x - r.x()) / r.width())); self.update()

    def paintEvent(self, _):
        p = QtGui.QPainter(self)
        p.fillRect(self.rect(), QtGui.QColor("#202020"))
        base_pix = self._pix_proc or self._pix_orig
        if not base_pix:
            return

        r = self.rect()
        pw, ph = base_pix.width(), base_pix.height()
        scale = min(r.width() / pw, r.height() / ph)
        w, h = int(pw * scale), int(ph * scale)
        x = r.x() + (r.width() - w) // 2
        y = r.y() + (r.height() - h) // 2
        dst = QtCore.QRect(x, y, w, h)

        if self._pix_orig and self._pix_proc:
            split_px = int(w * self._split)
            p.save(); p.setClipRect(QtCore.QRect(x, y, split_px, h)); p.drawPixmap(dst, self._pix_orig); p.restore()
            p.save(); p.setClipRect(QtCore.QRect(x + split_px, y, w - split_px, h)); p.drawPixmap(dst, self._pix_proc); p.restore()
            p.setPen(QtGui.QPen(QtGui.QColor("#FFFFFF"), 2))
            p.drawLine(x + split_px, y, x + split_px, y + h)
        else:
            p.drawPixmap(dst, base_pix)

        if self._busy:
            p.fillRect(self.rect(), QtGui.QColor(0, 0, 0, 100))
            p.setPen(QtGui.QPen(QtGui.QColor("#FFFFFF")))
            p.drawText(self.rect(), QtCore.Qt.AlignCenter, "Rendering…")


class WorkerSignals(QtCore.QObject):
    finished = QtCore.Signal()
    error = QtCore.Signal(str)
    result = QtCore.Signal(object)
    frame = QtCore.Signal(object)


class Worker(QtCore.QRunnable):
    def __init__(self, fn, *args, **kwargs):
        super().__init__(); self.fn = fn; self.args = args; self.kwargs = kwargs
        self.signals = WorkerSignals(); self._logger = logging.getLogger("Worker")

    @QtCore.Slot()
    def run(self):
        try:
            result = self.fn(*self.args, **self.kwargs)
        except Exception as e:
            self._logger.exception("Worker error")
            self.signals.error.emit(str(e))
        else:
            self.signals.result.emit(result)
        finally:
            self.signals.finished.emit()


class MainWindow(QtWidgets.QMainWindow):
    def __init__(self, preset: Optional[FilmPreset] = None):
        super().__init__()
        self.setWindowTitle(APP_TITLE)
        self.resize(1200, 800)
        self.logger = logging.getLogger("GUI")

        self.preset = preset or FilmPreset()
        self.ctx = self.preset.make_context()
        self.pipeline = self.preset.build_pipeline(self.ctx)
        self.threadpool = QtCore.QThreadPool.globalInstance()

        self.active_file: Optional[str] = None
        self._still: Optional[RasterImage] = None
        self._filtered: Optional[RasterImage] = None
        self._token = 0
        self._playback_stop: Optional[threading.Event] = None

        self.view = SplitView()
        self.panel = TunablesPanel()
        self.panel.set_values(self.preset.tunables())
        self.panel.optionsChanged.connect(self.on_options_changed)
        self._debounce = QtCore.QTimer(self); self._debounce.setSingleShot(True)
        self._debounce.timeout.connect(self._render_still)

        self.btn_reroll = QtWidgets.QPushButton("New grain")
        self.btn_reroll.clicked.connect(self._schedule_render)
        self.btn_stop = QtWidgets.QPushButton("Stop movie")
        self.btn_stop.clicked.connect(self.stop_movie)

        right = QtWidgets.QWidget(); rlay = QtWidgets.QVBoxLayout(right)
        rlay.addWidget(QtWidgets.QLabel("Look:")); rlay.addWidget(self.panel)
        rlay.addWidget(self.btn_reroll); rlay.addWidget(self.btn_stop); rlay.addStretch(1)
        central = QtWidgets.QWidget(); hlay = QtWidgets.QHBoxLayout(central)
        hlay.addWidget(self.view, 4); hlay.addWidget(right, 1)
        self.setCentralWidget(central)

        mb = self.menuBar(); m_file = mb.addMenu("&File")
        for text, slot in (("Open Image…", self._open_image), ("Open Movie…", self._open_movie),
                           ("Save Filtered…", self._save_filtered)):
            act = QtGui.QAction(text, self); act.triggered.connect(lambda _=False, s=slot: s()); m_file.addAction(act)
        m_presets = m_file.addMenu("Presets")
        act_save = QtGui.QAction("Save…", self); act_load = QtGui.QAction("Load…", self)
        act_save.triggered.connect(lambda _=False: self._save_preset())
        act_load.triggered.connect(lambda _=False: self._load_preset())
        m_presets.addAction(act_save); m_presets.addAction(act_load)
        self.statusBar().showMessage("Ready")

    # ---------- look ----------
    @safe_slot
    def on_options_changed(self, values: Dict[str, Any]):
        try:
            self.preset = self.preset.updated(**values)
        except ValueError as e:
            self.statusBar().showMessage(str(e), 4000); return
        self.pipeline = self.preset.build_pipeline(self.ctx)
        self._schedule_render()

    # ---------- stills ----------
    @safe_slot
    def _open_image(self):
        fn, _ = QtWidgets.QFileDialog.getOpenFileName(self, "Open Image", os.getcwd(), "Images (*.png *.jpg *.jpeg *.bmp *.tif *.tiff *.webp *.gif)")
        if not fn: return
        self.stop_movie()
        try:
            with load_image(fn) as img:
                self._still = pil_to_raster(downscale_for_preview(img))
        except (OSError, PipelineError) as e:
            QtWidgets.QMessageBox.warning(self, "Open Image", f"Cannot open {fn}:\n{e}"); return
        self.active_file = fn
        self.setWindowTitle(f"{APP_TITLE} - {os.path.basename(fn)}")
        self._schedule_render()

    def _schedule_render(self):
        if self._still is None: return
        self._token += 1
        self.view.set_busy(True)
        self._debounce.start(PREVIEW_DEBOUNCE_MS)

    def _render_still(self):
        if self._still is None: return
        token, still, pipeline = self._token, self._still, self.pipeline
        worker = Worker(pipeline.process, still)

        def on_result(out, tok=token):
            if tok != self._token: return
            self._filtered = out
            self.view.set_images(still, out)

        def on_error(msg: str, tok=token):
            if tok != self._token: return
            self.view.set_busy(False)
            self.statusBar().showMessage(f"Render failed: {msg}", 5000)

        worker.signals.result.connect(on_result)
        worker.signals.error.connect(on_error)
        self.threadpool.start(worker)

    @safe_slot
    def _save_filtered(self):
        if not self.active_file or self._still is None:
            QtWidgets.QMessageBox.information(self, "Save", "Open an image first."); return
        default = make_output_path(os.path.dirname(self.active_file), self.active_file)
        fn, _ = QtWidgets.QFileDialog.getSaveFileName(self, "Save Filtered", default, "PNG (*.png)")
        if not fn: return
        # full resolution, not the preview
        with load_image(self.active_file) as img:
            full = pil_to_raster(img)
        worker = Worker(lambda: save_raster(self.pipeline.process(full), fn))
        worker.signals.result.connect(lambda _: self.statusBar().showMessage(f"Saved {fn}", 4000))
        worker.signals.error.connect(lambda msg: self.statusBar().showMessage(f"Save failed: {msg}", 5000))
        self.threadpool.start(worker)

    # ---------- movies ----------
    @safe_slot
    def _open_movie(self):
        fn, _ = QtWidgets.QFileDialog.getOpenFileName(self, "Open Movie", os.getcwd(), "Movies (*.mov *.mp4 *.m4v *.avi *.mkv)")
        if not fn: return
        self.stop_movie()
        self._still = None
        source = VideoSource(fn)
        source.add_listener(lambda old, new: self.statusBar().showMessage(f"Movie {new.value}", 3000))
        if source.open() is not SourceState.READY:
            QtWidgets.QMessageBox.warning(self, "Open Movie", f"Cannot play {fn}:\n{source.error}"); return
        # each playback owns its source and stop flag; a stale worker only ever touches its own
        stop = threading.Event()
        self._playback_stop = stop

        def run_playback():
            return play(source, lambda img: self.pipeline.process(img), worker.signals.frame.emit, stop)

        def show_frame(img: RasterImage):
            if not stop.is_set(): self.view.set_frame(img)

        worker = Worker(run_playback)
        worker.signals.frame.connect(show_frame)
        worker.signals.result.connect(lambda stats: self.statusBar().showMessage(f"Playback done: {stats}", 5000))
        self.threadpool.start(worker)

    def stop_movie(self):
        if self._playback_stop is not None:
            self._playback_stop.set()
            self._playback_stop = None

    # ---------- presets ----------
    @safe_slot
    def _save_preset(self):
        fn, _ = QtWidgets.QFileDialog.getSaveFileName(self, "Save Preset", os.getcwd(), "Preset (*.json)")
        if fn: save_preset(self.preset, fn); self.statusBar().showMessage(f"Saved preset: {fn}", 4000)

    @safe_slot
    def _load_preset(self):
        fn, _ = QtWidgets.QFileDialog.getOpenFileName(self, "Load Preset", os.getcwd(), "Preset (*.json)")
        if not fn: return
        self.preset = load_preset(fn)
        self.panel.set_values(self.preset.tunables())
        self.statusBar().showMessage(f"Loaded preset: {fn}", 4000)

    def closeEvent(self, e: QtGui.QCloseEvent):
        self.stop_movie()
        self.threadpool.waitForDone(3000)
        self.ctx.close()
        super().closeEvent(e)


def main():
    setup_logging()
    install_global_exception_hooks(install_qt_handler=True)
    app = QtWidgets.QApplication(sys.argv)
    preset = load_preset(sys.argv[1]) if len(sys.argv) > 1 else None
    w = MainWindow(preset); w.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
