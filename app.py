from __future__ import annotations

import logging
import shutil
import sys
import threading
import time
from pathlib import Path
from typing import Callable

import numpy as np
from PIL import Image, ImageOps
from PySide6.QtCore import QSize, Qt, QTimer, Signal
from PySide6.QtGui import QAction, QImage, QPixmap
from PySide6.QtWidgets import (
    QApplication,
    QComboBox,
    QFileDialog,
    QFrame,
    QGridLayout,
    QHBoxLayout,
    QLabel,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QScrollArea,
    QSizePolicy,
    QSlider,
    QVBoxLayout,
    QWidget,
)

from critique import critique_enabled, describe_image
from dither_core import (
    DEFAULT_STRENGTH,
    InvalidInputError,
    SinkUnavailableError,
    dither_image,
    prepare_source,
    to_image,
)
from palettes import Palette, PaletteCatalog, load_palette_library
from reveal import DEFAULT_BLOCK_SIZE, DEFAULT_DURATION_MS, ArraySurface, LiveRenderer
from video_export import VideoExporter, sink_for_path

logger = logging.getLogger(__name__)

APP_NAME = "Retrovision"
APP_VERSION = "1.0.0"
UPDATE_DEBOUNCE_MS = 150


def array_to_qimage(pixels: np.ndarray) -> QImage:
    data = np.ascontiguousarray(pixels, dtype=np.uint8)
    height, width = data.shape[:2]
    qimage = QImage(data.data, width, height, width * 3, QImage.Format_RGB888)
    return qimage.copy()


class QtTickScheduler:
    """Single-shot QTimer behind ``LiveRenderer``'s scheduling hook."""

    def __init__(self, parent: QWidget) -> None:
        self._timer = QTimer(parent)
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(self._fire)
        self._callback: Callable[[], None] | None = None

    def __call__(self, delay_ms: int, callback: Callable[[], None]) -> "QtTickScheduler":
        self._callback = callback
        self._timer.start(delay_ms)
        return self

    def cancel(self) -> None:
        self._timer.stop()
        self._callback = None

    def _fire(self) -> None:
        callback, self._callback = self._callback, None
        if callback is not None:
            callback()


class PreviewSurface(ArraySurface):
    def __init__(self, on_present: Callable[[np.ndarray], None]) -> None:
        super().__init__()
        self._on_present = on_present

    def present(self) -> None:
        super().present()
        if self.canvas is not None:
            self._on_present(self.canvas)


class RetroWindow(QMainWindow):
    critique_ready = Signal(int, str)

    def __init__(self) -> None:
        super().__init__()
        self.setWindowTitle(f"{APP_NAME} v{APP_VERSION}")
        self.resize(1200, 760)
        self.setStyleSheet(self._style_sheet())

        base_dir = Path(__file__).resolve().parent
        self.palette_dir = base_dir / "palettes"
        self.catalog: PaletteCatalog = load_palette_library(self.palette_dir)

        self.original_image: Image.Image | None = None
        self.processed: np.ndarray | None = None
        self._critique_request = 0

        self._update_timer = QTimer(self)
        self._update_timer.setSingleShot(True)
        self._update_timer.timeout.connect(self.update_preview)

        self.surface = PreviewSurface(self._render_array)
        self.renderer = LiveRenderer(self.surface, schedule=QtTickScheduler(self))
        self.critique_ready.connect(self._finish_critique)

        self._build_menu()

        root = QWidget()
        self.setCentralWidget(root)
        main_layout = QHBoxLayout(root)
        main_layout.setContentsMargins(12, 12, 12, 12)
        main_layout.setSpacing(12)

        self.preview_area = self._build_preview()
        main_layout.addWidget(self.preview_area, 1)

        controls = self._build_controls()
        self.control_scroll = QScrollArea()
        self.control_scroll.setWidget(controls)
        self.control_scroll.setWidgetResizable(True)
        self.control_scroll.setFrameShape(QFrame.NoFrame)
        self.control_scroll.setHorizontalScrollBarPolicy(Qt.ScrollBarAlwaysOff)
        self.control_scroll.setMinimumWidth(320)
        self.control_scroll.setMaximumWidth(380)
        main_layout.addWidget(self.control_scroll, 0)

        self._update_actions()

    def _style_sheet(self) -> str:
        return """
        QMainWindow { background: #0a0b0d; }
        QWidget { color: #d9dadb; font-family: "Consolas", "Courier New", monospace; font-size: 10pt; }
        #sidebar {
            background: #121418;
            border: 1px solid #2a2e34;
            border-radius: 8px;
        }
        QLabel#sectionTitle { color: #6f7d8a; font-size: 8.5pt; letter-spacing: 1px; }
        QLabel#logo { font-size: 17pt; font-weight: 700; letter-spacing: 2px; color: #4ade80; }
        QLabel#critique { color: #86efac; background: #0f1a12; border: 1px solid #1f3a26; padding: 8px; }

        QPushButton {
            background: #1f2329;
            border: 1px solid #323842;
            padding: 7px 12px;
            border-radius: 6px;
        }
        QPushButton:hover { background: #262c34; border-color: #4ade80; }
        QPushButton:disabled { color: #6f7680; background: #171a1f; border-color: #242a33; }

        QComboBox {
            background: #1f2329;
            border: 1px solid #323842;
            padding: 5px 10px;
            border-radius: 6px;
        }

        QSlider::groove:horizontal { height: 6px; background: #262b33; border-radius: 3px; }
        QSlider::handle:horizontal {
            width: 14px;
            margin: -4px 0;
            background: #4ade80;
            border-radius: 7px;
        }

        QScrollArea { background: #0b0c0f; border: 1px solid #232833; border-radius: 8px; }
        QFrame#divider { background: #2a2f36; max-height: 1px; }
        """

    def _build_menu(self) -> None:
        menu_bar = self.menuBar()
        file_menu = menu_bar.addMenu("File")
        help_menu = menu_bar.addMenu("Help")

        import_action = QAction("Import", self)
        self.export_image_action = QAction("Save PNG", self)
        self.export_video_action = QAction("Export Loading Video", self)
        import_palette_action = QAction("Import Palette", self)
        quit_action = QAction("Quit", self)
        about_action = QAction("About", self)

        import_action.triggered.connect(self.import_image)
        self.export_image_action.triggered.connect(self.export_image)
        self.export_video_action.triggered.connect(self.export_video)
        import_palette_action.triggered.connect(self.import_palette)
        quit_action.triggered.connect(self.close)
        about_action.triggered.connect(self.show_about)

        file_menu.addAction(import_action)
        export_menu = file_menu.addMenu("Export")
        export_menu.addAction(self.export_image_action)
        export_menu.addAction(self.export_video_action)
        file_menu.addAction(import_palette_action)
        file_menu.addSeparator()
        file_menu.addAction(quit_action)
        help_menu.addAction(about_action)

    def _build_preview(self) -> QScrollArea:
        self.image_label = QLabel("Import an image to preview")
        self.image_label.setAlignment(Qt.AlignCenter)
        self.image_label.setMinimumSize(500, 400)
        self.image_label.setSizePolicy(QSizePolicy.Fixed, QSizePolicy.Fixed)
        self.image_label.setStyleSheet(
            "QLabel { background: #000000; color: #4ade80; border: 1px solid #242424; }"
        )

        area = QScrollArea()
        area.setWidget(self.image_label)
        area.setWidgetResizable(False)
        area.setAlignment(Qt.AlignCenter)
        area.setFrameShape(QFrame.NoFrame)
        return area

    def _build_controls(self) -> QWidget:
        panel = QWidget()
        panel.setObjectName("sidebar")
        layout = QVBoxLayout(panel)
        layout.setContentsMargins(16, 16, 16, 16)
        layout.setSpacing(10)

        logo = QLabel("RETROVISION")
        logo.setObjectName("logo")
        logo.setAlignment(Qt.AlignCenter)
        layout.addWidget(logo)

        top_buttons = QHBoxLayout()
        self.import_button = QPushButton("Import")
        self.export_button = QPushButton("Save PNG")
        top_buttons.addWidget(self.import_button)
        top_buttons.addWidget(self.export_button)
        layout.addLayout(top_buttons)

        layout.addWidget(self._divider())

        layout.addWidget(self._section_title("Target System"))
        self.palette_combo = QComboBox()
        self._populate_palette_combo()
        layout.addWidget(self.palette_combo)

        self.palette_swatch_widget = QWidget()
        self.palette_swatch_layout = QGridLayout(self.palette_swatch_widget)
        self.palette_swatch_layout.setContentsMargins(0, 0, 0, 0)
        self.palette_swatch_layout.setHorizontalSpacing(4)
        self.palette_swatch_layout.setVerticalSpacing(4)
        layout.addWidget(self.palette_swatch_widget)

        self.palette_description = QLabel()
        self.palette_description.setObjectName("sectionTitle")
        layout.addWidget(self.palette_description)

        layout.addWidget(self._section_title("Dithering"))
        self.strength_slider, self.strength_value = self._make_slider(
            0, 12, int(DEFAULT_STRENGTH * 10), lambda v: f"{v / 10:.1f}"
        )
        self._add_slider(layout, self.strength_slider, self.strength_value)

        layout.addWidget(self._section_title("Resolution Scale"))
        self.scale_slider, self.scale_value = self._make_slider(1, 6, 2, lambda v: f"{v / 2:.1f}x")
        self._add_slider(layout, self.scale_slider, self.scale_value)

        layout.addWidget(self._divider())

        layout.addWidget(self._section_title("Loading Time"))
        self.duration_slider, self.duration_value = self._make_slider(
            1, 30, DEFAULT_DURATION_MS // 1000, lambda v: f"{v}s"
        )
        self._add_slider(layout, self.duration_slider, self.duration_value)

        layout.addWidget(self._section_title("Block Size"))
        self.block_slider, self.block_value = self._make_slider(1, 16, DEFAULT_BLOCK_SIZE // 4, lambda v: f"{v * 4}px")
        self._add_slider(layout, self.block_slider, self.block_value)

        reveal_buttons = QHBoxLayout()
        self.play_button = QPushButton("Play Loading")
        self.stop_button = QPushButton("Stop")
        reveal_buttons.addWidget(self.play_button)
        reveal_buttons.addWidget(self.stop_button)
        layout.addLayout(reveal_buttons)

        self.video_button = QPushButton("Export Loading Video")
        layout.addWidget(self.video_button)

        layout.addWidget(self._divider())

        self.analyze_button = QPushButton("Analyze")
        layout.addWidget(self.analyze_button)
        self.critique_label = QLabel("")
        self.critique_label.setObjectName("critique")
        self.critique_label.setWordWrap(True)
        self.critique_label.hide()
        layout.addWidget(self.critique_label)
        layout.addStretch(1)

        self.import_button.clicked.connect(self.import_image)
        self.export_button.clicked.connect(self.export_image)
        self.play_button.clicked.connect(self.play_reveal)
        self.stop_button.clicked.connect(self.stop_reveal)
        self.video_button.clicked.connect(self.export_video)
        self.analyze_button.clicked.connect(self.analyze_image)

        self.palette_combo.currentIndexChanged.connect(self._update_palette_swatches)
        self.palette_combo.currentIndexChanged.connect(self.on_conversion_changed)
        for slider in [self.strength_slider, self.scale_slider]:
            slider.valueChanged.connect(self.on_conversion_changed)
        for slider in [self.duration_slider, self.block_slider]:
            slider.valueChanged.connect(self.on_reveal_changed)

        self._update_palette_swatches()
        return panel

    def _section_title(self, text: str) -> QLabel:
        label = QLabel(text.upper())
        label.setObjectName("sectionTitle")
        return label

    def _divider(self) -> QFrame:
        line = QFrame()
        line.setObjectName("divider")
        line.setFrameShape(QFrame.HLine)
        line.setFrameShadow(QFrame.Plain)
        return line

    def _make_slider(self, minimum: int, maximum: int, value: int, fmt: Callable[[int], str]):
        slider = QSlider(Qt.Horizontal)
        slider.setMinimum(minimum)
        slider.setMaximum(maximum)
        slider.setValue(value)
        slider.setSingleStep(1)
        value_label = QLabel(fmt(value))
        value_label.setAlignment(Qt.AlignRight | Qt.AlignVCenter)
        value_label.setMinimumWidth(48)
        slider.valueChanged.connect(lambda val: value_label.setText(fmt(val)))
        return slider, value_label

    def _add_slider(self, layout: QVBoxLayout, slider: QSlider, label: QLabel) -> None:
        row = QHBoxLayout()
        row.addWidget(slider, 1)
        row.addWidget(label, 0)
        layout.addLayout(row)

    def _populate_palette_combo(self, select_key: str | None = None) -> None:
        current = select_key or self.palette_combo.currentData()
        self.palette_combo.blockSignals(True)
        self.palette_combo.clear()
        for category in self.catalog.categories():
            for palette in self.catalog.in_category(category):
                label = palette.name if category == "Built-in" else f"{palette.name} ({category})"
                self.palette_combo.addItem(label, palette.key)
        index = self.palette_combo.findData(current) if current else -1
        self.palette_combo.setCurrentIndex(max(0, index))
        self.palette_combo.blockSignals(False)

    def _selected_palette(self) -> Palette:
        key = self.palette_combo.currentData()
        if key in self.catalog:
            return self.catalog[key]
        return next(iter(self.catalog.values()))

    def _update_palette_swatches(self) -> None:
        palette = self._selected_palette()
        max_colors = 32
        display_colors = palette.colors[:max_colors]

        while self.palette_swatch_layout.count():
            item = self.palette_swatch_layout.takeAt(0)
            widget = item.widget()
            if widget:
                widget.deleteLater()

        columns = 8
        for idx, color in enumerate(display_colors):
            swatch = QLabel()
            swatch.setFixedSize(14, 14)
            swatch.setStyleSheet(
                f"background-color: rgb({color[0]}, {color[1]}, {color[2]}); border: 1px solid #111;"
            )
            swatch.setToolTip(f"rgb({color[0]}, {color[1]}, {color[2]})")
            self.palette_swatch_layout.addWidget(swatch, idx // columns, idx % columns)

        if len(palette.colors) > max_colors:
            label = QLabel(f"+{len(palette.colors) - max_colors} more")
            self.palette_swatch_layout.addWidget(label, (len(display_colors) // columns) + 1, 0, 1, columns)
        self.palette_description.setText(palette.description)

    def _strength(self) -> float:
        return self.strength_slider.value() / 10.0

    def _resolution_scale(self) -> float:
        return self.scale_slider.value() / 2.0

    def _duration_ms(self) -> int:
        return self.duration_slider.value() * 1000

    def _block_size(self) -> int:
        return self.block_slider.value() * 4

    def _update_actions(self) -> None:
        has_result = self.processed is not None
        self.export_image_action.setEnabled(has_result)
        self.export_video_action.setEnabled(has_result)
        self.export_button.setEnabled(has_result)
        self.video_button.setEnabled(has_result)
        self.play_button.setEnabled(has_result)
        self.stop_button.setEnabled(self.renderer.is_active)
        self.analyze_button.setEnabled(has_result and critique_enabled())

    def on_conversion_changed(self) -> None:
        # Source, palette, strength or scale changes make the buffer stale.
        self.renderer.cancel()
        self.processed = None
        self._critique_request += 1
        self.critique_label.hide()
        self._update_actions()
        self.schedule_update()

    def on_reveal_changed(self) -> None:
        if self.renderer.is_active:
            self.stop_reveal()

    def schedule_update(self) -> None:
        if self.original_image is None:
            return
        self._update_timer.start(UPDATE_DEBOUNCE_MS)

    def update_preview(self) -> None:
        if self.original_image is None:
            return
        palette = self._selected_palette()
        try:
            source = prepare_source(self.original_image, palette, self._resolution_scale())
            self.processed = dither_image(source, palette, self._strength())
        except InvalidInputError as exc:
            QMessageBox.critical(self, "Conversion Failed", f"Could not convert image:\n{exc}")
            return
        self._render_array(self.processed)
        self._update_actions()

    def _render_array(self, pixels: np.ndarray) -> None:
        pixmap = QPixmap.fromImage(array_to_qimage(pixels))
        viewport = self.preview_area.viewport().size()
        if viewport.width() <= 0 or viewport.height() <= 0:
            viewport = QSize(800, 600)
        scaled = pixmap.scaled(viewport, Qt.KeepAspectRatio, Qt.FastTransformation)
        self.image_label.setPixmap(scaled)
        self.image_label.setFixedSize(scaled.size())
        self.image_label.setText("")

    def play_reveal(self) -> None:
        if self.processed is None:
            QMessageBox.information(self, "Play", "Convert an image first.")
            return
        try:
            self.renderer.start(self.processed, self._block_size(), self._duration_ms())
        except (InvalidInputError, SinkUnavailableError) as exc:
            QMessageBox.critical(self, "Play Failed", f"Could not start loading animation:\n{exc}")
        self._update_actions()
        self._watch_reveal()

    def _watch_reveal(self) -> None:
        if self.renderer.is_active:
            QTimer.singleShot(250, self._watch_reveal)
        else:
            self._update_actions()

    def stop_reveal(self) -> None:
        self.renderer.cancel()
        if self.processed is not None:
            self._render_array(self.processed)
        self._update_actions()

    def import_image(self) -> None:
        file_path, _ = QFileDialog.getOpenFileName(
            self,
            "Import Image",
            "",
            "Images (*.png *.jpg *.jpeg *.bmp *.tif *.tiff *.webp *.gif)",
        )
        if not file_path:
            return
        try:
            image = Image.open(file_path)
            image = ImageOps.exif_transpose(image)
            self.original_image = image.convert("RGB")
        except Exception as exc:
            QMessageBox.critical(self, "Import Failed", f"Could not open image:\n{exc}")
            return
        self.on_conversion_changed()

    def export_image(self) -> None:
        if self.processed is None:
            QMessageBox.information(self, "Export", "No processed image to export yet.")
            return
        default_name = f"retro-{self._selected_palette().key.replace('/', '-')}-{int(time.time() * 1000)}.png"
        file_path, _ = QFileDialog.getSaveFileName(self, "Save PNG", default_name, "PNG (*.png)")
        if not file_path:
            return
        if Path(file_path).suffix.lower() != ".png":
            file_path = f"{file_path}.png"
        try:
            to_image(self.processed).save(file_path)
        except Exception as exc:
            QMessageBox.critical(self, "Export Failed", f"Could not save image:\n{exc}")

    def export_video(self) -> None:
        if self.processed is None:
            QMessageBox.information(self, "Export", "No processed image to export yet.")
            return
        seconds = self.duration_slider.value()
        default_name = f"retro-load-{self._selected_palette().key.replace('/', '-')}-{seconds}s.mp4"
        file_path, _ = QFileDialog.getSaveFileName(
            self,
            "Export Loading Video",
            default_name,
            "MP4 (*.mp4);;AVI (*.avi);;MOV (*.mov);;GIF (*.gif)",
        )
        if not file_path:
            return
        if Path(file_path).suffix.lower() not in {".mp4", ".avi", ".mov", ".gif"}:
            file_path = f"{file_path}.mp4"
        QApplication.setOverrideCursor(Qt.WaitCursor)
        try:
            exporter = VideoExporter(self.processed, self._block_size(), self._duration_ms())
            exporter.run(sink_for_path(file_path))
        except SinkUnavailableError as exc:
            QMessageBox.critical(self, "Export Failed", f"Video capture is unavailable:\n{exc}")
        except Exception as exc:
            logger.exception("Video export failed")
            QMessageBox.critical(self, "Export Failed", f"Could not save video:\n{exc}")
        finally:
            QApplication.restoreOverrideCursor()

    def import_palette(self) -> None:
        file_path, _ = QFileDialog.getOpenFileName(
            self,
            "Import Palette",
            "",
            "Palette Files (*.gpl *.hex *.txt)",
        )
        if not file_path:
            return
        source = Path(file_path)
        dest_dir = self.palette_dir / "Imported"
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / source.name
        counter = 1
        while dest.exists():
            dest = dest_dir / f"{source.stem}_{counter}{source.suffix}"
            counter += 1
        try:
            shutil.copy2(source, dest)
        except OSError as exc:
            QMessageBox.critical(self, "Import Failed", f"Could not import palette:\n{exc}")
            return

        self.catalog = load_palette_library(self.palette_dir)
        key = f"imported/{dest.stem.lower()}"
        if key not in self.catalog:
            QMessageBox.warning(self, "Import Failed", f"No colors found in {source.name}")
            return
        self._populate_palette_combo(select_key=key)
        self._update_palette_swatches()
        self.on_conversion_changed()

    def analyze_image(self) -> None:
        if self.processed is None:
            return
        self._critique_request += 1
        request_id = self._critique_request
        pixels = self.processed
        system_name = self._selected_palette().name
        self.critique_label.setText("Analyzing...")
        self.critique_label.show()
        self.analyze_button.setEnabled(False)

        def worker() -> None:
            text = describe_image(pixels, system_name)
            self.critique_ready.emit(request_id, text)

        threading.Thread(target=worker, daemon=True).start()

    def _finish_critique(self, request_id: int, text: str) -> None:
        if request_id != self._critique_request:
            return
        self.critique_label.setText(text)
        self._update_actions()

    def show_about(self) -> None:
        QMessageBox.information(self, "About", f"{APP_NAME}\nVersion {APP_VERSION}")

    def resizeEvent(self, event) -> None:
        super().resizeEvent(event)
        if self.renderer.is_active and self.surface.canvas is not None:
            self._render_array(self.surface.canvas)
        elif self.processed is not None:
            self._render_array(self.processed)

    def closeEvent(self, event) -> None:
        self.renderer.cancel()
        super().closeEvent(event)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = QApplication(sys.argv)
    window = RetroWindow()
    window.show()
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
