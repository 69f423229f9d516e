from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Protocol

import cv2
import numpy as np
from PIL import Image

from dither_core import InvalidInputError, SinkUnavailableError
from reveal import (
    BACKGROUND,
    DEFAULT_BLOCK_SIZE,
    DEFAULT_DURATION_MS,
    ArraySurface,
    BlockGrid,
    blocks_to_reveal,
    target_block_count,
)

logger = logging.getLogger(__name__)

DEFAULT_FPS = 60
DEFAULT_HOLD_MS = 100
VIDEO_SUFFIXES = {".mp4", ".avi", ".mov"}


class FrameSink(Protocol):
    def start(self, width: int, height: int, fps: float) -> None: ...

    def submit_frame(self, frame: np.ndarray) -> None: ...

    def finalize(self) -> object: ...


class Cv2VideoSink:
    """Writes RGB frames to a video container through ``cv2.VideoWriter``."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._writer: cv2.VideoWriter | None = None
        self.frames_written = 0

    def start(self, width: int, height: int, fps: float) -> None:
        ext = self.path.suffix.lower()
        if ext not in VIDEO_SUFFIXES:
            raise SinkUnavailableError(f"Unsupported video format: {ext or '(none)'}")
        if ext == ".avi":
            fourcc = cv2.VideoWriter_fourcc(*"XVID")
        else:
            fourcc = cv2.VideoWriter_fourcc(*"mp4v")
        writer = cv2.VideoWriter(str(self.path), fourcc, float(fps), (width, height))
        if not writer.isOpened():
            writer.release()
            raise SinkUnavailableError(f"Could not open output video for writing: {self.path}")
        self._writer = writer

    def submit_frame(self, frame: np.ndarray) -> None:
        if self._writer is None:
            raise SinkUnavailableError("Video sink was not started")
        self._writer.write(cv2.cvtColor(frame, cv2.COLOR_RGB2BGR))
        self.frames_written += 1

    def finalize(self) -> Path:
        if self._writer is None:
            raise SinkUnavailableError("Video sink was not started")
        self._writer.release()
        self._writer = None
        return self.path


class GifSink:
    """Collects frames and saves them as an animated GIF with Pillow."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._frames: list[Image.Image] = []
        self._frame_ms = 0
        self._started = False

    def start(self, width: int, height: int, fps: float) -> None:
        self._frames = []
        self._frame_ms = max(10, int(round(1000.0 / fps)))
        self._started = True

    def submit_frame(self, frame: np.ndarray) -> None:
        if not self._started:
            raise SinkUnavailableError("GIF sink was not started")
        self._frames.append(Image.fromarray(np.ascontiguousarray(frame)))

    def finalize(self) -> Path:
        if not self._started or not self._frames:
            raise SinkUnavailableError("No frames to write")
        first = self._frames[0]
        first.save(
            self.path,
            save_all=True,
            append_images=self._frames[1:],
            duration=self._frame_ms,
            loop=0,
        )
        self._frames = []
        self._started = False
        return self.path


def sink_for_path(path: Path | str) -> FrameSink:
    path = Path(path)
    if path.suffix.lower() == ".gif":
        return GifSink(path)
    return Cv2VideoSink(path)


class VideoExporter:
    """Renders the block reveal at a fixed frame rate into a frame sink.

    Frame ``k`` shows the reveal as it stands at ``k * 1000 / fps`` ms, using
    the same grid and block count as ``LiveRenderer``. After the last partial
    frame the fully revealed image is held for ``hold_ms`` (at least one
    frame) before the sink is finalized.
    """

    def __init__(
        self,
        image: np.ndarray,
        block_size: int = DEFAULT_BLOCK_SIZE,
        duration_ms: float = DEFAULT_DURATION_MS,
        fps: float = DEFAULT_FPS,
        hold_ms: float = DEFAULT_HOLD_MS,
        background: tuple[int, int, int] = BACKGROUND,
    ) -> None:
        if duration_ms <= 0:
            raise InvalidInputError(f"Duration must be positive, got {duration_ms}")
        if fps <= 0:
            raise InvalidInputError(f"Frame rate must be positive, got {fps}")
        if hold_ms < 0:
            raise InvalidInputError(f"Hold must be non-negative, got {hold_ms}")
        self.image = image
        self.grid = BlockGrid.for_image(image, block_size)
        self.duration_ms = float(duration_ms)
        self.fps = float(fps)
        self.reveal_frames = math.ceil(self.duration_ms * self.fps / 1000.0)
        self.hold_frames = max(1, math.ceil(hold_ms * self.fps / 1000.0))
        self._surface = ArraySurface(background)
        self._sink: FrameSink | None = None
        self._frame_index = 0
        self.revealed_count = 0

    @property
    def frame_count(self) -> int:
        return self.reveal_frames + self.hold_frames

    @property
    def frames_emitted(self) -> int:
        return self._frame_index

    @property
    def done(self) -> bool:
        return self._frame_index >= self.frame_count

    def timestamp_ms(self, frame_index: int) -> float:
        return frame_index * 1000.0 / self.fps

    def start(self, sink: FrameSink) -> None:
        sink.start(self.grid.width, self.grid.height, self.fps)
        self._sink = sink
        self._surface.begin(self.grid.width, self.grid.height)
        self._frame_index = 0
        self.revealed_count = 0

    def step(self) -> bool:
        """Emit the next frame. Returns False once every frame is out."""
        if self._sink is None:
            raise SinkUnavailableError("Exporter was not started")
        if self.done:
            return False
        if self._frame_index < self.reveal_frames:
            elapsed = self.timestamp_ms(self._frame_index)
            target = target_block_count(elapsed, self.duration_ms, self.grid.total_blocks)
        else:
            target = self.grid.total_blocks
        for rect in blocks_to_reveal(self.grid, self.revealed_count, target):
            self._surface.blit(self.image, rect)
        self.revealed_count = target
        self._sink.submit_frame(self._surface.snapshot())
        self._frame_index += 1
        return not self.done

    def finish(self) -> object:
        if self._sink is None:
            raise SinkUnavailableError("Exporter was not started")
        if not self.done:
            raise InvalidInputError(f"Export stopped after {self._frame_index}/{self.frame_count} frames")
        sink, self._sink = self._sink, None
        artifact = sink.finalize()
        logger.info(
            "Exported %d frames (%d blocks) at %.0f fps",
            self.frame_count,
            self.grid.total_blocks,
            self.fps,
        )
        return artifact

    def run(self, sink: FrameSink) -> object:
        self.start(sink)
        while self.step():
            pass
        return self.finish()
