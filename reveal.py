from __future__ import annotations

import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np

from dither_core import InvalidInputError, SinkUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MS = 6000
DEFAULT_BLOCK_SIZE = 8
TICK_INTERVAL_MS = 16
BACKGROUND = (0, 0, 0)


@dataclass(frozen=True)
class BlockRect:
    index: int
    x: int
    y: int
    w: int
    h: int


@dataclass(frozen=True)
class BlockGrid:
    """Row-major partition of a ``width`` x ``height`` image into square blocks.

    Blocks on the right and bottom edges are clipped to the image.
    """

    width: int
    height: int
    block_size: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise InvalidInputError(f"Image must be non-empty, got {self.width}x{self.height}")
        if self.block_size <= 0:
            raise InvalidInputError(f"Block size must be positive, got {self.block_size}")

    @classmethod
    def for_image(cls, image: np.ndarray, block_size: int) -> "BlockGrid":
        height, width = image.shape[:2]
        return cls(int(width), int(height), int(block_size))

    @property
    def blocks_x(self) -> int:
        return -(-self.width // self.block_size)

    @property
    def blocks_y(self) -> int:
        return -(-self.height // self.block_size)

    @property
    def total_blocks(self) -> int:
        return self.blocks_x * self.blocks_y

    def rect(self, index: int) -> BlockRect:
        if not 0 <= index < self.total_blocks:
            raise InvalidInputError(f"Block index {index} outside [0, {self.total_blocks})")
        bx = index % self.blocks_x
        by = index // self.blocks_x
        x = bx * self.block_size
        y = by * self.block_size
        return BlockRect(index, x, y, min(self.block_size, self.width - x), min(self.block_size, self.height - y))


def target_block_count(elapsed_ms: float, duration_ms: float, total_blocks: int) -> int:
    """Number of blocks that should be visible ``elapsed_ms`` into a reveal."""
    if duration_ms <= 0:
        raise InvalidInputError(f"Duration must be positive, got {duration_ms}")
    if total_blocks < 0:
        raise InvalidInputError(f"Total blocks must be non-negative, got {total_blocks}")
    if elapsed_ms >= duration_ms:
        return total_blocks
    if elapsed_ms <= 0:
        return 0
    return min(total_blocks, math.floor(total_blocks * elapsed_ms / duration_ms))


def blocks_to_reveal(grid: BlockGrid, previously_revealed: int, target: int) -> list[BlockRect]:
    if previously_revealed < 0 or target > grid.total_blocks:
        raise InvalidInputError(
            f"Reveal range [{previously_revealed}, {target}) outside [0, {grid.total_blocks}]"
        )
    if target < previously_revealed:
        raise InvalidInputError(f"Revealed count cannot go backwards ({previously_revealed} -> {target})")
    return [grid.rect(i) for i in range(previously_revealed, target)]


class DisplaySurface(Protocol):
    def begin(self, width: int, height: int) -> None: ...

    def blit(self, source: np.ndarray, rect: BlockRect) -> None: ...

    def present(self) -> None: ...


class ArraySurface:
    """In-memory RGB canvas that blocks are copied onto."""

    def __init__(self, background: tuple[int, int, int] = BACKGROUND) -> None:
        self.background = background
        self.canvas: np.ndarray | None = None
        self.presented = 0

    def begin(self, width: int, height: int) -> None:
        self.canvas = np.empty((height, width, 3), dtype=np.uint8)
        self.canvas[:, :] = self.background

    def blit(self, source: np.ndarray, rect: BlockRect) -> None:
        if self.canvas is None:
            raise SinkUnavailableError("Surface was not started")
        rows = slice(rect.y, rect.y + rect.h)
        cols = slice(rect.x, rect.x + rect.w)
        self.canvas[rows, cols] = source[rows, cols]

    def present(self) -> None:
        self.presented += 1

    def snapshot(self) -> np.ndarray:
        if self.canvas is None:
            raise SinkUnavailableError("Surface was not started")
        return self.canvas.copy()


@dataclass
class RevealState:
    start_ms: float
    duration_ms: float
    total_blocks: int
    revealed_count: int = 0

    @property
    def complete(self) -> bool:
        return self.revealed_count >= self.total_blocks


class RevealPhase(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"


class PendingTick(Protocol):
    def cancel(self) -> None: ...


# schedule(delay_ms, callback) -> handle that can cancel the pending call.
TickScheduler = Callable[[int, Callable[[], None]], PendingTick]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class LiveRenderer:
    """Progressive block reveal of a quantized image onto a display surface.

    The renderer is a state machine advanced by ``tick(now_ms)``. When a
    ``schedule`` hook is given it re-arms itself after every tick until the
    reveal completes; without one the caller drives ticks directly.
    """

    def __init__(
        self,
        surface: DisplaySurface,
        schedule: TickScheduler | None = None,
        clock: Callable[[], float] = monotonic_ms,
        tick_interval_ms: int = TICK_INTERVAL_MS,
    ) -> None:
        self.surface = surface
        self._schedule = schedule
        self._clock = clock
        self._tick_interval_ms = max(1, int(tick_interval_ms))
        self._pending: PendingTick | None = None
        self._generation = 0
        self._image: np.ndarray | None = None
        self._grid: BlockGrid | None = None
        self.state: RevealState | None = None
        self.phase = RevealPhase.IDLE

    @property
    def is_active(self) -> bool:
        return self.phase is RevealPhase.RUNNING

    @property
    def grid(self) -> BlockGrid | None:
        return self._grid

    def start(
        self,
        image: np.ndarray,
        block_size: int = DEFAULT_BLOCK_SIZE,
        duration_ms: float = DEFAULT_DURATION_MS,
        now_ms: float | None = None,
    ) -> list[BlockRect]:
        if duration_ms <= 0:
            raise InvalidInputError(f"Duration must be positive, got {duration_ms}")
        grid = BlockGrid.for_image(image, block_size)
        self.cancel()

        self.surface.begin(grid.width, grid.height)
        self._generation += 1
        self._image = image
        self._grid = grid
        start = self._clock() if now_ms is None else now_ms
        self.state = RevealState(start, float(duration_ms), grid.total_blocks)
        self.phase = RevealPhase.RUNNING
        logger.debug(
            "Reveal started: %d blocks of %dpx over %.0f ms",
            grid.total_blocks,
            grid.block_size,
            duration_ms,
        )
        self.surface.present()
        return self.tick(start)

    def tick(self, now_ms: float | None = None) -> list[BlockRect]:
        if self.phase is not RevealPhase.RUNNING or self.state is None:
            return []
        state = self.state
        now = self._clock() if now_ms is None else now_ms
        target = target_block_count(now - state.start_ms, state.duration_ms, state.total_blocks)
        # Never move backwards, even if the clock does.
        target = max(target, state.revealed_count)
        rects = blocks_to_reveal(self._grid, state.revealed_count, target)
        for rect in rects:
            self.surface.blit(self._image, rect)
        state.revealed_count = target
        if rects:
            self.surface.present()

        if now - state.start_ms >= state.duration_ms:
            self._finish()
        elif self._schedule is not None:
            generation = self._generation
            self._pending = self._schedule(self._tick_interval_ms, lambda: self._on_scheduled(generation))
        return rects

    def cancel(self) -> None:
        """Stop the reveal; blocks already shown stay on the surface."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self.phase is RevealPhase.RUNNING:
            logger.debug("Reveal cancelled at %d blocks", self.state.revealed_count if self.state else 0)
        self._generation += 1
        self.state = None
        self._image = None
        self.phase = RevealPhase.IDLE

    def _on_scheduled(self, generation: int) -> None:
        self._pending = None
        if generation != self._generation:
            return
        self.tick()

    def _finish(self) -> None:
        self._pending = None
        self.phase = RevealPhase.DONE
        self._image = None
        logger.debug("Reveal finished")
