import numpy as np
import pytest

from dither_core import InvalidInputError, SinkUnavailableError
from reveal import (
    ArraySurface,
    BlockGrid,
    BlockRect,
    LiveRenderer,
    RevealPhase,
    blocks_to_reveal,
    target_block_count,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeScheduler:
    """Collects scheduled callbacks instead of running them on a timer."""

    def __init__(self) -> None:
        self.pending: list["FakeTick"] = []

    def __call__(self, delay_ms, callback) -> "FakeTick":
        tick = FakeTick(delay_ms, callback)
        self.pending.append(tick)
        return tick

    def run_next(self) -> None:
        tick = self.pending.pop(0)
        if not tick.cancelled:
            tick.callback()


class FakeTick:
    def __init__(self, delay_ms, callback) -> None:
        self.delay_ms = delay_ms
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class RecordingSurface(ArraySurface):
    def __init__(self) -> None:
        super().__init__()
        self.blitted: list[int] = []

    def blit(self, source, rect) -> None:
        super().blit(source, rect)
        self.blitted.append(rect.index)


class BrokenSurface(ArraySurface):
    def begin(self, width, height) -> None:
        raise SinkUnavailableError("no display")


def _image(width: int, height: int) -> np.ndarray:
    rng = np.random.default_rng(width * 100 + height)
    return rng.integers(1, 256, size=(height, width, 3), dtype=np.uint8)


class TestBlockGrid:
    def test_clipped_edge_block(self) -> None:
        grid = BlockGrid(17, 10, 8)
        assert (grid.blocks_x, grid.blocks_y, grid.total_blocks) == (3, 2, 6)
        assert grid.rect(2) == BlockRect(2, 16, 0, 1, 8)
        assert grid.rect(3) == BlockRect(3, 0, 8, 8, 2)
        assert grid.rect(5) == BlockRect(5, 16, 8, 1, 2)

    def test_exact_fit(self) -> None:
        grid = BlockGrid(16, 16, 8)
        assert grid.total_blocks == 4
        assert grid.rect(3) == BlockRect(3, 8, 8, 8, 8)

    def test_blocks_tile_the_image(self) -> None:
        grid = BlockGrid(23, 11, 4)
        covered = np.zeros((11, 23), dtype=np.int32)
        for i in range(grid.total_blocks):
            r = grid.rect(i)
            covered[r.y:r.y + r.h, r.x:r.x + r.w] += 1
        assert (covered == 1).all()

    def test_for_image(self) -> None:
        grid = BlockGrid.for_image(_image(17, 10), 8)
        assert (grid.width, grid.height) == (17, 10)

    @pytest.mark.parametrize("args", [(0, 10, 8), (10, 0, 8), (10, 10, 0), (10, 10, -4)])
    def test_rejects_invalid(self, args) -> None:
        with pytest.raises(InvalidInputError):
            BlockGrid(*args)

    def test_rejects_index_outside_grid(self) -> None:
        with pytest.raises(InvalidInputError):
            BlockGrid(17, 10, 8).rect(6)


class TestScheduler:
    def test_endpoints(self) -> None:
        assert target_block_count(0, 6000, 100) == 0
        assert target_block_count(6000, 6000, 100) == 100
        assert target_block_count(9000, 6000, 100) == 100
        assert target_block_count(-50, 6000, 100) == 0

    def test_floor(self) -> None:
        assert target_block_count(59, 6000, 100) == 0
        assert target_block_count(60, 6000, 100) == 1
        assert target_block_count(1740, 6000, 100) == 29
        assert target_block_count(5999, 6000, 100) == 99

    def test_monotonic(self) -> None:
        counts = [target_block_count(t, 1000, 37) for t in range(0, 1101, 7)]
        assert counts == sorted(counts)
        assert counts[-1] == 37

    def test_rejects_non_positive_duration(self) -> None:
        with pytest.raises(InvalidInputError):
            target_block_count(10, 0, 5)

    def test_blocks_to_reveal_range(self) -> None:
        grid = BlockGrid(17, 10, 8)
        assert [r.index for r in blocks_to_reveal(grid, 2, 5)] == [2, 3, 4]
        assert blocks_to_reveal(grid, 4, 4) == []

    def test_blocks_to_reveal_rejects_backwards(self) -> None:
        with pytest.raises(InvalidInputError):
            blocks_to_reveal(BlockGrid(17, 10, 8), 4, 3)

    def test_blocks_to_reveal_rejects_overflow(self) -> None:
        with pytest.raises(InvalidInputError):
            blocks_to_reveal(BlockGrid(17, 10, 8), 0, 7)

    @pytest.mark.parametrize("ticks", [10, 3, 1, 97])
    def test_sampling_granularity_does_not_change_final_set(self, ticks) -> None:
        grid = BlockGrid(80, 80, 8)
        assert grid.total_blocks == 100
        revealed: list[int] = []
        count = 0
        for step in range(1, ticks + 1):
            target = target_block_count(6000 * step / ticks, 6000, grid.total_blocks)
            revealed.extend(r.index for r in blocks_to_reveal(grid, count, target))
            count = target
        assert revealed == list(range(100))


class TestLiveRenderer:
    def test_manual_ticks_reveal_every_block_once(self) -> None:
        image = _image(80, 80)
        surface = RecordingSurface()
        clock = FakeClock(1000.0)
        renderer = LiveRenderer(surface, clock=clock)
        assert renderer.start(image, block_size=8, duration_ms=6000) == []
        assert renderer.phase is RevealPhase.RUNNING

        for t in (1600.0, 3000.0, 3000.0, 6500.0, 7000.0):
            renderer.tick(t)
        assert renderer.phase is RevealPhase.DONE
        assert surface.blitted == list(range(100))
        assert (surface.snapshot() == image).all()
        assert renderer.tick(8000.0) == []

    def test_different_tick_rates_same_result(self) -> None:
        image = _image(80, 80)
        results = []
        for ticks in (10, 3):
            surface = RecordingSurface()
            renderer = LiveRenderer(surface, clock=FakeClock(0.0))
            renderer.start(image, 8, 6000)
            partials = []
            for step in range(1, ticks + 1):
                renderer.tick(6000 * step / ticks)
                partials.append(renderer.state.revealed_count)
            results.append((surface.blitted, partials))
        assert results[0][0] == results[1][0] == list(range(100))
        assert results[0][1] != results[1][1]

    def test_partial_reveal_leaves_background(self) -> None:
        image = _image(16, 8)
        surface = ArraySurface()
        renderer = LiveRenderer(surface, clock=FakeClock(0.0))
        renderer.start(image, 8, 1000)
        rects = renderer.tick(500.0)
        assert [r.index for r in rects] == [0]
        canvas = surface.snapshot()
        assert (canvas[:, :8] == image[:, :8]).all()
        assert (canvas[:, 8:] == 0).all()

    def test_schedules_until_done(self) -> None:
        scheduler = FakeScheduler()
        clock = FakeClock(0.0)
        surface = RecordingSurface()
        renderer = LiveRenderer(surface, schedule=scheduler, clock=clock, tick_interval_ms=16)
        renderer.start(_image(16, 16), 8, 100)
        assert len(scheduler.pending) == 1
        assert scheduler.pending[0].delay_ms == 16

        clock.now = 50.0
        scheduler.run_next()
        assert surface.blitted == [0, 1]
        assert len(scheduler.pending) == 1

        clock.now = 120.0
        scheduler.run_next()
        assert renderer.phase is RevealPhase.DONE
        assert surface.blitted == [0, 1, 2, 3]
        assert scheduler.pending == []

    def test_cancel_stops_pending_tick(self) -> None:
        scheduler = FakeScheduler()
        clock = FakeClock(0.0)
        surface = RecordingSurface()
        renderer = LiveRenderer(surface, schedule=scheduler, clock=clock)
        renderer.start(_image(16, 16), 8, 100)
        clock.now = 50.0
        scheduler.run_next()
        pending = scheduler.pending[0]

        renderer.cancel()
        assert pending.cancelled
        assert renderer.phase is RevealPhase.IDLE
        assert renderer.state is None

        clock.now = 200.0
        pending.callback()
        assert surface.blitted == [0, 1]
        # Blocks already shown stay on the surface.
        assert (surface.snapshot()[:8] != 0).any()

    def test_restart_discards_previous_reveal(self) -> None:
        scheduler = FakeScheduler()
        clock = FakeClock(0.0)
        surface = RecordingSurface()
        renderer = LiveRenderer(surface, schedule=scheduler, clock=clock)
        renderer.start(_image(16, 16), 8, 100)
        clock.now = 60.0
        scheduler.run_next()
        stale = scheduler.pending[0]

        second = _image(24, 8)
        renderer.start(second, 8, 300)
        assert stale.cancelled
        assert renderer.state.revealed_count == 0
        assert renderer.state.start_ms == 60.0
        assert renderer.grid.total_blocks == 3
        assert (surface.snapshot() == 0).all()

        # A stale callback firing late must not touch the new reveal.
        stale.callback()
        assert renderer.state.revealed_count == 0

    def test_start_validates_before_cancelling(self) -> None:
        renderer = LiveRenderer(ArraySurface(), clock=FakeClock(0.0))
        renderer.start(_image(16, 16), 8, 100)
        with pytest.raises(InvalidInputError):
            renderer.start(_image(16, 16), 0, 100)
        with pytest.raises(InvalidInputError):
            renderer.start(_image(16, 16), 8, 0)
        assert renderer.is_active

    def test_unavailable_surface(self) -> None:
        renderer = LiveRenderer(BrokenSurface(), clock=FakeClock(0.0))
        with pytest.raises(SinkUnavailableError):
            renderer.start(_image(16, 16), 8, 100)
        assert renderer.phase is RevealPhase.IDLE

    def test_clock_going_backwards_never_unreveals(self) -> None:
        surface = RecordingSurface()
        renderer = LiveRenderer(surface, clock=FakeClock(0.0))
        renderer.start(_image(16, 16), 8, 100)
        renderer.tick(60.0)
        renderer.tick(10.0)
        assert renderer.state.revealed_count == 2
        assert surface.blitted == [0, 1]
