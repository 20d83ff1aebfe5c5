"""Tests for AdaptiveBatcher: convergence, order, failure handling."""

from __future__ import annotations

import pytest

from meeting_sync.config_schema import BatchConfig
from meeting_sync.core.async_utils import CancellationToken
from meeting_sync.errors import NetworkError, SyncCancelledError
from meeting_sync.sync.batcher import AdaptiveBatcher


class FakeClock:
    """Clock advanced by the processor instead of wall time."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _timed_processor(clock: FakeClock, per_item: float):
    async def process(batch):
        clock.now += per_item * len(batch)
        return [item * 10 for item in batch]

    return process


class TestAdaptation:
    def test_starts_at_midpoint(self):
        batcher = AdaptiveBatcher(BatchConfig(min_size=10, max_size=100))
        assert batcher.current_batch_size == 55

    async def test_converges_to_target_duration(self):
        clock = FakeClock()
        config = BatchConfig(
            min_size=1, max_size=100, target_duration=1.0, adjustment_factor=0.2
        )
        batcher = AdaptiveBatcher(config, clock=clock)

        results = await batcher.process_batches(
            list(range(400)), _timed_processor(clock, 0.05)
        )

        assert results == [i * 10 for i in range(400)]
        assert abs(batcher.current_batch_size - 20) <= 4
        assert abs(batcher.get_optimal_batch_size() - 20) <= 4

    async def test_grows_when_fast(self):
        clock = FakeClock()
        config = BatchConfig(min_size=2, max_size=50, target_duration=1.0)
        batcher = AdaptiveBatcher(config, clock=clock)

        await batcher.process_batches(list(range(200)), _timed_processor(clock, 0.001))

        assert batcher.current_batch_size == 50

    async def test_shrinks_to_min_when_slow(self):
        clock = FakeClock()
        config = BatchConfig(min_size=2, max_size=50, target_duration=0.1)
        batcher = AdaptiveBatcher(config, clock=clock)

        await batcher.process_batches(list(range(200)), _timed_processor(clock, 1.0))

        assert batcher.current_batch_size == 2

    async def test_batch_sizes_stay_in_bounds(self):
        clock = FakeClock()
        config = BatchConfig(min_size=3, max_size=12, target_duration=0.5)
        batcher = AdaptiveBatcher(config, clock=clock)

        await batcher.process_batches(list(range(100)), _timed_processor(clock, 0.2))

        sizes = [b.size for b in batcher.history]
        assert sum(sizes) == 100
        # The last batch may be a remainder smaller than min_size.
        assert all(3 <= s <= 12 for s in sizes[:-1])


class TestProcessing:
    async def test_order_preserved_and_progress_reported(self):
        progress = []
        batcher = AdaptiveBatcher(BatchConfig(min_size=3, max_size=3))

        async def process(batch):
            return batch

        results = await batcher.process_batches(
            list("abcdefgh"), process, on_progress=lambda d, t: progress.append((d, t))
        )

        assert results == list("abcdefgh")
        assert progress == [(3, 8), (6, 8), (8, 8)]

    async def test_empty_input(self):
        batcher = AdaptiveBatcher()

        async def process(batch):
            raise AssertionError("not called")

        assert await batcher.process_batches([], process) == []
        assert batcher.get_stats()["total_batches"] == 0

    async def test_retryable_failure_halves_and_retries(self):
        batcher = AdaptiveBatcher(BatchConfig(min_size=2, max_size=16))
        seen = []

        async def process(batch):
            seen.append(list(batch))
            if len(batch) > 4:
                raise NetworkError("timeout")
            return batch

        results = await batcher.process_batches(list(range(10)), process)

        assert results == list(range(10))
        assert seen[0] == list(range(9))
        assert seen[1] == [0, 1, 2, 3]
        assert batcher.failures == []
        assert batcher.get_stats()["success_rate"] < 1.0

    async def test_abandons_at_min_size(self):
        batcher = AdaptiveBatcher(BatchConfig(min_size=1, max_size=4))
        abandoned = []

        async def process(batch):
            if "bad" in batch:
                raise NetworkError("unreachable")
            return batch

        results = await batcher.process_batches(
            ["a", "b", "bad", "c", "d"],
            process,
            on_abandon=lambda batch, exc: abandoned.append((batch, str(exc))),
        )

        assert results == ["a", "b", "c", "d"]
        assert abandoned == [(["bad"], "unreachable")]
        [failure] = batcher.failures
        assert (failure.start, failure.end) == (2, 3)
        assert batcher.get_stats()["abandoned_batches"] == 1

    async def test_abandon_settles_only_failing_prefix(self):
        batcher = AdaptiveBatcher(BatchConfig(min_size=2, max_size=2))

        async def process(batch):
            if batch[0] == "bad":
                raise NetworkError("unreachable")
            return batch

        def settle_first(batch, exc):
            return batch.index("bad") + 1

        results = await batcher.process_batches(
            ["bad", "b", "c", "d"], process, on_abandon=settle_first
        )

        # "b" shared the failed batch but still runs.
        assert results == ["b", "c", "d"]
        [failure] = batcher.failures
        assert (failure.start, failure.end) == (0, 1)

    async def test_non_retryable_error_propagates(self):
        batcher = AdaptiveBatcher(BatchConfig(min_size=1, max_size=4))

        async def process(batch):
            raise ValueError("bug")

        with pytest.raises(ValueError, match="bug"):
            await batcher.process_batches([1, 2, 3], process)

    async def test_cancel_checked_between_batches(self):
        batcher = AdaptiveBatcher(BatchConfig(min_size=2, max_size=2))
        token = CancellationToken()
        processed = []

        async def process(batch):
            processed.extend(batch)
            token.cancel()
            return batch

        with pytest.raises(SyncCancelledError):
            await batcher.process_batches([1, 2, 3, 4], process, cancel=token)

        assert processed == [1, 2]

    async def test_batch_delay_between_batches(self):
        batcher = AdaptiveBatcher(
            BatchConfig(min_size=1, max_size=1, batch_delay=0.01)
        )

        async def process(batch):
            return batch

        assert await batcher.process_batches([1, 2], process) == [1, 2]


class TestIntrospection:
    async def test_stats_and_reset(self):
        clock = FakeClock()
        batcher = AdaptiveBatcher(
            BatchConfig(min_size=2, max_size=2, target_duration=1.0), clock=clock
        )

        await batcher.process_batches([1, 2, 3, 4], _timed_processor(clock, 0.5))

        stats = batcher.get_stats()
        assert stats["total_batches"] == 2
        assert stats["total_items"] == 4
        assert stats["average_batch_size"] == 2
        assert stats["average_duration"] == pytest.approx(1.0)
        assert stats["success_rate"] == 1.0

        batcher.reset()
        assert batcher.history == []
        assert batcher.current_batch_size == 2

    def test_optimal_size_without_history(self):
        batcher = AdaptiveBatcher(BatchConfig(min_size=4, max_size=8))
        assert batcher.get_optimal_batch_size() == 6

    def test_history_is_bounded(self):
        batcher = AdaptiveBatcher(BatchConfig(history_limit=3))
        for _ in range(5):
            batcher._record(1, 0.1, success=True)
        assert len(batcher.history) == 3
