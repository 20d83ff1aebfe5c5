"""Adaptive batch scheduler.

Splits a run's documents into batches whose size adapts to how long each
batch takes, aiming for ``target_duration`` seconds per batch:

* start at the midpoint of ``[min_size, max_size]``;
* after a successful batch, ``ratio = duration / target``: below 0.8 the
  size grows by ``ceil(size * adjustment_factor)``, above 1.2 it shrinks
  by the same step, otherwise it holds;
* a batch whose processor raises a retryable error is retried from the
  same position at half the size; at ``min_size`` it is abandoned so the
  run always makes progress.  The abandon callback may settle only a
  prefix of the batch, in which case the rest is scheduled again.

Batching changes grouping only, never order.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from pydantic import BaseModel

from meeting_sync.config_schema import BatchConfig
from meeting_sync.core.async_utils import CancellationToken, sleep_unless_cancelled
from meeting_sync.errors import is_retryable
from meeting_sync.sync.models import BatchRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

GROW_BELOW = 0.8
SHRINK_ABOVE = 1.2
OPTIMAL_WINDOW = 20


class BatchFailure(BaseModel):
    """A batch abandoned at minimum size."""

    start: int
    end: int
    error: str

    model_config = {"frozen": True}


class AdaptiveBatcher(Generic[T, R]):
    """Process items in adaptively sized batches.

    Args:
        config: Batch tuning; defaults to ``BatchConfig()``.
        clock: Monotonic clock returning seconds, injectable for tests.
    """

    def __init__(
        self,
        config: BatchConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or BatchConfig()
        self._clock = clock
        self.current_batch_size = self._initial_size()
        self._history: deque[BatchRecord] = deque(maxlen=self.config.history_limit)
        self.failures: list[BatchFailure] = []

    def _initial_size(self) -> int:
        return (self.config.min_size + self.config.max_size) // 2

    @property
    def history(self) -> list[BatchRecord]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_batches(
        self,
        items: Sequence[T],
        processor: Callable[[list[T]], Awaitable[list[R]]],
        on_progress: Callable[[int, int], None] | None = None,
        cancel: CancellationToken | None = None,
        on_abandon: Callable[[list[T], BaseException], int | None] | None = None,
    ) -> list[R]:
        """Run *processor* over *items* in adaptive batches.

        Args:
            items: Items in processing order.
            processor: Coroutine handling one batch, returning its results.
            on_progress: Called with ``(processed, total)`` after each batch.
            cancel: Checked before every batch.
            on_abandon: Called with the items and error of an abandoned
                batch.  It may return how many leading items of the batch
                are settled; processing resumes after them.  ``None``
                skips the whole batch.

        Returns:
            Results of all successful batches, in order.

        Raises:
            SyncCancelledError: If *cancel* is cancelled between batches.
            Exception: Any non-retryable error raised by *processor*.
        """
        results: list[R] = []
        total = len(items)
        position = 0

        logger.info(
            "Starting adaptive batch processing: %d items, initial size %d",
            total,
            self.current_batch_size,
        )

        while position < total:
            if cancel is not None:
                cancel.raise_if_cancelled()

            end = min(position + self.current_batch_size, total)
            batch = list(items[position:end])
            started = self._clock()
            try:
                batch_results = await processor(batch)
            except Exception as exc:
                duration = self._clock() - started
                self._record(len(batch), duration, success=False)
                if not is_retryable(exc):
                    raise
                if self.current_batch_size > self.config.min_size:
                    self.current_batch_size = max(
                        self.config.min_size, self.current_batch_size // 2
                    )
                    logger.warning(
                        "Batch failed, reducing batch size to %d: %s",
                        self.current_batch_size,
                        exc,
                    )
                    continue

                settled = on_abandon(batch, exc) if on_abandon is not None else None
                if settled is not None:
                    end = position + max(1, min(settled, len(batch)))
                logger.error(
                    "Abandoning batch [%d:%d] at minimum size: %s",
                    position,
                    end,
                    exc,
                )
                self.failures.append(
                    BatchFailure(start=position, end=end, error=str(exc))
                )
                position = end
                if on_progress is not None:
                    on_progress(position, total)
                continue

            duration = self._clock() - started
            self._record(len(batch), duration, success=True)
            results.extend(batch_results)
            position = end
            if on_progress is not None:
                on_progress(position, total)
            self._adjust(duration)

            if position < total and self.config.batch_delay > 0:
                await sleep_unless_cancelled(self.config.batch_delay, cancel)

        logger.info("Batch processing statistics: %s", self.get_stats())
        return results

    def _record(self, size: int, duration: float, success: bool) -> None:
        self._history.append(
            BatchRecord(size=size, duration=duration, success=success)
        )

    def _adjust(self, duration: float) -> None:
        ratio = duration / self.config.target_duration
        step = math.ceil(self.current_batch_size * self.config.adjustment_factor)

        if ratio < GROW_BELOW:
            self.current_batch_size = min(
                self.current_batch_size + step, self.config.max_size
            )
            logger.debug(
                "Increasing batch size to %d (%.3fs per batch)",
                self.current_batch_size,
                duration,
            )
        elif ratio > SHRINK_ABOVE:
            self.current_batch_size = max(
                self.current_batch_size - step, self.config.min_size
            )
            logger.debug(
                "Decreasing batch size to %d (%.3fs per batch)",
                self.current_batch_size,
                duration,
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        history = list(self._history)
        successful = [b for b in history if b.success]
        total_items = sum(b.size for b in history)
        return {
            "total_batches": len(history),
            "total_items": total_items,
            "average_batch_size": total_items / (len(history) or 1),
            "average_duration": sum(b.duration for b in successful)
            / (len(successful) or 1),
            "current_batch_size": self.current_batch_size,
            "success_rate": len(successful) / (len(history) or 1),
            "abandoned_batches": len(self.failures),
        }

    def get_optimal_batch_size(self) -> int:
        """Size of the recent successful batch whose duration came closest
        to the target; the current size when there is no history."""
        recent = [b for b in self._history if b.success][-OPTIMAL_WINDOW:]
        if not recent:
            return self.current_batch_size
        best = min(
            recent,
            key=lambda b: abs(1 - b.duration / self.config.target_duration),
        )
        return best.size

    def reset(self) -> None:
        self.current_batch_size = self._initial_size()
        self._history.clear()
        self.failures.clear()
