"""
Tests for async_utils module.

Covers run_sync, CancellationToken and sleep_unless_cancelled.
"""

import asyncio
import time

import pytest

from meeting_sync.core.async_utils import (
    CancellationToken,
    run_sync,
    sleep_unless_cancelled,
)
from meeting_sync.errors import SyncCancelledError


def _sync_add(a: int, b: int) -> int:
    """Simple sync function for testing."""
    return a + b


async def test_run_sync_calls_function():
    """run_sync delegates to asyncio.to_thread with correct args."""
    result = await run_sync(_sync_add, 3, 4)
    assert result == 7


async def test_run_sync_passes_kwargs():
    """run_sync forwards keyword arguments."""

    def _kw_func(*, name: str) -> str:
        return f"hello {name}"

    result = await run_sync(_kw_func, name="world")
    assert result == "hello world"


async def test_run_sync_propagates_exceptions():
    def _boom():
        raise OSError("disk full")

    with pytest.raises(OSError, match="disk full"):
        await run_sync(_boom)


async def test_run_sync_does_not_block_loop():
    """Other tasks make progress while the blocking call runs."""
    ticks = []

    async def _ticker():
        for _ in range(3):
            ticks.append(1)
            await asyncio.sleep(0.01)

    ticker = asyncio.create_task(_ticker())
    await run_sync(time.sleep, 0.1)
    await ticker
    assert len(ticks) == 3


# ---------------------------------------------------------------------------
# CancellationToken
# ---------------------------------------------------------------------------


class TestCancellationToken:
    def test_starts_uncancelled(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_cancel_sets_flag(self):
        token = CancellationToken()
        token.cancel()
        assert token.cancelled is True

    def test_cancel_is_idempotent(self):
        token = CancellationToken()
        token.cancel()
        token.cancel()
        assert token.cancelled is True

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(SyncCancelledError):
            token.raise_if_cancelled()


# ---------------------------------------------------------------------------
# sleep_unless_cancelled
# ---------------------------------------------------------------------------


class TestSleepUnlessCancelled:
    async def test_zero_returns_immediately(self):
        start = time.monotonic()
        await sleep_unless_cancelled(0)
        assert time.monotonic() - start < 0.05

    async def test_sleeps_without_token(self):
        start = time.monotonic()
        await sleep_unless_cancelled(0.1)
        assert time.monotonic() - start >= 0.09

    async def test_returns_early_when_cancelled(self):
        token = CancellationToken()

        async def _cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel()

        canceller = asyncio.create_task(_cancel_soon())
        start = time.monotonic()
        await sleep_unless_cancelled(5.0, token)
        await canceller
        assert time.monotonic() - start < 1.0

    async def test_already_cancelled_does_not_sleep(self):
        token = CancellationToken()
        token.cancel()
        start = time.monotonic()
        await sleep_unless_cancelled(5.0, token)
        assert time.monotonic() - start < 0.05
