"""Tests for PathLockManager: exclusivity, reentrancy and timeouts."""

import asyncio

import pytest

from meeting_sync.errors import LockTimeoutError
from meeting_sync.sync.locks import PathLockManager


class TestPathLockManager:
    async def test_lock_and_release(self):
        locks = PathLockManager()
        async with locks.lock("Meetings/a.md"):
            assert locks.is_locked("Meetings/a.md")
            assert locks.held_paths() == ["Meetings/a.md"]
        assert not locks.is_locked("Meetings/a.md")
        assert locks.held_paths() == []

    async def test_keys_are_normalised(self):
        locks = PathLockManager()
        async with locks.lock("Meetings\\a.md"):
            assert locks.is_locked("/Meetings/./a.md")

    async def test_reentrant_for_same_task(self):
        locks = PathLockManager(timeout=0.1)
        async with locks.lock("a.md"):
            async with locks.lock("a.md"):
                assert locks.is_locked("a.md")
            assert locks.is_locked("a.md")
        assert not locks.is_locked("a.md")

    async def test_exclusive_across_tasks(self):
        locks = PathLockManager()
        order = []

        async def worker(name):
            async with locks.lock("a.md"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.02)
                order.append(f"{name}-out")

        await asyncio.gather(worker("one"), worker("two"))

        assert order in (
            ["one-in", "one-out", "two-in", "two-out"],
            ["two-in", "two-out", "one-in", "one-out"],
        )

    async def test_different_paths_do_not_block(self):
        locks = PathLockManager(timeout=0.1)
        async with locks.lock("a.md"):
            async with locks.lock("b.md"):
                assert locks.held_paths() == ["a.md", "b.md"]

    async def test_timeout_raises(self):
        locks = PathLockManager(timeout=0.05)
        held = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.lock("a.md"):
                held.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await held.wait()
        with pytest.raises(LockTimeoutError) as exc_info:
            async with locks.lock("a.md"):
                pass
        release.set()
        await task

        assert exc_info.value.path == "a.md"
        assert exc_info.value.retryable is True
        assert not locks.is_locked("a.md")

    async def test_released_on_exception(self):
        locks = PathLockManager()
        with pytest.raises(RuntimeError):
            async with locks.lock("a.md"):
                raise RuntimeError("write failed")
        assert not locks.is_locked("a.md")
