"""Per-path exclusive locks for vault writes.

Every create, modify and backup goes through ``PathLockManager.lock()``.
Locks are keyed by the normalised vault-relative path, are reentrant for
the task that holds them, and time out with ``LockTimeoutError``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from meeting_sync.errors import LockTimeoutError
from meeting_sync.file_handler import normalize_relative_path

logger = logging.getLogger(__name__)


@dataclass
class _PathLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    owner: asyncio.Task | None = None
    depth: int = 0
    waiters: int = 0


class PathLockManager:
    """Exclusive, task-reentrant locks keyed by vault path.

    Args:
        timeout: Seconds to wait for a lock before giving up.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self._locks: dict[str, _PathLock] = {}

    @staticmethod
    def key_for(path: str) -> str:
        return normalize_relative_path(path)

    def is_locked(self, path: str) -> bool:
        entry = self._locks.get(self.key_for(path))
        return entry is not None and entry.lock.locked()

    def held_paths(self) -> list[str]:
        return sorted(k for k, v in self._locks.items() if v.lock.locked())

    @asynccontextmanager
    async def lock(self, path: str) -> AsyncIterator[None]:
        """Hold the lock for *path* for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within
                ``timeout`` seconds.
        """
        key = self.key_for(path)
        entry = self._locks.setdefault(key, _PathLock())
        task = asyncio.current_task()

        if entry.owner is not None and entry.owner is task:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        entry.waiters += 1
        try:
            await asyncio.wait_for(entry.lock.acquire(), self.timeout)
        except asyncio.TimeoutError:
            raise LockTimeoutError(
                f"Timed out after {self.timeout}s waiting for lock on {key}",
                path=key,
            ) from None
        finally:
            entry.waiters -= 1

        entry.owner = task
        entry.depth = 1
        try:
            yield
        finally:
            entry.depth = 0
            entry.owner = None
            entry.lock.release()
            if entry.waiters == 0 and self._locks.get(key) is entry:
                del self._locks[key]
