"""Async utilities for running blocking I/O from the sync engine."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

from ..errors import SyncCancelledError

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Used to wrap blocking HTTP requests and file I/O in async engine code.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        documents = await run_sync(client.fetch_all)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


class CancellationToken:
    """Cooperative cancellation flag passed down a sync run.

    Work checks the token at safe points (between documents and between
    batches); nothing is interrupted mid-write.
    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if not self._cancelled:
            logger.info("Cancellation requested")
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        """Raise ``SyncCancelledError`` if cancellation was requested."""
        if self._cancelled:
            raise SyncCancelledError()


async def sleep_unless_cancelled(
    seconds: float, token: CancellationToken | None = None
) -> None:
    """Sleep for *seconds*, returning early once *token* is cancelled.

    The token is polled every 50 ms; cancellation itself is reported by
    the caller via ``token.raise_if_cancelled()``.
    """
    if seconds <= 0:
        return
    loop = asyncio.get_running_loop()
    deadline = loop.time() + seconds
    while True:
        if token is not None and token.cancelled:
            return
        remaining = deadline - loop.time()
        if remaining <= 0:
            return
        await asyncio.sleep(min(remaining, 0.05))
