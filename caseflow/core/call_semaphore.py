"""Process-wide limiter for in-flight model calls."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class CallSemaphore:
    """Counting semaphore shared by every model call client in a process.

    Wraps :class:`asyncio.Semaphore`, which wakes waiters in arrival order,
    and keeps the counts reported by :meth:`stats`.

    Use :meth:`slot` so that every acquire is paired with one release.
    """

    def __init__(self, max_concurrent: int = 5):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self._waiting = 0

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queue_length(self) -> int:
        return self._waiting

    def stats(self) -> Dict[str, int]:
        return {
            "activeCount": self._active,
            "queueLength": self._waiting,
            "maxConcurrent": self._max_concurrent,
        }

    async def acquire(self) -> None:
        """Wait for a free slot."""
        if self._semaphore.locked():
            LOGGER.debug("Waiting for model call slot", extra=self.stats())

        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._active += 1

    def release(self) -> None:
        """Release a slot to the oldest waiter, if any."""
        if self._active <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._active -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
