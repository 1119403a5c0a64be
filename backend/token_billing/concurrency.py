"""
Per-key serialization and bounded retry for the billing core.

Writers for one account are serialized by a per-account asyncio.Lock;
different accounts never share a lock. Cross-process races surface from the
store as ConcurrencyConflict and are retried here with exponential backoff.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, TypeVar

from .errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """
    asyncio.Lock per key, created on first use and dropped once the last
    holder or waiter for that key has left.

    Use as ``async with locks.for_key(key):``.
    """

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def for_key(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._users[key] = 0
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    backoff_seconds: float,
    label: str,
) -> T:
    """Run operation, retrying ConcurrencyConflict up to max_retries times."""
    attempt = 0
    while True:
        try:
            return await operation()
        except ConcurrencyConflict:
            if attempt >= max_retries:
                logger.error(f"{label}: giving up after {attempt + 1} attempts")
                raise
            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning(f"{label}: concurrency conflict, retry {attempt}/{max_retries} in {delay:.3f}s")
            if delay > 0:
                await asyncio.sleep(delay)
