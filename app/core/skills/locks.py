"""Per-key single-flight locks for installation operations."""

import asyncio
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    Dict,
)


class KeyedLock:
    """A set of asyncio locks created on demand and dropped when idle.

    Locks are not re-entrant: a coroutine holding ``key`` must not acquire
    ``key`` again.
    """

    def __init__(self):
        """Initialize with no locks."""
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        """Return True if some coroutine currently holds ``key``."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        """Return the number of keys with a live lock."""
        return len(self._locks)
