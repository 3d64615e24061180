"""
Core Module - Keyed Async Locks.

Serializes mutations per key (position id, or account+symbol)
inside one process. Storage-level compare-and-swap remains the
guard across processes.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class KeyedLock:
    """One asyncio.Lock per key, created lazily."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Acquire the lock for key for the duration of the block."""
        self._waiters[key] += 1
        lock = self._locks[key]
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # Drop idle locks so long-running engines do not grow unbounded
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
