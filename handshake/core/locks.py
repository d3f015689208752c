"""Per-key asyncio locks without a process-wide mutex."""

from __future__ import annotations

import asyncio
import weakref


class KeyedLocks:
    """Hand out one `asyncio.Lock` per key; unused locks are garbage collected."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: str) -> asyncio.Lock:
        """Return the lock for `key`, creating it on first use."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
