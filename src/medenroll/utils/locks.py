"""
Keyed asyncio locks.

One lock per key (enrollment id, document id) created on demand. Entries
disappear once no coroutine holds or awaits the lock.
"""

import asyncio
import weakref


class KeyedLocks:
    """Registry of per-key ``asyncio.Lock`` objects."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
