"""
In-process lock registry.

Serialises writers inside one worker. Cross-worker safety comes from row
locks and unique constraints, not from here.
"""
import asyncio
import weakref
from typing import Optional


class LockRegistry:
    """
    Named asyncio locks, recreated when the running event loop changes.

    Entries are weak: a lock lives only while some task holds or awaits it,
    so names seen once (e.g. status reads of arbitrary channels) do not
    accumulate.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def get(self, key: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            # Locks never outlive the loop they were awaited on
            self._locks = weakref.WeakValueDictionary()
            self._loop = loop
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


locks = LockRegistry()


def channel_lock(channel_name: str) -> asyncio.Lock:
    """Mutual exclusion for state-changing operations on one channel."""
    return locks.get(f"channel:{channel_name}")
