"""Per-key mutual exclusion for asyncio code."""
import asyncio
from contextlib import asynccontextmanager
from typing import Hashable


class KeyedLock:
    """A map of asyncio.Lock objects keyed by an arbitrary hashable.

    Holders of different keys never wait on each other. A key's lock is
    dropped once nobody holds or waits on it, so the map only grows with the
    number of keys in flight.
    """

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
