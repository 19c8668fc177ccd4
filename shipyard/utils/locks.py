from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    """asyncio locks created per name on demand.

    A name's lock is dropped once nobody holds or waits for it, so the table
    only grows with the names currently in use.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._users[name] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[name] -= 1
            if self._users[name] <= 0:
                del self._users[name]
                del self._locks[name]

    def busy(self, name: str) -> bool:
        """True while some caller holds or awaits ``name``."""
        return name in self._locks

    def __len__(self) -> int:
        return len(self._locks)
