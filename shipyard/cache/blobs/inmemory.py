"""In-memory blob store for testing."""

from __future__ import annotations

import asyncio
from typing import Dict

from .base import BaseBlobStore


class InMemoryBlobStore(BaseBlobStore):
    """Keeps artifact bytes in a dict. Data does not survive the process."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, data: bytes) -> str:
        async with self._lock:
            self._blobs[key] = bytes(data)
        return key

    async def get(self, key: str) -> bytes:
        async with self._lock:
            return self._blobs[key]

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._blobs.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return key in self._blobs
