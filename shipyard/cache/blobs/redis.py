"""Redis blob store for caches shared between processes."""

from __future__ import annotations

from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ...exceptions import CacheWriteFailure
from .base import BaseBlobStore


class RedisBlobStore(BaseBlobStore):
    """Redis-based blob storage."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "shipyard:blob",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisBlobStore")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self._redis: Optional[Any] = None

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def put(self, key: str, data: bytes) -> str:
        try:
            if not self._redis:
                await self.connect()
            await self._redis.set(self._key(key), data)
        except redis.RedisError as exc:
            raise CacheWriteFailure(f"failed to write blob {key}: {exc}") from exc
        return self._key(key)

    async def get(self, key: str) -> bytes:
        if not self._redis:
            await self.connect()
        data = await self._redis.get(self._key(key))
        if data is None:
            raise KeyError(key)
        return data

    async def delete(self, key: str) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        if not self._redis:
            await self.connect()
        return bool(await self._redis.exists(self._key(key)))
