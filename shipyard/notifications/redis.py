"""Redis notification sink for alerting consumers in other processes."""

from __future__ import annotations

from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import RunNotification
from .base import BaseNotificationSink


class RedisNotificationSink(BaseNotificationSink):
    """Pushes notifications onto a Redis list consumed by alerting workers."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel: str = "shipyard:notifications",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisNotificationSink")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel = channel
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, notification: RunNotification) -> None:
        """Append the notification JSON to the channel list."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.channel, notification.to_json())
