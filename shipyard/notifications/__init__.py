"""Notification sink factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ShipyardConfig, load_config
from .base import BaseNotificationSink
from .inmemory import InMemoryNotificationSink, LoggingNotificationSink


def get_notification_sink(
    backend: Optional[str] = None, config: Optional[ShipyardConfig] = None
) -> BaseNotificationSink:
    """Factory function to get the configured notification sink."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("SHIPYARD_NOTIFICATIONS")
        or config.notifications.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryNotificationSink()
    elif backend == "log":
        return LoggingNotificationSink()
    elif backend == "redis":
        from .redis import RedisNotificationSink

        redis_conf = config.notifications.redis
        return RedisNotificationSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel=config.notifications.channel,
        )
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


__all__ = [
    "BaseNotificationSink",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "get_notification_sink",
]
