"""In-process notification sinks."""

from __future__ import annotations

import asyncio
import logging
from typing import List

from ..contracts import RunNotification, RunStatus
from .base import BaseNotificationSink

logger = logging.getLogger(__name__)


class InMemoryNotificationSink(BaseNotificationSink):
    """Collects notifications in a list, for tests and embedding."""

    def __init__(self) -> None:
        self.notifications: List[RunNotification] = []
        self._lock = asyncio.Lock()

    async def publish(self, notification: RunNotification) -> None:
        async with self._lock:
            self.notifications.append(notification)


class LoggingNotificationSink(BaseNotificationSink):
    """Writes notifications to the ``shipyard.notifications`` logger."""

    async def publish(self, notification: RunNotification) -> None:
        level = logging.INFO if notification.status == RunStatus.SUCCEEDED else logging.WARNING
        logger.log(
            level,
            f"Run {notification.run_id} {notification.status.value}"
            + (f" at {notification.stage}" if notification.stage else "")
            + (f" ({notification.reason_code.value})" if notification.reason_code else ""),
        )
