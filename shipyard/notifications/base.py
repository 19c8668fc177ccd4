"""Base interface for terminal run notifications."""

from __future__ import annotations

import abc

from ..contracts import RunNotification


class BaseNotificationSink(metaclass=abc.ABCMeta):
    """Receives one notification per run that reaches a terminal status."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, notification: RunNotification) -> None:
        """Deliver ``notification``."""
        raise NotImplementedError
