"""Base interface for artifact blob storage."""

from __future__ import annotations

import abc


class BaseBlobStore(metaclass=abc.ABCMeta):
    """Abstract physical storage for artifact bytes, keyed by content hash.

    Implementations raise :class:`~shipyard.exceptions.CacheWriteFailure` when
    a write cannot be completed.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def put(self, key: str, data: bytes) -> str:
        """Store ``data`` under ``key`` and return its location."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the bytes stored under ``key``. Raises ``KeyError`` if absent."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""
        raise NotImplementedError

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        raise NotImplementedError
