"""Blob store backends and factory."""

from __future__ import annotations

from typing import Optional

from ...config import ShipyardConfig, load_config
from .base import BaseBlobStore
from .filesystem import FilesystemBlobStore
from .inmemory import InMemoryBlobStore


def get_blob_store(
    backend: Optional[str] = None, config: Optional[ShipyardConfig] = None
) -> BaseBlobStore:
    """Factory function to get the configured blob store."""

    config = config or load_config()
    backend = (backend or config.cache.backend).lower()

    if backend == "memory":
        return InMemoryBlobStore()
    elif backend == "filesystem":
        return FilesystemBlobStore(config.cache.root)
    elif backend == "redis":
        from .redis import RedisBlobStore

        redis_conf = config.cache.redis
        return RedisBlobStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported cache backend: {backend}")


__all__ = [
    "BaseBlobStore",
    "FilesystemBlobStore",
    "InMemoryBlobStore",
    "get_blob_store",
]
