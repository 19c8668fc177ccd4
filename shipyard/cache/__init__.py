"""Artifact cache for shipyard pipelines."""

from __future__ import annotations

from typing import Optional

from ..config import ShipyardConfig, load_config
from .blobs import get_blob_store
from .models import Artifact, CacheEntry, EvictionPolicy, compute_cache_key, content_hash
from .store import CacheStore


def get_cache_store(config: Optional[ShipyardConfig] = None) -> CacheStore:
    """Build a :class:`CacheStore` from configuration."""

    config = config or load_config()
    return CacheStore(
        blobs=get_blob_store(config=config),
        policy=EvictionPolicy(max_total_bytes=config.cache.max_total_bytes),
        lookup_wait=config.cache.lookup_wait_seconds,
    )


__all__ = [
    "Artifact",
    "CacheEntry",
    "CacheStore",
    "EvictionPolicy",
    "compute_cache_key",
    "content_hash",
    "get_cache_store",
]
