"""Data models for cached build artifacts."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import DEFAULT_CACHE_MAX_TOTAL_BYTES


def content_hash(data: bytes) -> str:
    """Return the sha256 hex digest identifying ``data``."""
    return hashlib.sha256(data).hexdigest()


def compute_cache_key(inputs: Mapping[str, Any]) -> str:
    """Derive a deterministic cache key from build inputs.

    Inputs are serialized as canonical JSON (sorted keys, no whitespace) so the
    same inputs always map to the same key regardless of insertion order.
    """
    canonical = json.dumps(inputs, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Artifact(BaseModel):
    """Immutable build output."""

    model_config = ConfigDict(frozen=True)

    content_hash: str
    size: int
    produced_by: Optional[str] = Field(default=None, description="Producing run id")
    location: Optional[str] = Field(default=None, description="Blob store key")
    cached: bool = True

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        produced_by: Optional[str] = None,
        location: Optional[str] = None,
        cached: bool = True,
    ) -> "Artifact":
        return cls(
            content_hash=content_hash(data),
            size=len(data),
            produced_by=produced_by,
            location=location,
            cached=cached,
        )


class CacheEntry(BaseModel):
    """Index record mapping a cache key to its artifact."""

    key: str
    artifact: Artifact
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_accessed: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return self.artifact.size

    def touch(self) -> None:
        self.last_accessed = datetime.now(timezone.utc)


class EvictionPolicy(BaseModel):
    """Least-recently-used eviction bounded by total stored bytes."""

    max_total_bytes: int = Field(default=DEFAULT_CACHE_MAX_TOTAL_BYTES, ge=0)
