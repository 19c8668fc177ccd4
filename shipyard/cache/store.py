"""Content-addressed artifact cache."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set

from ..constants import DEFAULT_CACHE_LOOKUP_WAIT_SECONDS
from ..exceptions import CacheWriteFailure
from ..utils.locks import KeyedLocks
from .blobs import BaseBlobStore, InMemoryBlobStore
from .models import Artifact, CacheEntry, EvictionPolicy, content_hash

logger = logging.getLogger(__name__)


class CacheStore:
    """Maps cache keys to immutable artifacts stored in a blob store.

    Writers for the same key are serialized by a per-key lock and the first
    writer wins: later writers get the stored artifact back and their bytes are
    discarded. Blob deletion is reference counted so that an entry evicted
    while a rollout still holds its artifact keeps its bytes until released.
    """

    def __init__(
        self,
        blobs: Optional[BaseBlobStore] = None,
        policy: Optional[EvictionPolicy] = None,
        lookup_wait: float = DEFAULT_CACHE_LOOKUP_WAIT_SECONDS,
    ) -> None:
        self._blobs = blobs or InMemoryBlobStore()
        self.policy = policy or EvictionPolicy()
        self.lookup_wait = lookup_wait
        # LRU order: oldest first
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._key_locks = KeyedLocks()
        self._blob_locks = KeyedLocks()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._pins: Dict[str, int] = defaultdict(int)
        self._orphans: Set[str] = set()

    # ------------------------------------------------------------------
    # Introspection
    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    def entries(self) -> List[CacheEntry]:
        """Return a snapshot of the index in LRU order (oldest first)."""
        return [entry.model_copy() for entry in self._entries.values()]

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _referenced(self, digest: str) -> bool:
        return any(e.artifact.content_hash == digest for e in self._entries.values())

    # ------------------------------------------------------------------
    # Lookup / production
    async def lookup(self, key: str, wait: Optional[float] = None) -> Optional[Artifact]:
        """Return the artifact cached under ``key`` or ``None`` on a miss.

        When another producer is building ``key`` the call waits at most
        ``wait`` seconds (default :attr:`lookup_wait`) for its result.
        """
        entry = self._entries.get(key)
        if entry is not None:
            entry.touch()
            self._entries.move_to_end(key)
            logger.debug(f"Cache hit for key={key}")
            return entry.artifact

        pending = self._inflight.get(key)
        if pending is None:
            logger.debug(f"Cache miss for key={key}")
            return None

        bound = self.lookup_wait if wait is None else wait
        logger.info(f"Waiting up to {bound}s for in-flight build of key={key}")
        try:
            artifact = await asyncio.wait_for(asyncio.shield(pending), timeout=bound)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out waiting for in-flight build of key={key}")
            return None
        if artifact is not None and key in self._entries:
            self._entries[key].touch()
            self._entries.move_to_end(key)
        return artifact

    @asynccontextmanager
    async def producing(self, key: str) -> AsyncIterator[None]:
        """Mark ``key`` as being built for the duration of the block.

        Concurrent :meth:`lookup` calls wait for the block to store an artifact.
        If the block exits without one, waiters observe a miss.
        """
        owner = key not in self._inflight
        if owner:
            self._inflight[key] = asyncio.get_running_loop().create_future()
        try:
            yield
        finally:
            if owner:
                pending = self._inflight.pop(key, None)
                if pending is not None and not pending.done():
                    entry = self._entries.get(key)
                    pending.set_result(entry.artifact if entry else None)

    # ------------------------------------------------------------------
    # Writes
    async def store(
        self, key: str, data: bytes, produced_by: Optional[str] = None
    ) -> Artifact:
        """Store ``data`` under ``key`` and return the artifact now cached there.

        Callers must use the returned artifact: when ``key`` was already
        written by another producer, that producer's artifact is returned.
        """
        digest = content_hash(data)
        async with self._key_locks.hold(key):
            existing = self._entries.get(key)
            if existing is not None:
                if existing.artifact.content_hash != digest:
                    logger.info(
                        f"Key {key} already stored by run {existing.artifact.produced_by}; "
                        f"discarding output of run {produced_by}"
                    )
                existing.touch()
                self._entries.move_to_end(key)
                return existing.artifact

            async with self._blob_locks.hold(digest):
                try:
                    location = await self._blobs.put(digest, data)
                except CacheWriteFailure as exc:
                    logger.warning(
                        f"Cache write failed for key={key}: {exc}. Continuing uncached."
                    )
                    return Artifact.from_bytes(data, produced_by=produced_by, cached=False)

                artifact = Artifact(
                    content_hash=digest,
                    size=len(data),
                    produced_by=produced_by,
                    location=location,
                )
                self._entries[key] = CacheEntry(key=key, artifact=artifact)
                self._orphans.discard(digest)

            pending = self._inflight.get(key)
            if pending is not None and not pending.done():
                pending.set_result(artifact)

        logger.info(f"Stored artifact {digest[:12]} ({len(data)} bytes) under key={key}")
        await self.evict(keep=(key,))
        return artifact

    async def read(self, artifact: Artifact) -> bytes:
        """Return the bytes of a cached artifact."""
        if not artifact.cached:
            raise KeyError(f"artifact {artifact.content_hash} was never cached")
        async with self.pinned(artifact):
            return await self._blobs.get(artifact.content_hash)

    # ------------------------------------------------------------------
    # Eviction
    @asynccontextmanager
    async def pinned(self, artifact: Artifact) -> AsyncIterator[Artifact]:
        """Hold a reference to ``artifact`` so eviction keeps its bytes."""
        digest = artifact.content_hash
        self._pins[digest] += 1
        try:
            yield artifact
        finally:
            self._pins[digest] -= 1
            if self._pins[digest] <= 0:
                del self._pins[digest]
                if digest in self._orphans:
                    await self._release(digest)

    async def _release(self, digest: str) -> None:
        async with self._blob_locks.hold(digest):
            if self._pins.get(digest) or self._referenced(digest):
                return
            self._orphans.discard(digest)
            await self._blobs.delete(digest)
            logger.debug(f"Deleted blob {digest[:12]}")

    async def evict(
        self, policy: Optional[EvictionPolicy] = None, keep: Iterable[str] = ()
    ) -> List[str]:
        """Drop least-recently-used entries until the size bound holds.

        Returns the evicted keys. Entries being written and keys in ``keep``
        are skipped.
        """
        policy = policy or self.policy
        keep = set(keep)
        evicted: List[str] = []
        for key in list(self._entries):
            if self.total_size <= policy.max_total_bytes:
                break
            if key in keep or self._key_locks.busy(key):
                continue
            entry = self._entries.pop(key)
            evicted.append(key)
            self._orphans.add(entry.artifact.content_hash)

        for digest in list(self._orphans):
            if not self._pins.get(digest):
                await self._release(digest)

        if evicted:
            logger.info(f"Evicted {len(evicted)} cache entries: {evicted}")
        return evicted
