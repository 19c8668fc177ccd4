import asyncio

import pytest

from shipyard.cache import CacheStore, EvictionPolicy, compute_cache_key, content_hash
from shipyard.cache.blobs import InMemoryBlobStore
from shipyard.exceptions import CacheWriteFailure


class FailingBlobStore(InMemoryBlobStore):
    async def put(self, key: str, data: bytes) -> str:
        raise CacheWriteFailure("disk full")


@pytest.mark.asyncio
async def test_lookup_miss_then_store_then_hit():
    cache = CacheStore()

    assert await cache.lookup("abc") is None

    artifact = await cache.store("abc", b"X", produced_by="run-1")
    hit = await cache.lookup("abc")
    assert hit == artifact
    assert hit.content_hash == content_hash(b"X")
    assert hit.size == 1
    assert hit.produced_by == "run-1"
    assert await cache.read(hit) == b"X"


@pytest.mark.asyncio
async def test_store_same_content_is_idempotent():
    cache = CacheStore()
    first = await cache.store("k", b"payload", produced_by="run-1")
    second = await cache.store("k", b"payload", produced_by="run-2")
    assert second == first
    assert len(cache.entries()) == 1


@pytest.mark.asyncio
async def test_first_writer_wins():
    cache = CacheStore()
    winner = await cache.store("k", b"first", produced_by="run-1")
    loser = await cache.store("k", b"second", produced_by="run-2")

    assert loser == winner
    assert loser.produced_by == "run-1"
    assert await cache.read(loser) == b"first"


@pytest.mark.asyncio
async def test_concurrent_stores_converge():
    cache = CacheStore()
    results = await asyncio.gather(
        *(cache.store("k", f"build-{i}".encode(), produced_by=f"run-{i}") for i in range(10))
    )

    assert len({r.content_hash for r in results}) == 1
    assert len(cache.entries()) == 1
    stored = await cache.lookup("k")
    assert stored == results[0]
    assert len(cache._key_locks) == 0
    assert len(cache._blob_locks) == 0


@pytest.mark.asyncio
async def test_lookup_waits_for_inflight_producer():
    cache = CacheStore(lookup_wait=5)
    started = asyncio.Event()

    async def produce():
        async with cache.producing("k"):
            started.set()
            await asyncio.sleep(0.05)
            return await cache.store("k", b"built", produced_by="run-1")

    producer = asyncio.create_task(produce())
    await started.wait()
    waited = await cache.lookup("k")
    produced = await producer
    assert waited == produced


@pytest.mark.asyncio
async def test_lookup_wait_is_bounded():
    cache = CacheStore()
    release = asyncio.Event()

    async def stuck_producer():
        async with cache.producing("k"):
            await release.wait()

    task = asyncio.create_task(stuck_producer())
    await asyncio.sleep(0)
    assert await cache.lookup("k", wait=0.05) is None
    release.set()
    await task


@pytest.mark.asyncio
async def test_failed_producer_yields_miss_to_waiters():
    cache = CacheStore(lookup_wait=5)
    started = asyncio.Event()

    async def failing_producer():
        async with cache.producing("k"):
            started.set()
            await asyncio.sleep(0.01)
            raise RuntimeError("build broke")

    task = asyncio.create_task(failing_producer())
    await started.wait()
    assert await cache.lookup("k") is None
    with pytest.raises(RuntimeError):
        await task


@pytest.mark.asyncio
async def test_write_failure_is_soft():
    cache = CacheStore(blobs=FailingBlobStore())

    artifact = await cache.store("k", b"data", produced_by="run-1")

    assert artifact.cached is False
    assert artifact.content_hash == content_hash(b"data")
    assert await cache.lookup("k") is None
    with pytest.raises(KeyError):
        await cache.read(artifact)


@pytest.mark.asyncio
async def test_lru_eviction_respects_size_bound():
    blobs = InMemoryBlobStore()
    cache = CacheStore(blobs=blobs, policy=EvictionPolicy(max_total_bytes=10))

    await cache.store("a", b"aaaa")
    await cache.store("b", b"bbbb")
    # touching "a" makes "b" the least recently used entry
    await cache.lookup("a")
    await cache.store("c", b"cccc")

    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache
    assert cache.total_size <= 10
    assert not await blobs.exists(content_hash(b"bbbb"))
    assert len(cache._key_locks) == 0


@pytest.mark.asyncio
async def test_evicting_pinned_artifact_keeps_bytes_until_released():
    blobs = InMemoryBlobStore()
    cache = CacheStore(blobs=blobs)
    artifact = await cache.store("k", b"in-use")

    async with cache.pinned(artifact):
        evicted = await cache.evict(EvictionPolicy(max_total_bytes=0))
        assert evicted == ["k"]
        assert await cache.lookup("k") is None
        assert await blobs.get(artifact.content_hash) == b"in-use"

    assert not await blobs.exists(artifact.content_hash)


@pytest.mark.asyncio
async def test_shared_blob_survives_eviction_of_one_key():
    blobs = InMemoryBlobStore()
    cache = CacheStore(blobs=blobs)
    one = await cache.store("k1", b"same")
    await cache.store("k2", b"same")

    await cache.evict(EvictionPolicy(max_total_bytes=4))

    assert "k1" not in cache
    assert "k2" in cache
    assert await blobs.get(one.content_hash) == b"same"


def test_cache_key_is_order_independent():
    assert compute_cache_key({"a": 1, "b": "x"}) == compute_cache_key({"b": "x", "a": 1})
    assert compute_cache_key({"a": 1}) != compute_cache_key({"a": 2})
