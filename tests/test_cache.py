"""
Cache store and gateway tests.

Covers TTL expiry, tag flushing, capability-based invalidator selection,
read-through semantics (hit, miss, compute failure), degradation when the
store fails, optional single-flight, and the Redis stores against an
in-test async client double.
"""
import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.cache import (
    CacheGateway,
    CacheUnavailable,
    MemoryStore,
    RedisStore,
    SingleKeyInvalidator,
    TaggedMemoryStore,
    TaggedRedisStore,
    TagScopedInvalidator,
    create_store,
)

DEFAULT_KEY = "articles.index.optimized:v2:p=1:pp=20"
OTHER_KEY = "articles.index.optimized:v2:p=2:pp=20"


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Just enough of the redis.asyncio client surface for the stores."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.sets: dict[str, set[str]] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def aclose(self):
        pass


class BrokenRedis:
    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    get = set = delete = sadd = expire = smembers = _fail


class FailingStore(TaggedMemoryStore):
    async def get(self, key):
        raise CacheUnavailable("read down")

    async def put(self, key, value, ttl):
        raise CacheUnavailable("write down")

    async def flush_tag(self, tag):
        raise CacheUnavailable("flush down")


def counting(value):
    calls = {"n": 0}

    async def compute():
        calls["n"] += 1
        return value

    return compute, calls


# ---------------------------------------------------------------------------
# Memory stores
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_memory_store_expires_entries_on_read():
    clock = Clock()
    store = MemoryStore(clock=clock)
    await store.put("k", [1, 2], ttl=60)

    clock.now = 59.9
    assert await store.get("k") == [1, 2]
    clock.now = 60
    assert await store.get("k") is None
    assert "k" not in store


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    store = MemoryStore()
    await store.put("k", [{"id": 1}], ttl=60)
    first = await store.get("k")
    first[0]["id"] = 99
    assert await store.get("k") == [{"id": 1}]


@pytest.mark.asyncio
async def test_memory_store_rejects_unserialisable_values():
    store = MemoryStore()
    with pytest.raises(CacheUnavailable):
        await store.put("k", {"bad": {1, 2}}, ttl=60)


@pytest.mark.asyncio
async def test_tagged_memory_store_flushes_every_key_of_a_tag():
    store = TaggedMemoryStore()
    await store.put_tagged("a", 1, 60, ["articles_list"])
    await store.put_tagged("b", 2, 60, ["articles_list"])
    await store.put_tagged("c", 3, 60, ["other"])

    assert await store.flush_tag("articles_list") == 2
    assert await store.get("a") is None
    assert await store.get("b") is None
    assert await store.get("c") == 3
    assert await store.flush_tag("articles_list") == 0


@pytest.mark.asyncio
async def test_tagged_memory_store_prunes_expired_members():
    clock = Clock()
    store = TaggedMemoryStore(clock=clock)
    await store.put_tagged("a", 1, 10, ["articles_list"])

    clock.now = 11
    await store.put_tagged("b", 2, 10, ["articles_list"])

    assert await store.flush_tag("articles_list") == 1
    assert await store.get("b") is None


def test_create_store_by_driver():
    assert type(create_store("memory")) is MemoryStore
    assert type(create_store("tagged-memory")) is TaggedMemoryStore
    assert type(create_store("redis", "redis://localhost:6379/0")) is RedisStore
    assert type(create_store("tagged-redis", "redis://localhost:6379/0")) is TaggedRedisStore
    with pytest.raises(ValueError):
        create_store("memcached")


# ---------------------------------------------------------------------------
# Gateway: invalidator selection
# ---------------------------------------------------------------------------

def test_taggable_store_gets_tag_scoped_invalidator():
    gateway = CacheGateway(TaggedMemoryStore(), tag="articles_list", default_key=DEFAULT_KEY)
    assert gateway.supports_tags
    assert isinstance(gateway.invalidator, TagScopedInvalidator)
    assert gateway.invalidator.tag == "articles_list"


def test_plain_store_gets_single_key_invalidator():
    gateway = CacheGateway(MemoryStore(), tag="articles_list", default_key=DEFAULT_KEY)
    assert not gateway.supports_tags
    assert isinstance(gateway.invalidator, SingleKeyInvalidator)
    assert gateway.invalidator.key == DEFAULT_KEY


# ---------------------------------------------------------------------------
# Gateway: read-through
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_miss_computes_once_then_hits():
    gateway = CacheGateway(TaggedMemoryStore(), tag="articles_list", default_key=DEFAULT_KEY)
    compute, calls = counting([{"id": 1}])

    assert await gateway.get_or_compute(DEFAULT_KEY, 60, compute) == [{"id": 1}]
    assert await gateway.get_or_compute(DEFAULT_KEY, 60, compute) == [{"id": 1}]
    assert calls["n"] == 1
    assert gateway.stats["hits"] == 1
    assert gateway.stats["misses"] == 1


@pytest.mark.asyncio
async def test_empty_page_is_cached_too():
    gateway = CacheGateway(MemoryStore(), tag="articles_list", default_key=DEFAULT_KEY)
    compute, calls = counting([])

    await gateway.get_or_compute(DEFAULT_KEY, 60, compute)
    await gateway.get_or_compute(DEFAULT_KEY, 60, compute)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_entry_recomputed_after_ttl():
    clock = Clock()
    gateway = CacheGateway(MemoryStore(clock=clock), tag="articles_list", default_key=DEFAULT_KEY)
    compute, calls = counting(["page"])

    await gateway.get_or_compute(DEFAULT_KEY, 60, compute)
    clock.now = 61
    await gateway.get_or_compute(DEFAULT_KEY, 60, compute)
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_compute_failure_propagates_and_is_not_cached():
    store = TaggedMemoryStore()
    gateway = CacheGateway(store, tag="articles_list", default_key=DEFAULT_KEY)

    async def broken():
        raise RuntimeError("query failed")

    with pytest.raises(RuntimeError):
        await gateway.get_or_compute(DEFAULT_KEY, 60, broken)
    assert DEFAULT_KEY not in store

    compute, calls = counting(["ok"])
    assert await gateway.get_or_compute(DEFAULT_KEY, 60, compute) == ["ok"]
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_store_failures_degrade_to_live_computation():
    gateway = CacheGateway(FailingStore(), tag="articles_list", default_key=DEFAULT_KEY)
    compute, calls = counting(["live"])

    assert await gateway.get_or_compute(DEFAULT_KEY, 60, compute) == ["live"]
    assert await gateway.get_or_compute(DEFAULT_KEY, 60, compute) == ["live"]
    assert calls["n"] == 2
    assert gateway.stats["errors"] == 4


@pytest.mark.asyncio
async def test_invalidate_raises_cache_unavailable():
    gateway = CacheGateway(FailingStore(), tag="articles_list", default_key=DEFAULT_KEY)
    with pytest.raises(CacheUnavailable):
        await gateway.invalidate()


# ---------------------------------------------------------------------------
# Gateway: invalidation semantics
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_tag_invalidation_clears_every_page():
    store = TaggedMemoryStore()
    gateway = CacheGateway(store, tag="articles_list", default_key=DEFAULT_KEY)
    compute, _ = counting(["x"])
    await gateway.get_or_compute(DEFAULT_KEY, 60, compute)
    await gateway.get_or_compute(OTHER_KEY, 60, compute)

    await gateway.invalidate()

    assert DEFAULT_KEY not in store
    assert OTHER_KEY not in store


@pytest.mark.asyncio
async def test_single_key_invalidation_leaves_other_pages():
    store = MemoryStore()
    gateway = CacheGateway(store, tag="articles_list", default_key=DEFAULT_KEY)
    compute, _ = counting(["x"])
    await gateway.get_or_compute(DEFAULT_KEY, 60, compute)
    await gateway.get_or_compute(OTHER_KEY, 60, compute)

    await gateway.invalidate()

    assert DEFAULT_KEY not in store
    assert OTHER_KEY in store


# ---------------------------------------------------------------------------
# Gateway: concurrent misses
# ---------------------------------------------------------------------------

def slow_counting(value):
    calls = {"n": 0}

    async def compute():
        calls["n"] += 1
        await asyncio.sleep(0.01)
        return value

    return compute, calls


@pytest.mark.asyncio
async def test_concurrent_misses_both_compute_without_single_flight():
    gateway = CacheGateway(TaggedMemoryStore(), tag="articles_list", default_key=DEFAULT_KEY)
    compute, calls = slow_counting(["page"])

    results = await asyncio.gather(
        gateway.get_or_compute(DEFAULT_KEY, 60, compute),
        gateway.get_or_compute(DEFAULT_KEY, 60, compute),
    )
    assert results == [["page"], ["page"]]
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_single_flight_collapses_concurrent_misses():
    gateway = CacheGateway(
        TaggedMemoryStore(), tag="articles_list", default_key=DEFAULT_KEY, single_flight=True
    )
    compute, calls = slow_counting(["page"])

    results = await asyncio.gather(
        *(gateway.get_or_compute(DEFAULT_KEY, 60, compute) for _ in range(5))
    )
    assert results == [["page"]] * 5
    assert calls["n"] == 1
    assert gateway.stats["misses"] == 1
    assert gateway.stats["hits"] == 4
    assert gateway.stats["hit_rate"] == 80.0


# ---------------------------------------------------------------------------
# Redis stores
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_redis_store_round_trip_with_ttl():
    client = FakeRedis()
    store = RedisStore(client=client)

    await store.put("k", [{"id": 1}], ttl=60)
    assert client.ttls["k"] == 60
    assert await store.get("k") == [{"id": 1}]
    await store.forget("k")
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_tagged_redis_store_tracks_and_flushes_members():
    client = FakeRedis()
    store = TaggedRedisStore(client=client)

    await store.put_tagged(DEFAULT_KEY, ["a"], 60, ["articles_list"])
    await store.put_tagged(OTHER_KEY, ["b"], 60, ["articles_list"])
    assert client.sets["tag:articles_list:keys"] == {DEFAULT_KEY, OTHER_KEY}
    assert client.ttls["tag:articles_list:keys"] == 60

    assert await store.flush_tag("articles_list") == 2
    assert client.values == {}
    assert "tag:articles_list:keys" not in client.sets


@pytest.mark.asyncio
async def test_redis_failures_become_cache_unavailable():
    store = TaggedRedisStore(client=BrokenRedis())
    with pytest.raises(CacheUnavailable):
        await store.get("k")
    with pytest.raises(CacheUnavailable):
        await store.put_tagged("k", [], 60, ["articles_list"])
    with pytest.raises(CacheUnavailable):
        await store.flush_tag("articles_list")


@pytest.mark.asyncio
async def test_unconnected_redis_store_is_unavailable():
    store = RedisStore(url=None)
    with pytest.raises(CacheUnavailable):
        await store.get("k")


@pytest.mark.asyncio
async def test_gateway_over_broken_redis_still_serves():
    gateway = CacheGateway(TaggedRedisStore(client=BrokenRedis()), tag="articles_list", default_key=DEFAULT_KEY)
    compute, calls = counting(["live"])
    assert await gateway.get_or_compute(DEFAULT_KEY, 60, compute) == ["live"]
    assert calls["n"] == 1
