import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheUnavailable(Exception):
    """The cache store could not be read from or written to."""


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class CacheStore(ABC):
    """
    Plain key/value store: get, put with a TTL, forget by exact key.

    Values are JSON-serialised on the way in, so whatever a caller gets back
    is a fresh copy that cannot alias a cached entry.
    Implementations raise ``CacheUnavailable`` on backend failures.
    """

    driver: str = "abstract"

    async def connect(self) -> None:
        """Open backend resources.  Called once at application startup."""

    async def disconnect(self) -> None:
        """Release backend resources.  Called once at application shutdown."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        ...

    @abstractmethod
    async def put(self, key: str, value: Any, ttl: int) -> None:
        ...

    @abstractmethod
    async def forget(self, key: str) -> None:
        ...


class TaggableStore(CacheStore):
    """A store that can group keys under tags and drop a whole tag at once."""

    @abstractmethod
    async def put_tagged(self, key: str, value: Any, ttl: int, tags: list[str]) -> None:
        ...

    @abstractmethod
    async def flush_tag(self, tag: str) -> int:
        """Delete every key ever stored under *tag*; return how many."""


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError) as exc:
        raise CacheUnavailable(f"value is not serialisable: {exc}") from exc


class MemoryStore(CacheStore):
    """
    In-process store with passive TTL expiry (checked on read).

    Suitable for a single worker and for tests; *clock* is injectable so
    expiry can be exercised without sleeping.
    """

    driver = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return json.loads(raw)

    def _expired(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is None or self._clock() >= entry[1]

    async def put(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (_dumps(value), self._clock() + ttl)

    async def forget(self, key: str) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class TaggedMemoryStore(MemoryStore, TaggableStore):
    driver = "tagged-memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(clock)
        self._tags: dict[str, set[str]] = {}

    async def put_tagged(self, key: str, value: Any, ttl: int, tags: list[str]) -> None:
        await self.put(key, value, ttl)
        for tag in tags:
            members = self._tags.setdefault(tag, set())
            # Drop members that expired or were forgotten since they were tagged.
            members.difference_update([k for k in members if self._expired(k)])
            members.add(key)

    async def flush_tag(self, tag: str) -> int:
        keys = self._tags.pop(tag, set())
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)


class RedisStore(CacheStore):
    """Redis-backed store using plain GET / SET EX / DEL."""

    driver = "redis"

    def __init__(self, url: str | None = None, client: Any = None) -> None:
        self._url = url
        self._redis = client

    async def connect(self) -> None:
        if self._redis is not None or not self._url:
            return
        self._redis = redis.from_url(
            self._url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        # A failed ping is not fatal: every call degrades to CacheUnavailable.
        try:
            await self._redis.ping()
            logger.info("Redis connected: %s", self._url)
        except Exception as exc:  # pragma: no cover
            logger.warning("Redis ping failed, listing cache degraded: %s", exc)

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _client(self):
        if self._redis is None:
            raise CacheUnavailable("redis client is not connected")
        return self._redis

    async def get(self, key: str) -> Any | None:
        client = self._client()
        try:
            data = await client.get(key)
        except Exception as exc:
            raise CacheUnavailable(f"GET {key!r} failed: {exc}") from exc
        return None if data is None else json.loads(data)

    async def put(self, key: str, value: Any, ttl: int) -> None:
        client = self._client()
        serialised = _dumps(value)
        try:
            await client.set(key, serialised, ex=ttl)
        except Exception as exc:
            raise CacheUnavailable(f"SET {key!r} failed: {exc}") from exc

    async def forget(self, key: str) -> None:
        client = self._client()
        try:
            await client.delete(key)
        except Exception as exc:
            raise CacheUnavailable(f"DEL {key!r} failed: {exc}") from exc


class TaggedRedisStore(RedisStore, TaggableStore):
    """
    Redis store with tag support.

    Each tag owns a Redis set of member keys, expiring with the newest
    member.  Flushing a tag deletes every member and the set itself;
    members that already expired are harmless.
    """

    driver = "tagged-redis"

    @staticmethod
    def _tag_key(tag: str) -> str:
        return f"tag:{tag}:keys"

    async def put_tagged(self, key: str, value: Any, ttl: int, tags: list[str]) -> None:
        await self.put(key, value, ttl)
        client = self._client()
        try:
            for tag in tags:
                tag_key = self._tag_key(tag)
                await client.sadd(tag_key, key)
                # The set outlives its newest member and no longer.
                await client.expire(tag_key, ttl)
        except Exception as exc:
            raise CacheUnavailable(f"tagging {key!r} failed: {exc}") from exc

    async def flush_tag(self, tag: str) -> int:
        client = self._client()
        tag_key = self._tag_key(tag)
        try:
            members = list(await client.smembers(tag_key))
            await client.delete(*members, tag_key)
        except Exception as exc:
            raise CacheUnavailable(f"flush of tag {tag!r} failed: {exc}") from exc
        return len(members)


_DRIVERS: dict[str, type[CacheStore]] = {
    MemoryStore.driver: MemoryStore,
    TaggedMemoryStore.driver: TaggedMemoryStore,
    RedisStore.driver: RedisStore,
    TaggedRedisStore.driver: TaggedRedisStore,
}


def create_store(driver: str, redis_url: str | None = None) -> CacheStore:
    """Instantiate the store named by *driver* (see ``Settings.CACHE_DRIVER``)."""
    try:
        store_cls = _DRIVERS[driver]
    except KeyError:
        raise ValueError(
            f"Unknown cache driver {driver!r}; expected one of {sorted(_DRIVERS)}"
        ) from None
    if issubclass(store_cls, RedisStore):
        return store_cls(url=redis_url)
    return store_cls()


# ---------------------------------------------------------------------------
# Invalidation strategies
# ---------------------------------------------------------------------------

class TagScopedInvalidator:
    """Drops every listing page in one call by flushing the listing tag."""

    def __init__(self, tag: str) -> None:
        self.tag = tag

    async def invalidate(self, store: TaggableStore) -> None:
        removed = await store.flush_tag(self.tag)
        logger.info("Flushed %d listing page(s) under tag %r", removed, self.tag)


class SingleKeyInvalidator:
    """
    Forgets the one listing key a plain store can address.

    Pages other than the default page/per_page are left to expire through
    their TTL.
    """

    def __init__(self, key: str) -> None:
        self.key = key

    async def invalidate(self, store: CacheStore) -> None:
        await store.forget(self.key)
        logger.info("Forgot listing key %r (plain store, other pages expire by TTL)", self.key)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class CacheGateway:
    """
    Read-through cache over a plain or taggable store.

    The invalidation strategy is picked once, at construction, from the
    store's capability.  Store failures on read count as a miss and store
    failures on write are logged; neither fails the caller.  Failures of
    the compute function are never cached and always propagate.
    """

    def __init__(
        self,
        store: CacheStore,
        tag: str,
        default_key: str,
        single_flight: bool = False,
    ) -> None:
        self.store = store
        self.tag = tag
        self.invalidator: TagScopedInvalidator | SingleKeyInvalidator
        if isinstance(store, TaggableStore):
            self.invalidator = TagScopedInvalidator(tag)
        else:
            self.invalidator = SingleKeyInvalidator(default_key)
        self._single_flight = single_flight
        self._locks: dict[str, asyncio.Lock] = {}
        self._hits: int = 0
        self._misses: int = 0
        self._errors: int = 0

    @property
    def supports_tags(self) -> bool:
        return isinstance(self.store, TaggableStore)

    async def _read(self, key: str) -> Any | None:
        try:
            return await self.store.get(key)
        except CacheUnavailable as exc:
            self._errors += 1
            logger.warning("Cache read failed for key=%r, computing live: %s", key, exc)
            return None

    async def _write(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            if isinstance(self.store, TaggableStore):
                await self.store.put_tagged(key, value, ttl_seconds, [self.tag])
            else:
                await self.store.put(key, value, ttl_seconds)
        except CacheUnavailable as exc:
            self._errors += 1
            logger.warning("Cache write failed for key=%r: %s", key, exc)

    async def get_or_compute(
        self,
        key: str,
        ttl_seconds: int,
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        cached = await self._read(key)
        if cached is not None:
            self._hits += 1
            return cached

        if not self._single_flight:
            self._misses += 1
            value = await compute()
            await self._write(key, value, ttl_seconds)
            return value

        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                # Another task may have filled the key while we waited.
                cached = await self._read(key)
                if cached is not None:
                    self._hits += 1
                    return cached
                self._misses += 1
                value = await compute()
                await self._write(key, value, ttl_seconds)
                return value
        finally:
            if not lock.locked() and self._locks.get(key) is lock:
                del self._locks[key]

    async def invalidate(self) -> None:
        """Run the configured invalidation; raises ``CacheUnavailable``."""
        await self.invalidator.invalidate(self.store)

    @property
    def stats(self) -> dict:
        """Snapshot of hit/miss counters for the metrics endpoint."""
        total = self._hits + self._misses
        return {
            "driver": self.store.driver,
            "supports_tags": self.supports_tags,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }
