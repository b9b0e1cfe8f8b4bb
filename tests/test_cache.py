from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from usage_metering.cache.base import TTL_ABSENT, TTL_NO_EXPIRY, AsyncCacheBackend
from usage_metering.cache.factory import create_cache
from usage_metering.cache.failover import FailoverAsyncCache
from usage_metering.cache.memory import InMemoryAsyncCache
from usage_metering.cache.redis_cache import RedisAsyncCache
from usage_metering.config import Settings
from usage_metering.errors import CacheError, CacheUnavailableError


class SwitchableCache(InMemoryAsyncCache):
    """In-memory cache that raises CacheUnavailableError while ``down``."""

    def __init__(self) -> None:
        super().__init__()
        self.down = False
        self.calls = 0

    def _check(self) -> None:
        self.calls += 1
        if self.down:
            raise CacheUnavailableError("connection refused")

    async def get(self, key):
        self._check()
        return await super().get(key)

    async def set(self, key, value, ttl_seconds=None):
        self._check()
        await super().set(key, value, ttl_seconds)

    async def exists(self, key):
        self._check()
        return await super().exists(key)

    async def delete(self, key):
        self._check()
        await super().delete(key)


class StubRedis:
    """Just enough of redis.asyncio.Redis for the adapter, failing on demand."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.data: dict[str, str] = {}
        self.closed = False

    async def get(self, key):
        if self.error:
            raise self.error
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        if self.error:
            raise self.error
        self.data[key] = value

    async def exists(self, key):
        if self.error:
            raise self.error
        return int(key in self.data)

    async def ttl(self, key):
        if self.error:
            raise self.error
        return -1 if key in self.data else -2

    async def delete(self, key):
        if self.error:
            raise self.error
        self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_memory_cache_set_get_delete(cache):
    assert await cache.get("k") is None
    assert await cache.exists("k") is False

    await cache.set("k", "v")
    assert await cache.get("k") == "v"
    assert await cache.exists("k") is True
    assert await cache.ttl_remaining("k") == TTL_NO_EXPIRY

    await cache.delete("k")
    assert await cache.get("k") is None
    assert await cache.ttl_remaining("k") == TTL_ABSENT


@pytest.mark.asyncio
async def test_memory_cache_expires_lazily(cache, clock):
    await cache.set("k", "v", ttl_seconds=10)
    assert await cache.ttl_remaining("k") == 10

    clock.advance(9.5)
    assert await cache.ttl_remaining("k") == 1
    assert await cache.get("k") == "v"

    clock.advance(0.5)
    assert await cache.get("k") is None
    assert await cache.exists("k") is False
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_memory_cache_non_positive_ttl_removes_key(cache):
    await cache.set("k", "v")
    await cache.set("k", "v2", ttl_seconds=0)
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_failover_serves_from_fallback_when_primary_down(clock):
    primary = SwitchableCache()
    fallback = InMemoryAsyncCache(clock=clock)
    adapter = FailoverAsyncCache(primary, fallback, recover_after_seconds=None, clock=clock)

    await adapter.set("a", "1")
    assert await primary.get("a") == "1"
    assert not adapter.using_fallback

    primary.down = True
    # Callers never see the failure
    await adapter.set("b", "2")
    assert adapter.using_fallback
    assert await adapter.get("b") == "2"
    assert await fallback.get("b") == "2"

    # Without a recovery interval the primary is never tried again
    calls = primary.calls
    primary.down = False
    clock.advance(3600)
    assert await adapter.exists("b") is True
    assert primary.calls == calls


@pytest.mark.asyncio
async def test_failover_retries_primary_after_recovery_interval(clock):
    primary = SwitchableCache()
    adapter = FailoverAsyncCache(
        primary, InMemoryAsyncCache(clock=clock), recover_after_seconds=30, clock=clock
    )

    primary.down = True
    await adapter.set("k", "fallback")
    assert adapter.using_fallback

    clock.advance(10)
    assert await adapter.get("k") == "fallback"
    assert adapter.using_fallback

    # Still down at the retry: stay on the fallback and re-arm the timer
    clock.advance(25)
    assert await adapter.get("k") == "fallback"
    assert adapter.using_fallback

    primary.down = False
    clock.advance(30)
    await adapter.set("k", "primary")
    assert not adapter.using_fallback
    assert await primary.get("k") == "primary"


@pytest.mark.asyncio
async def test_recovery_drops_primary_entries_written_over_during_outage(clock):
    primary = SwitchableCache()
    adapter = FailoverAsyncCache(
        primary, InMemoryAsyncCache(clock=clock), recover_after_seconds=30, clock=clock
    )
    await adapter.set("k", "before-outage")
    await adapter.set("untouched", "kept")

    primary.down = True
    await adapter.set("k", "during-outage")
    assert await adapter.get("k") == "during-outage"

    primary.down = False
    clock.advance(30)
    # The primary's copy predates the outage, so the key reads as cold
    assert await adapter.get("k") is None
    assert not adapter.using_fallback
    assert await primary.get("k") is None
    assert await adapter.get("untouched") == "kept"


@pytest.mark.asyncio
async def test_failed_invalidation_keeps_serving_from_fallback(clock):
    primary = SwitchableCache()
    adapter = FailoverAsyncCache(
        primary, InMemoryAsyncCache(clock=clock), recover_after_seconds=30, clock=clock
    )
    await adapter.set("k", "before-outage")
    primary.down = True
    await adapter.set("k", "during-outage")

    # Recovery fails while deleting the stale key: nothing is lost
    clock.advance(30)
    assert await adapter.get("k") == "during-outage"
    assert adapter.using_fallback

    primary.down = False
    clock.advance(30)
    assert await adapter.get("k") is None
    assert not adapter.using_fallback


@pytest.mark.asyncio
async def test_redis_connection_errors_become_cache_unavailable():
    cache = RedisAsyncCache(StubRedis(RedisConnectionError("refused")))
    with pytest.raises(CacheUnavailableError):
        await cache.get("k")


@pytest.mark.asyncio
async def test_redis_other_errors_become_cache_error():
    cache = RedisAsyncCache(StubRedis(ResponseError("WRONGTYPE")))
    with pytest.raises(CacheError) as excinfo:
        await cache.set("k", "v", ttl_seconds=5)
    assert not isinstance(excinfo.value, CacheUnavailableError)


@pytest.mark.asyncio
async def test_redis_adapter_round_trip_and_ttl_sentinels():
    client = StubRedis()
    cache = RedisAsyncCache(client)
    await cache.set("k", "v")
    assert await cache.get("k") == "v"
    assert await cache.ttl_remaining("k") == TTL_NO_EXPIRY
    assert await cache.ttl_remaining("missing") == TTL_ABSENT
    await cache.close()
    assert client.closed


@pytest.mark.asyncio
async def test_failover_over_unreachable_redis(clock):
    adapter = FailoverAsyncCache(
        RedisAsyncCache(StubRedis(RedisConnectionError("refused"))),
        InMemoryAsyncCache(clock=clock),
        clock=clock,
    )
    await adapter.set("k", "v", ttl_seconds=60)
    assert await adapter.get("k") == "v"
    assert await adapter.ttl_remaining("k") == 60
    assert adapter.using_fallback


def test_create_cache_without_redis_is_memory_only():
    cache = create_cache(Settings(_env_file=None, redis_url=None))
    assert isinstance(cache, InMemoryAsyncCache)


def test_create_cache_with_redis_wraps_in_failover():
    cache = create_cache(Settings(_env_file=None, redis_url="redis://localhost:6399/0"))
    assert isinstance(cache, FailoverAsyncCache)
    assert isinstance(cache, AsyncCacheBackend)
    assert not cache.using_fallback
