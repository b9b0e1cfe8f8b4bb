from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import CacheError, CacheUnavailableError
from .base import AsyncCacheBackend

logger = logging.getLogger(__name__)


class RedisAsyncCache(AsyncCacheBackend):
    """
    Distributed cache backed by ``redis.asyncio``.

    Connect and command timeouts are kept sub-second so a dead cache never
    stalls a metered request. Unreachable-server errors surface as
    ``CacheUnavailableError`` (the failover adapter reacts to those), any
    other Redis failure as ``CacheError``.
    """

    def __init__(self, client: Redis) -> None:
        self._r = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 0.5) -> "RedisAsyncCache":
        client = Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=True,
        )
        return cls(client)

    @asynccontextmanager
    async def _guard(self, op: str, key: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError, TimeoutError) as e:
            raise CacheUnavailableError(f"redis {op} {key!r} failed: {e}") from e
        except RedisError as e:
            logger.warning("Redis %s failed for key %s: %s", op, key, e)
            raise CacheError(f"redis {op} {key!r} failed: {e}") from e

    async def exists(self, key: str) -> bool:
        async with self._guard("exists", key):
            return bool(await self._r.exists(key))

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get", key):
            value = await self._r.get(key)
        if value is None:
            return None
        return value.decode() if isinstance(value, (bytes, bytearray)) else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async with self._guard("set", key):
            if ttl_seconds is not None:
                if ttl_seconds <= 0:
                    await self._r.delete(key)
                    return
                await self._r.set(key, value, ex=ttl_seconds)
            else:
                await self._r.set(key, value)

    async def ttl_remaining(self, key: str) -> int:
        async with self._guard("ttl", key):
            return int(await self._r.ttl(key))

    async def delete(self, key: str) -> None:
        async with self._guard("delete", key):
            await self._r.delete(key)

    async def close(self) -> None:
        try:
            await self._r.aclose()
        except RedisError as e:
            logger.warning("Error closing redis client: %s", e)
