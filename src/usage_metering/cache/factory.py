from __future__ import annotations

import logging

from ..config import Settings
from .base import AsyncCacheBackend
from .failover import FailoverAsyncCache
from .memory import InMemoryAsyncCache

logger = logging.getLogger(__name__)


def create_cache(settings: Settings) -> AsyncCacheBackend:
    """
    Build the cache adapter for the configured environment.

    With a Redis URL the adapter fails over to process memory whenever Redis
    is unreachable; without one it is process memory only.
    """
    if not settings.redis_url:
        logger.info("No redis_url configured, using in-memory cache")
        return InMemoryAsyncCache()

    from .redis_cache import RedisAsyncCache

    logger.info("Using redis cache with in-memory failover")
    primary = RedisAsyncCache.from_url(
        settings.redis_url, timeout_seconds=settings.cache_timeout_seconds
    )
    return FailoverAsyncCache(
        primary=primary,
        fallback=InMemoryAsyncCache(),
        recover_after_seconds=settings.cache_recover_after_seconds,
    )
