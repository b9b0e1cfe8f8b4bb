from __future__ import annotations

import math
import time
from typing import Callable, Dict, Optional, Tuple

from .base import TTL_ABSENT, TTL_NO_EXPIRY, AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Single-process cache with optional TTL.

    Used directly in tests and local development, and as the fallback store
    when the distributed cache is unreachable. Expiry is lazy: an expired
    entry is dropped the next time it is touched.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live_entry(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._store.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._store.pop(key, None)
            return None
        return entry

    async def exists(self, key: str) -> bool:
        return self._live_entry(key) is not None

    async def get(self, key: str) -> Optional[str]:
        entry = self._live_entry(key)
        return entry[0] if entry is not None else None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            # Already expired
            self._store.pop(key, None)
            return
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._store[key] = (value, expires_at)

    async def ttl_remaining(self, key: str) -> int:
        entry = self._live_entry(key)
        if entry is None:
            return TTL_ABSENT
        _, expires_at = entry
        if expires_at is None:
            return TTL_NO_EXPIRY
        return max(math.ceil(expires_at - self._clock()), 0)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)
