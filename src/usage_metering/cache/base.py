from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

# ttl_remaining() sentinels, same convention as Redis TTL
TTL_NO_EXPIRY = -1
TTL_ABSENT = -2


class AsyncCacheBackend(ABC):
    """
    Minimal async key/value cache with optional per-key TTL.

    The cache is advisory: it accelerates allowance lookups but is never the
    source of truth. A value written with a TTL must read as absent once the
    TTL has elapsed.
    """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def ttl_remaining(self, key: str) -> int:
        """
        Seconds until ``key`` expires, ``TTL_NO_EXPIRY`` if it never does,
        or ``TTL_ABSENT`` if it does not exist.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        return None
