from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

from ..errors import CacheUnavailableError
from .base import AsyncCacheBackend
from .memory import InMemoryAsyncCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailoverAsyncCache(AsyncCacheBackend):
    """
    Cache adapter that survives the loss of its primary backend.

    The adapter owns its routing state, chiefly the handle of the backend
    currently serving calls. When the primary raises
    ``CacheUnavailableError`` the handle is switched to an in-process
    fallback and the call is served from there, so callers only ever observe
    a possibly cold cache. With ``recover_after_seconds`` set, the first call
    after that interval tries the primary again and switches back if it
    answers.

    Keys written or deleted while on the fallback are remembered. The
    primary still holds its pre-outage values for them, so on recovery
    those keys are deleted from both backends before any other call is
    served by the primary.

    Every operation resolves the handle at call time; nothing else holds a
    reference to the active backend.
    """

    def __init__(
        self,
        primary: AsyncCacheBackend,
        fallback: Optional[AsyncCacheBackend] = None,
        recover_after_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._primary = primary
        self._fallback = fallback if fallback is not None else InMemoryAsyncCache()
        self._recover_after = recover_after_seconds
        self._clock = clock
        self._current: AsyncCacheBackend = primary
        self._failed_at: Optional[float] = None
        self._outage_keys: Set[str] = set()

    @property
    def using_fallback(self) -> bool:
        return self._current is self._fallback

    def _switch_to_fallback(self, error: CacheUnavailableError) -> None:
        if self._current is not self._fallback:
            logger.warning(
                "Cache backend unavailable, switching to in-memory fallback: %s", error
            )
        self._current = self._fallback
        self._failed_at = self._clock()

    def _backend_for_call(self) -> AsyncCacheBackend:
        if (
            self._current is self._fallback
            and self._recover_after is not None
            and self._failed_at is not None
            and self._clock() - self._failed_at >= self._recover_after
        ):
            # Retry the primary on this call; a failure re-arms the timer
            return self._primary
        return self._current

    async def _invalidate_outage_keys(self) -> None:
        for key in sorted(self._outage_keys):
            await self._primary.delete(key)
            await self._fallback.delete(key)
            self._outage_keys.discard(key)

    async def _call(
        self,
        op: Callable[[AsyncCacheBackend], Awaitable[T]],
        key: str,
        mutates: bool = False,
    ) -> T:
        backend = self._backend_for_call()
        if backend is self._fallback:
            return await self._on_fallback(op, key, mutates)
        try:
            if backend is not self._current:
                await self._invalidate_outage_keys()
            result = await op(backend)
        except CacheUnavailableError as e:
            self._switch_to_fallback(e)
            return await self._on_fallback(op, key, mutates)
        if self._current is not backend:
            logger.info("Cache backend reachable again, leaving in-memory fallback")
            self._current = backend
            self._failed_at = None
        return result

    async def _on_fallback(
        self, op: Callable[[AsyncCacheBackend], Awaitable[T]], key: str, mutates: bool
    ) -> T:
        if mutates:
            self._outage_keys.add(key)
        return await op(self._fallback)

    async def exists(self, key: str) -> bool:
        return await self._call(lambda b: b.exists(key), key)

    async def get(self, key: str) -> Optional[str]:
        return await self._call(lambda b: b.get(key), key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._call(lambda b: b.set(key, value, ttl_seconds), key, mutates=True)

    async def ttl_remaining(self, key: str) -> int:
        return await self._call(lambda b: b.ttl_remaining(key), key)

    async def delete(self, key: str) -> None:
        await self._call(lambda b: b.delete(key), key, mutates=True)

    async def close(self) -> None:
        for backend in (self._primary, self._fallback):
            await backend.close()

    def __repr__(self) -> str:
        current: Any = type(self._current).__name__
        return f"{type(self).__name__}(current={current})"
