"""Cache storage backends: Redis for shared deployments, in-memory for tests and degraded mode."""

import asyncio
import time
from collections.abc import Callable

from inbox_triage.services.redis_client import FastRedisClient


class CacheBackend:
    """Raw string storage with TTLs. Implementations may raise; CacheService absorbs errors."""

    async def get(self, key: str) -> str | None:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def delete_by_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError


class RedisCacheBackend(CacheBackend):
    def __init__(self, redis_client: FastRedisClient):
        self.redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        return await self.redis.set_with_ttl(key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        return await self.redis.delete(key)

    async def delete_by_prefix(self, prefix: str) -> int:
        return await self.redis.delete_by_prefix(prefix)

    async def ping(self) -> bool:
        return await self.redis.ping()


class InMemoryCacheBackend(CacheBackend):
    """
    Dict-backed store with monotonic-clock expiry.

    Expired entries are dropped when read and swept on write at most once per
    ``prune_interval_seconds``, so keys that are never read again do not pile up.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, prune_interval_seconds: float = 60.0):
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self.prune_interval_seconds = prune_interval_seconds
        self._next_prune = clock() + prune_interval_seconds

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = self._clock()
            if now >= self._next_prune:
                self._prune(now)
            self._entries[key] = (value, now + ttl_seconds)
            return True

    def _prune(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_prune = now + self.prune_interval_seconds

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def delete_by_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    async def ping(self) -> bool:
        return True
