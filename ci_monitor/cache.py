from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from .observability import get_logger

logger = get_logger("cache")


class CachePort(Protocol):
    """Async get/set cache with per-entry TTL.

    Values must be JSON-compatible so every backend stores the same shapes.
    """

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_s: float) -> None: ...

    async def invalidate(self, prefix: str) -> int: ...


class MemoryTTLCache:
    """In-process cache. Expired entries are dropped lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_s: float) -> None:
        if ttl_s <= 0:
            self._entries.pop(key, None)
            return
        self._entries[key] = (self._clock() + float(ttl_s), value)

    async def invalidate(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache:
    """Shared cache backed by `redis.asyncio` (used when REDIS_URL is set)."""

    def __init__(self, redis: Any) -> None:
        self._redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        from redis.asyncio import Redis

        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_s: float) -> None:
        ttl_ms = int(float(ttl_s) * 1000)
        if ttl_ms <= 0:
            await self._redis.delete(key)
            return
        await self._redis.set(key, json.dumps(value, ensure_ascii=False), px=ttl_ms)

    async def invalidate(self, prefix: str) -> int:
        keys = [k async for k in self._redis.scan_iter(match=f"{prefix}*")]
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def aclose(self) -> None:
        await self._redis.aclose()


async def get_or_set(cache: CachePort, key: str, compute: Callable[[], Awaitable[Any]], ttl_s: float) -> Any:
    cached = await cache.get(key)
    if cached is not None:
        return cached

    value = await compute()
    await cache.set(key, value, ttl_s)
    logger.debug("cache fill key=%s ttl_s=%s", key, ttl_s)
    return value


def build_cache(redis_url: str | None) -> CachePort:
    if redis_url:
        return RedisCache.from_url(redis_url)
    return MemoryTTLCache()
