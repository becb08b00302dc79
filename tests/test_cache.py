from __future__ import annotations

import asyncio
import fnmatch

from ci_monitor.cache import MemoryTTLCache, RedisCache, build_cache, get_or_set


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _FakeRedis:
    """The slice of `redis.asyncio.Redis` that RedisCache uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls_ms: dict[str, int] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, px=None):
        self.data[key] = value
        self.ttls_ms[key] = px

    async def delete(self, *keys):
        n = 0
        for k in keys:
            if self.data.pop(k, None) is not None:
                n += 1
        return n

    async def scan_iter(self, match=None):
        for k in list(self.data):
            if match is None or fnmatch.fnmatch(k, match):
                yield k

    async def aclose(self):
        self.closed = True


def test_memory_cache_expires_entries():
    clock = _Clock()
    cache = MemoryTTLCache(clock=clock)

    async def scenario():
        await cache.set("k", [1, 2], ttl_s=10)
        first = await cache.get("k")
        clock.now = 10.0
        second = await cache.get("k")
        return first, second

    first, second = asyncio.run(scenario())
    assert first == [1, 2]
    assert second is None
    assert len(cache) == 0


def test_get_or_set_computes_once_until_invalidated():
    cache = MemoryTTLCache(clock=_Clock())
    calls: list[int] = []

    async def compute():
        calls.append(1)
        return [{"id": len(calls)}]

    async def scenario():
        a = await get_or_set(cache, "alert:rules:enabled", compute, 60)
        b = await get_or_set(cache, "alert:rules:enabled", compute, 60)
        removed = await cache.invalidate("alert:rules:")
        c = await get_or_set(cache, "alert:rules:enabled", compute, 60)
        return a, b, removed, c

    a, b, removed, c = asyncio.run(scenario())
    assert a == b == [{"id": 1}]
    assert removed == 1
    assert c == [{"id": 2}]
    assert len(calls) == 2


def test_invalidate_only_touches_matching_prefix():
    cache = MemoryTTLCache(clock=_Clock())

    async def scenario():
        await cache.set("alert:rules:enabled", [], 60)
        await cache.set("alert:channels:enabled", [], 60)
        await cache.invalidate("alert:rules:")
        return await cache.get("alert:channels:enabled")

    assert asyncio.run(scenario()) == []


def test_redis_cache_stores_json_with_ttl_and_scans_prefix():
    fake = _FakeRedis()
    cache = RedisCache(fake)

    async def scenario():
        await cache.set("alert:channels:enabled", [{"type": "slack"}], 60)
        await cache.set("alert:rules:enabled", [], 60)
        value = await cache.get("alert:channels:enabled")
        removed = await cache.invalidate("alert:channels:")
        await cache.aclose()
        return value, removed

    value, removed = asyncio.run(scenario())
    assert value == [{"type": "slack"}]
    assert fake.ttls_ms["alert:channels:enabled"] == 60_000
    assert removed == 1
    assert "alert:rules:enabled" in fake.data
    assert fake.closed is True


def test_build_cache_defaults_to_memory():
    assert isinstance(build_cache(None), MemoryTTLCache)


def test_redis_cache_keeps_sub_second_ttls():
    fake = _FakeRedis()
    cache = RedisCache(fake)

    async def scenario():
        await cache.set("alert:rules:enabled", [], 0.25)
        await cache.set("alert:channels:enabled", [], 0)

    asyncio.run(scenario())
    assert fake.ttls_ms == {"alert:rules:enabled": 250}
    assert "alert:channels:enabled" not in fake.data
