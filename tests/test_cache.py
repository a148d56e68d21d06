from __future__ import annotations

import pytest

from rowguard.security.cache import CacheProvider, InMemoryCacheProvider, PatternCacheProvider


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache = InMemoryCacheProvider(clock=clock)

    await cache.set("rls:roles:u1:-", {"roles": ["admin"]}, 10)
    assert await cache.get("rls:roles:u1:-") == {"roles": ["admin"]}

    clock.now = 10
    assert await cache.get("rls:roles:u1:-") is None
    assert cache.size == 0


@pytest.mark.asyncio
async def test_delete_pattern_only_removes_matching_user() -> None:
    cache = InMemoryCacheProvider()
    await cache.set("rls:roles:u1:t1", {"a": 1}, 60)
    await cache.set("rls:perms:u1:-", {"b": 2}, 60)
    await cache.set("rls:roles:u2:t1", {"c": 3}, 60)

    removed = await cache.delete_pattern("rls:*:u1:*")

    assert removed == 2
    assert await cache.get("rls:roles:u2:t1") == {"c": 3}
    assert await cache.get("rls:roles:u1:t1") is None


@pytest.mark.asyncio
async def test_lru_eviction_and_purge() -> None:
    clock = _Clock()
    cache = InMemoryCacheProvider(maxsize=2, clock=clock)
    await cache.set("a", 1, 5)
    await cache.set("b", 2, 50)
    await cache.get("a")
    await cache.set("c", 3, 50)

    assert await cache.get("b") is None
    assert await cache.get("a") == 1

    clock.now = 6
    assert cache.purge_expired() == 1
    assert cache.size == 1

    await cache.delete("c")
    cache.clear()
    assert cache.size == 0


def test_in_memory_provider_satisfies_protocols() -> None:
    cache = InMemoryCacheProvider()
    assert isinstance(cache, CacheProvider)
    assert isinstance(cache, PatternCacheProvider)
