"""Tests for the in-process cache backend and the cache-aside layer.

Tests for:
- TTL expiry and atomic get-and-delete on MemoryCache
- Pattern scans and batched invalidation
- CacheAside degrading to misses on failures
"""

import asyncio
import json

from tasktrack.service.cache import (
    CacheAside,
    todo_item_key,
    todo_list_key,
    todo_user_pattern,
    user_email_key,
)
from tasktrack.storage.memory_cache import MemoryCache
from tasktrack.storage.models import Todo


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenBackend:
    """Backend whose every call fails like a dropped connection."""

    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("redis down")

    async def delete(self, *keys):
        raise ConnectionError("redis down")

    async def delete_pattern(self, pattern, *, batch_size=100):
        raise ConnectionError("redis down")


class SlowBackend(MemoryCache):
    async def get(self, key):
        await asyncio.sleep(5)
        return None


class TestKeys:
    def test_key_layout(self):
        assert user_email_key("Alice@Example.com") == "user:email:alice@example.com"
        assert todo_list_key("u1", "page=1") == "todos:user:u1:list:page=1"
        assert todo_item_key("u1", "t1") == "todos:user:u1:item:t1"
        assert todo_user_pattern("u1") == "todos:user:u1:*"


class TestMemoryCache:
    """Tests for MemoryCache semantics."""

    async def test_set_get_and_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 10)
        assert await cache.get("k") == "v"
        clock.now += 10
        assert await cache.get("k") is None

    async def test_getdel_returns_once(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        assert await cache.getdel("k") == "v"
        assert await cache.getdel("k") is None

    async def test_concurrent_getdel_has_single_winner(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        results = await asyncio.gather(*(cache.getdel("k") for _ in range(10)))
        assert results.count("v") == 1

    async def test_delete_counts_only_live_keys(self):
        cache = MemoryCache()
        await cache.set("a", "1", 60)
        assert await cache.delete("a", "missing") == 1

    async def test_scan_walks_all_matching_keys(self):
        cache = MemoryCache()
        for i in range(25):
            await cache.set(f"todos:user:u1:item:{i}", "x", 60)
        await cache.set("user:email:a@b.co", "x", 60)
        found = []
        cursor = 0
        while True:
            cursor, keys = await cache.scan(cursor, "todos:user:u1:*", count=10)
            found.extend(keys)
            if cursor == 0:
                break
        assert len(found) == 25

    async def test_delete_pattern_spares_other_users(self):
        cache = MemoryCache()
        for i in range(250):
            await cache.set(f"todos:user:u1:item:{i}", "x", 60)
        await cache.set("todos:user:u2:item:0", "y", 60)
        deleted = await cache.delete_pattern("todos:user:u1:*")
        assert deleted == 250
        assert await cache.get("todos:user:u1:item:5") is None
        assert await cache.get("todos:user:u2:item:0") == "y"


class TestCacheAside:
    """Tests for CacheAside read-through and invalidation."""

    async def test_set_then_get_returns_value(self):
        aside = CacheAside(MemoryCache())
        await aside.set_cached("k", {"a": 1}, 60)
        assert await aside.get_cached("k", lambda data: data) == {"a": 1}

    async def test_ttl_expiry_is_a_miss(self):
        clock = FakeClock()
        aside = CacheAside(MemoryCache(clock=clock))
        await aside.set_cached("k", [1, 2], 5)
        clock.now += 6
        assert await aside.get_cached("k", list) is None

    async def test_delete_by_prefix_invalidates(self):
        backend = MemoryCache()
        aside = CacheAside(backend)
        await aside.set_cached(todo_item_key("u1", "t1"), {"x": 1}, 60)
        await aside.set_cached(todo_list_key("u1", "sig"), {"x": 2}, 60)
        assert await aside.delete_by_prefix(todo_user_pattern("u1")) == 2
        assert await aside.get_cached(todo_item_key("u1", "t1"), dict) is None

    async def test_corrupt_entry_is_a_miss(self):
        backend = MemoryCache()
        await backend.set("k", "{not json", 60)
        aside = CacheAside(backend)
        assert await aside.get_cached("k", dict) is None

    async def test_decode_failure_is_a_miss(self):
        backend = MemoryCache()
        await backend.set("k", json.dumps({"id": "t1"}), 60)
        aside = CacheAside(backend)
        assert await aside.get_cached("k", Todo.from_dict) is None

    async def test_backend_failures_are_absorbed(self):
        aside = CacheAside(BrokenBackend())
        assert await aside.get_cached("k", dict) is None
        await aside.set_cached("k", {"a": 1}, 60)
        await aside.delete("k")
        assert await aside.delete_by_prefix("todos:user:u1:*") == 0

    async def test_timeout_is_a_miss(self):
        aside = CacheAside(SlowBackend(), timeout_seconds=0.05)
        assert await aside.get_cached("k", dict) is None

    async def test_get_or_load_populates_once(self):
        aside = CacheAside(MemoryCache())
        calls = []

        async def load():
            calls.append(1)
            return {"value": 42}

        first = await aside.get_or_load("k", 60, load, encode=dict, decode=dict)
        second = await aside.get_or_load("k", 60, load, encode=dict, decode=dict)
        assert first == second == {"value": 42}
        assert len(calls) == 1

    async def test_get_or_load_does_not_cache_absence(self):
        backend = MemoryCache()
        aside = CacheAside(backend)

        async def load():
            return None

        assert await aside.get_or_load("k", 60, load, encode=dict, decode=dict) is None
        assert await backend.get("k") is None
