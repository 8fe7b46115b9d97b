"""
Unit tests for cache backends and eviction strategies.

Tests cover:
- LRU, TTL and smart strategies with an injected clock
- Tag and pattern invalidation
- Redis backend envelopes, tags and hit-sensitive expiry (mocked client)
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from redis.exceptions import ConnectionError as RedisConnectionError

from collforge.errors import CacheError, ConfigurationError
from collforge.plugins.cache_backends import (
    CacheBackend,
    CacheEntry,
    CacheStats,
    LRUStrategy,
    MemoryCacheBackend,
    RedisCacheBackend,
    SmartStrategy,
    TTLStrategy,
    build_strategy,
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestStrategies:
    """Tests for the eviction strategies."""

    def test_build_strategy(self):
        assert isinstance(build_strategy("lru"), LRUStrategy)
        assert build_strategy("ttl").default_ttl == 300.0
        assert build_strategy("smart", 60).default_ttl == 60

    def test_unknown_strategy(self):
        with pytest.raises(ConfigurationError, match="Unknown cache strategy"):
            build_strategy("fifo")

    def test_smart_ttl_by_heat(self):
        """Hot entries live longer than the base TTL, cold ones shorter."""
        strategy = SmartStrategy(default_ttl=100, hot_threshold=3, hot_multiplier=4, cold_divisor=2)
        cold = CacheEntry("k", 1, ttl=100, hits=0)
        hot = CacheEntry("k", 1, ttl=100, hits=3)

        assert strategy.effective_ttl(cold) == 50
        assert strategy.effective_ttl(hot) == 400

    def test_smart_rejects_bad_options(self):
        with pytest.raises(ConfigurationError):
            SmartStrategy(hot_threshold=0)

    def test_no_ttl_never_expires(self):
        assert not LRUStrategy().expired(CacheEntry("k", 1, ttl=None), now=1e12)


class TestMemoryCacheBackend:
    """Tests for MemoryCacheBackend."""

    @pytest.mark.asyncio
    async def test_get_set(self):
        backend = MemoryCacheBackend()

        await backend.set("k", {"a": 1})

        assert await backend.get("k") == {"a": 1}
        assert await backend.get("missing") is None

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        """Mutating a returned value never changes the cached one."""
        backend = MemoryCacheBackend()
        await backend.set("k", [{"title": "a"}])

        value = await backend.get("k")
        value[0]["title"] = "changed"

        assert await backend.get("k") == [{"title": "a"}]

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        """The least recently used entry is evicted at capacity."""
        backend = MemoryCacheBackend(LRUStrategy(), max_entries=3)
        for key in ("k1", "k2", "k3"):
            await backend.set(key, key)

        await backend.get("k1")
        await backend.set("k4", "k4")

        assert await backend.get("k2") is None
        assert await backend.get("k1") == "k1"
        assert backend.evictions == 1

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeClock()
        backend = MemoryCacheBackend(TTLStrategy(default_ttl=10), clock=clock)
        await backend.set("k", "v")

        clock.advance(9)
        assert await backend.get("k") == "v"

        clock.advance(1)
        assert await backend.get("k") is None
        assert backend.expirations == 1

    @pytest.mark.asyncio
    async def test_per_entry_ttl(self):
        clock = FakeClock()
        backend = MemoryCacheBackend(TTLStrategy(default_ttl=10), clock=clock)
        await backend.set("short", "v", ttl=2)
        await backend.set("long", "v")

        clock.advance(5)

        assert await backend.get("short") is None
        assert await backend.get("long") == "v"

    @pytest.mark.asyncio
    async def test_ttl_evicts_oldest(self):
        clock = FakeClock()
        backend = MemoryCacheBackend(TTLStrategy(default_ttl=100), max_entries=2, clock=clock)
        await backend.set("old", 1)
        clock.advance(1)
        await backend.set("new", 2)
        await backend.get("old")

        await backend.set("newest", 3)

        assert await backend.get("old") is None
        assert await backend.get("new") == 2

    @pytest.mark.asyncio
    async def test_expired_entries_purged_before_eviction(self):
        clock = FakeClock()
        backend = MemoryCacheBackend(TTLStrategy(default_ttl=100), max_entries=2, clock=clock)
        await backend.set("short", 1, ttl=1)
        await backend.set("long", 2)
        clock.advance(2)

        await backend.set("third", 3)

        assert backend.evictions == 0
        assert backend.expirations == 1
        assert await backend.get("long") == 2

    @pytest.mark.asyncio
    async def test_smart_keeps_hot_entries(self):
        """A hot entry outlives the base TTL; a cold one expires early."""
        clock = FakeClock()
        strategy = SmartStrategy(default_ttl=100, hot_threshold=2, hot_multiplier=4, cold_divisor=2)
        backend = MemoryCacheBackend(strategy, clock=clock)
        await backend.set("hot", "h")
        await backend.set("cold", "c")
        await backend.get("hot")
        await backend.get("hot")

        clock.advance(150)

        assert await backend.get("cold") is None
        assert await backend.get("hot") == "h"
        assert backend.entry("hot").hits == 3

    @pytest.mark.asyncio
    async def test_smart_evicts_least_used(self):
        backend = MemoryCacheBackend(SmartStrategy(default_ttl=100), max_entries=2)
        await backend.set("popular", 1)
        await backend.set("unpopular", 2)
        await backend.get("popular")

        await backend.set("new", 3)

        assert await backend.get("unpopular") is None
        assert await backend.get("popular") == 1

    @pytest.mark.asyncio
    async def test_delete_tags(self):
        backend = MemoryCacheBackend()
        await backend.set("a", 1, tags=["record:posts:1", "collection:posts"])
        await backend.set("b", 2, tags=["record:posts:2", "collection:posts"])
        await backend.set("c", 3, tags=["collection:users"])

        removed = await backend.delete_tags(["record:posts:1"])

        assert removed == 1
        assert await backend.get("a") is None
        assert await backend.get("b") == 2
        assert await backend.delete_tags(["collection:posts"]) == 1
        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_delete_pattern(self):
        backend = MemoryCacheBackend()
        await backend.set("cf:posts:find_many:1", 1)
        await backend.set("cf:posts:count:1", 2)
        await backend.set("cf:users:find_many:1", 3)

        assert await backend.delete_pattern("cf:posts:*") == 2
        assert await backend.get("cf:users:find_many:1") == 3

    @pytest.mark.asyncio
    async def test_clear_and_stats(self):
        backend = MemoryCacheBackend(max_entries=10)
        await backend.set("a", 1)

        assert await backend.clear() == 1
        stats = await backend.stats()
        assert stats["backend"] == "memory"
        assert stats["size"] == 0
        assert stats["max_entries"] == 10

    def test_rejects_zero_capacity(self):
        with pytest.raises(ConfigurationError):
            MemoryCacheBackend(max_entries=0)

    def test_satisfies_protocol(self):
        assert isinstance(MemoryCacheBackend(), CacheBackend)


class TestCacheStats:
    """Tests for CacheStats."""

    def test_hit_rate(self):
        stats = CacheStats(hits=3, misses=1)

        assert stats.hit_rate == 0.75
        assert stats.to_dict()["hit_rate"] == 0.75

    def test_empty_hit_rate(self):
        assert CacheStats().hit_rate == 0.0


def _scan(keys):
    """scan_iter() replacement yielding the given keys."""
    async def scan_iter(match=None):
        for key in keys:
            yield key

    return MagicMock(side_effect=scan_iter)


class FakePipeline:
    """Records queued commands; execute() returns the next configured result list."""

    def __init__(self):
        self.commands = []
        self.results = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self):
        return self.results.pop(0) if self.results else []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.pipe = FakePipeline()
    client.pipeline = MagicMock(return_value=client.pipe)
    client.mget = AsyncMock(return_value=[])
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.sadd = AsyncMock(return_value=1)
    client.smembers = AsyncMock(return_value=set())
    client.aclose = AsyncMock()
    return client


class TestRedisCacheBackend:
    """Tests for RedisCacheBackend against a mocked client."""

    @pytest.mark.asyncio
    async def test_set_writes_envelope_and_tags(self, redis_client):
        """Tag sets live at least as long as their longest-lived member."""
        clock = FakeClock(500.0)
        backend = RedisCacheBackend(redis_client, TTLStrategy(default_ttl=30), clock=clock)

        await backend.set("cf:posts:count:x", 7, tags=["collection:posts"])

        key, payload = redis_client.set.call_args.args
        assert key == "cf:posts:count:x"
        assert json.loads(payload) == {
            "value": 7,
            "ttl": 30,
            "created_at": 500.0,
            "hits": 0,
            "tags": ["collection:posts"],
        }
        assert redis_client.set.call_args.kwargs["ex"] == 30
        tag_key = "collforge:tag:collection:posts"
        assert redis_client.pipe.commands == [
            ("sadd", (tag_key, "cf:posts:count:x"), {}),
            ("expire", (tag_key, 30), {"nx": True}),
            ("expire", (tag_key, 30), {"gt": True}),
        ]

    @pytest.mark.asyncio
    async def test_set_without_ttl_keeps_tag_set(self, redis_client):
        backend = RedisCacheBackend(redis_client, LRUStrategy())

        await backend.set("k", 1, tags=["collection:posts"])

        assert redis_client.set.call_args.kwargs["ex"] is None
        assert ("persist", ("collforge:tag:collection:posts",), {}) in redis_client.pipe.commands

    @pytest.mark.asyncio
    async def test_set_without_tags_skips_pipeline(self, redis_client):
        backend = RedisCacheBackend(redis_client)

        await backend.set("k", 1)

        redis_client.pipeline.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_miss(self, redis_client):
        backend = RedisCacheBackend(redis_client)

        assert await backend.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_hit(self, redis_client):
        clock = FakeClock(510.0)
        envelope = {"value": [{"id": "1"}], "ttl": 30, "created_at": 500.0, "hits": 0}
        redis_client.get.return_value = json.dumps(envelope)
        backend = RedisCacheBackend(redis_client, TTLStrategy(default_ttl=30), clock=clock)

        assert await backend.get("k") == [{"id": "1"}]
        redis_client.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_expired(self, redis_client):
        clock = FakeClock(600.0)
        envelope = {"value": 1, "ttl": 30, "created_at": 500.0, "hits": 0}
        redis_client.get.return_value = json.dumps(envelope)
        backend = RedisCacheBackend(redis_client, TTLStrategy(default_ttl=30), clock=clock)

        assert await backend.get("k") is None
        redis_client.delete.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_smart_hit_rewrites_expiry(self, redis_client):
        """A hit turning an entry hot extends its expiry."""
        clock = FakeClock(510.0)
        envelope = {"value": 1, "ttl": 100, "created_at": 500.0, "hits": 1}
        redis_client.get.return_value = json.dumps(envelope)
        strategy = SmartStrategy(default_ttl=100, hot_threshold=2, hot_multiplier=4)
        backend = RedisCacheBackend(redis_client, strategy, clock=clock)

        assert await backend.get("k") == 1

        _, payload = redis_client.set.call_args.args
        assert json.loads(payload)["hits"] == 2
        assert redis_client.set.call_args.kwargs["ex"] == 390

    @pytest.mark.asyncio
    async def test_delete_pattern(self, redis_client):
        redis_client.scan_iter = _scan(["cf:posts:a", "cf:posts:b"])
        redis_client.delete.return_value = 2
        backend = RedisCacheBackend(redis_client)

        assert await backend.delete_pattern("cf:posts:*") == 2
        redis_client.scan_iter.assert_called_once_with(match="cf:posts:*")
        redis_client.delete.assert_awaited_once_with("cf:posts:a", "cf:posts:b")

    @pytest.mark.asyncio
    async def test_delete_pattern_no_keys(self, redis_client):
        redis_client.scan_iter = _scan([])
        backend = RedisCacheBackend(redis_client)

        assert await backend.delete_pattern("cf:none:*") == 0
        redis_client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_tags(self, redis_client):
        """Dropped keys are also removed from the tag sets that were not invalidated."""
        redis_client.smembers.return_value = {"k2", "k1"}
        redis_client.mget.return_value = [
            json.dumps({"value": 1, "tags": ["record:posts:1", "collection:posts"]}),
            None,
        ]
        redis_client.pipe.results = [[1, 2, 1]]
        backend = RedisCacheBackend(redis_client, prefix="cf")

        assert await backend.delete_tags(["record:posts:1"]) == 2
        redis_client.mget.assert_awaited_once_with(["k1", "k2"])
        assert redis_client.pipe.commands == [
            ("srem", ("cf:tag:collection:posts", "k1"), {}),
            ("delete", ("k1", "k2"), {}),
            ("delete", ("cf:tag:record:posts:1",), {}),
        ]

    @pytest.mark.asyncio
    async def test_delete_tags_without_members(self, redis_client):
        redis_client.pipe.results = [[0]]
        backend = RedisCacheBackend(redis_client, prefix="cf")

        assert await backend.delete_tags(["record:posts:9"]) == 0
        redis_client.mget.assert_not_awaited()
        assert redis_client.pipe.commands == [("delete", ("cf:tag:record:posts:9",), {})]

    @pytest.mark.asyncio
    async def test_smart_hit_extends_tag_sets(self, redis_client):
        clock = FakeClock(510.0)
        envelope = {"value": 1, "ttl": 100, "created_at": 500.0, "hits": 1, "tags": ["collection:posts"]}
        redis_client.get.return_value = json.dumps(envelope)
        strategy = SmartStrategy(default_ttl=100, hot_threshold=2, hot_multiplier=4)
        backend = RedisCacheBackend(redis_client, strategy, clock=clock)

        await backend.get("k")

        assert ("expire", ("collforge:tag:collection:posts", 390), {"gt": True}) in redis_client.pipe.commands

    @pytest.mark.asyncio
    async def test_redis_failure_raises_cache_error(self, redis_client):
        redis_client.get.side_effect = RedisConnectionError("connection refused")
        backend = RedisCacheBackend(redis_client)

        with pytest.raises(CacheError) as exc_info:
            await backend.get("k")

        assert exc_info.value.code == "CACHE_ERROR"
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_close(self, redis_client):
        backend = RedisCacheBackend(redis_client)

        await backend.close()

        redis_client.aclose.assert_awaited_once()
