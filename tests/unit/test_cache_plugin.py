"""
Unit tests for the cache plugin.

The MemoryStore call counters show whether a read reached the store.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from collforge import HookSet, cache, collection, field
from collforge.errors import ConfigurationError, HookError
from collforge.plugins import MemoryCacheBackend


def _store_reads(store):
    return store.calls.get("find_many", 0) + store.calls.get("count", 0)


@pytest.fixture
async def cached(make_engine, users, posts):
    engine = await make_engine([users, posts], [cache()])
    await engine.collections.posts.create({"title": "First", "status": "published"})
    await engine.collections.posts.create({"title": "Second"})
    return engine


class TestReadThrough:
    """Hits, misses and bypasses."""

    @pytest.mark.asyncio
    async def test_second_read_is_a_hit(self, cached, store):
        """An identical read is answered without touching the store."""
        posts = cached.collections.posts
        first = await posts.find_many({"status": "published"})
        before = _store_reads(store)

        second = await posts.find_many({"status": "published"})

        assert second == first
        assert _store_reads(store) == before
        stats = await posts.cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["backend"] == "memory"

    @pytest.mark.asyncio
    async def test_different_query_is_a_miss(self, cached, store):
        posts = cached.collections.posts
        await posts.find_many({"status": "published"})
        before = _store_reads(store)

        await posts.find_many({"status": "draft"})

        assert _store_reads(store) == before + 1

    @pytest.mark.asyncio
    async def test_count_cached(self, cached, store):
        posts = cached.collections.posts
        assert await posts.count() == 2
        before = _store_reads(store)

        assert await posts.count() == 2
        assert _store_reads(store) == before

    @pytest.mark.asyncio
    async def test_empty_result_cached(self, cached, store):
        posts = cached.collections.posts
        assert await posts.find_many({"title": "nothing"}) == []
        before = _store_reads(store)

        assert await posts.find_many({"title": "nothing"}) == []
        assert _store_reads(store) == before

    @pytest.mark.asyncio
    async def test_cache_false_bypasses(self, cached, store):
        posts = cached.collections.posts
        await posts.find_many()
        before = _store_reads(store)

        await posts.find_many(cache=False)
        await posts.find_many(cache={"skip": True})

        assert _store_reads(store) == before + 2

    @pytest.mark.asyncio
    async def test_locale_is_part_of_the_key(self, cached, store):
        posts = cached.collections.posts
        await posts.find_many(locale="en")
        before = _store_reads(store)

        await posts.find_many(locale="fr")

        assert _store_reads(store) == before + 1

    @pytest.mark.asyncio
    async def test_cached_values_isolated_from_callers(self, cached):
        """Mutating a returned record never changes what the next hit returns."""
        posts = cached.collections.posts
        rows = await posts.find_many({"title": "First"})
        rows[0]["title"] = "mutated"

        again = await posts.find_many({"title": "First"})

        assert again[0]["title"] == "First"

    @pytest.mark.asyncio
    async def test_reads_in_transaction_bypass(self, make_engine, users, store):
        """A read nested in a write neither uses nor fills the cache."""
        seen = []

        async def count_posts(args):
            seen.append(await args.context.engine.collections.posts.count())

        posts = collection(
            "posts",
            field("title", "text"),
            hooks=HookSet.of(after_create=count_posts),
        )
        engine = await make_engine([users, posts], [cache()])
        await engine.collections.posts.create({"title": "a"})
        await engine.collections.posts.create({"title": "b"})

        assert seen == [1, 2]
        stats = await engine.collections.posts.cache.stats()
        assert stats["hits"] == 0
        assert stats["sets"] == 0


class TestInvalidation:
    """Writes drop stale entries."""

    @pytest.mark.asyncio
    async def test_create_invalidates_lists(self, cached):
        posts = cached.collections.posts
        assert await posts.count() == 2

        await posts.create({"title": "Third"})

        assert await posts.count() == 3
        assert len(await posts.find_many()) == 3

    @pytest.mark.asyncio
    async def test_update_invalidates_unique_read(self, cached):
        """Exact invalidation drops entries holding the written record."""
        posts = cached.collections.posts
        first = await posts.find_unique({"title": "First"})
        by_id = await posts.find_unique({"id": first["id"]})

        await posts.update({"id": first["id"]}, {"views": 7})

        assert (await posts.find_unique({"id": by_id["id"]}))["views"] == 7

    @pytest.mark.asyncio
    async def test_exact_keeps_unrelated_unique_reads(self, cached, store):
        posts = cached.collections.posts
        second = await posts.find_unique({"title": "Second"})
        first = await posts.find_unique({"title": "First"})

        await posts.update({"id": first["id"]}, {"views": 1})
        before = _store_reads(store)

        assert await posts.find_unique({"title": "Second"}) == second
        assert _store_reads(store) == before

    @pytest.mark.asyncio
    async def test_pattern_invalidation(self, make_engine, users, posts, store):
        engine = await make_engine([users, posts], [cache(invalidation="pattern")])
        client = engine.collections.posts
        created = await client.create({"title": "a"})
        await client.create({"title": "b"})
        await client.find_unique({"title": "b"})

        await client.update({"id": created["id"]}, {"views": 3})
        before = _store_reads(store)
        await client.find_unique({"title": "b"})

        assert _store_reads(store) == before + 1

    @pytest.mark.asyncio
    async def test_all_invalidation(self, make_engine, users, posts, store):
        engine = await make_engine([users, posts], [cache(invalidation="all")])
        await engine.collections.users.find_many()

        await engine.collections.posts.create({"title": "a"})
        before = _store_reads(store)
        await engine.collections.users.find_many()

        assert _store_reads(store) == before + 1

    @pytest.mark.asyncio
    async def test_related_invalidation(self, make_engine, users, posts):
        """A write to users also drops posts entries when configured."""
        engine = await make_engine([users, posts], [cache(related={"users": ["posts"]})])
        author = await engine.collections.users.create({"name": "Ann"})
        await engine.collections.posts.create({"title": "a", "author": author["id"]})
        rows = await engine.collections.posts.find_many(include=["author"])
        assert rows[0]["author"]["name"] == "Ann"

        await engine.collections.users.update({"id": author["id"]}, {"name": "Anne"})

        rows = await engine.collections.posts.find_many(include=["author"])
        assert rows[0]["author"]["name"] == "Anne"

    @pytest.mark.asyncio
    async def test_manual_invalidate(self, cached, store):
        posts = cached.collections.posts
        await posts.find_many()
        await posts.count()

        removed = await posts.cache.invalidate(pattern="find_many:*")

        assert removed == 1
        before = _store_reads(store)
        await posts.count()
        assert _store_reads(store) == before

    @pytest.mark.asyncio
    async def test_invalidate_by_caller_tag(self, cached):
        posts = cached.collections.posts
        await posts.find_many({"status": "published"}, cache={"tags": ["homepage"]})
        await posts.find_many({"status": "draft"})

        assert await posts.cache.invalidate(tags=["homepage"]) == 1


class TestConfiguration:
    """Options and failure handling."""

    def test_unknown_invalidation(self):
        with pytest.raises(ConfigurationError, match="invalidation strategy"):
            cache(invalidation="sometimes")

    def test_only_read_operations(self):
        with pytest.raises(ConfigurationError, match="read operations"):
            cache(operations=["create"])

    def test_unknown_strategy(self):
        with pytest.raises(ConfigurationError):
            cache(strategy="random")

    @pytest.mark.asyncio
    async def test_collection_filter(self, make_engine, users, posts, store):
        engine = await make_engine([users, posts], [cache(collections=["users"])])
        await engine.collections.posts.find_many()
        before = _store_reads(store)

        await engine.collections.posts.find_many()

        assert _store_reads(store) == before + 1

    @pytest.mark.asyncio
    async def test_explicit_backend(self, make_engine, users, posts):
        backend = MemoryCacheBackend(max_entries=5)
        engine = await make_engine([users, posts], [cache(backend=backend)])

        await engine.collections.posts.find_many()

        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_strict_failure_raises(self, make_engine, users, posts):
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=ConnectionError("cache down"))
        engine = await make_engine([users, posts], [cache(backend=backend)])

        with pytest.raises(HookError) as exc_info:
            await engine.collections.posts.find_many()

        assert exc_info.value.stage == "cache:get"
        assert exc_info.value.origin == "cache"

    @pytest.mark.asyncio
    async def test_lenient_failure_falls_through(self, make_engine, users, posts):
        """A non-strict cache failure is logged and the read still runs."""
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=ConnectionError("cache down"))
        backend.set = AsyncMock(side_effect=ConnectionError("cache down"))
        backend.stats = AsyncMock(return_value={"backend": "mock"})
        engine = await make_engine([users, posts], [cache(backend=backend, strict=False)])

        assert await engine.collections.posts.find_many() == []
        stats = await engine.collections.posts.cache.stats()
        assert stats["errors"] == 2
