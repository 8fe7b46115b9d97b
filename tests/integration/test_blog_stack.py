"""
Integration tests for the full plugin stack on every store backend.

users <- posts <- comments, with soft delete (posts cascade to comments),
versioning, audit fields and the read cache applied together.
"""

import asyncio
import json

import pytest

from collforge import (
    HookSet,
    MemoryStore,
    audit,
    cache,
    collection,
    field,
    relation,
    soft_delete,
    versioning,
)
from collforge.errors import HookError, NotFoundError


def _plugins():
    return [
        soft_delete(cascade={"posts": ["comments"]}),
        versioning(collections=["posts", "comments"]),
        audit(),
        cache(),
    ]


def _canonical(value):
    return json.dumps(value, sort_keys=True, default=str)


@pytest.fixture
async def engine(make_engine, blog):
    return await make_engine(blog, _plugins())


async def _seed(engine, comments=2):
    author = await engine.collections.users.create({"name": "Ann", "email": "ann@example.com"})
    post = await engine.collections.posts.create(
        {"title": "Hello", "body": "First post", "author": author["id"]}, actor="user:ann"
    )
    for i in range(comments):
        await engine.collections.comments.create({"body": f"comment {i}", "post": post["id"]})
    return author, post


class TestVersionHistory:
    """Version numbering and restore across backends."""

    @pytest.mark.asyncio
    async def test_n_writes_n_versions(self, engine):
        """After N writes a record has exactly versions 1..N."""
        _, post = await _seed(engine, comments=0)
        posts = engine.collections.posts
        for views in range(1, 7):
            await posts.update({"id": post["id"]}, {"views": views})

        versions = await posts.get_versions(post["id"])

        assert [v["version"] for v in versions] == list(range(1, 8))

    @pytest.mark.asyncio
    async def test_restore_then_compare_is_empty(self, engine):
        _, post = await _seed(engine, comments=0)
        posts = engine.collections.posts
        await posts.update({"id": post["id"]}, {"title": "Edited", "status": "published"})
        await posts.update({"id": post["id"]}, {"body": "Rewritten"})

        await posts.restore_version(post["id"], 1)

        current = (await posts.get_versions(post["id"]))[-1]["version"]
        assert current == 4
        assert await posts.compare_versions(post["id"], 1, current) == {}
        restored = await posts.find_unique({"id": post["id"]})
        assert (restored["title"], restored["body"], restored["status"]) == ("Hello", "First post", "draft")

    @pytest.mark.asyncio
    async def test_audit_fields_in_history(self, engine):
        _, post = await _seed(engine, comments=0)

        await engine.collections.posts.update({"id": post["id"]}, {"views": 2}, actor="user:bob")

        second = await engine.collections.posts.get_version(post["id"], 2)
        assert second["actor"] == "user:bob"
        assert second["diff"]["updated_by"] == {"from": "user:ann", "to": "user:bob"}


class TestSoftDeleteStack:
    """Soft delete, cascade and restore across backends."""

    @pytest.mark.asyncio
    async def test_visibility_and_restore(self, engine):
        """Restore brings the record back exactly as it was."""
        _, post = await _seed(engine, comments=0)
        posts = engine.collections.posts
        before = await posts.find_unique({"id": post["id"]})

        await posts.delete({"id": post["id"]}, actor="user:mod")

        assert await posts.find_many() == []
        hidden = await posts.find_many(include_deleted=True)
        assert [p["id"] for p in hidden] == [post["id"]]
        assert hidden[0]["deleted_by"] == "user:mod"
        assert [p["id"] for p in await posts.find_deleted()] == [post["id"]]

        await posts.restore({"id": post["id"]})

        after = await posts.find_unique({"id": post["id"]})
        for name in ("title", "body", "status", "views", "author", "created_by", "deleted_at", "deleted_by"):
            assert after[name] == before[name]

    @pytest.mark.asyncio
    async def test_cascade_in_one_transaction(self, engine):
        _, post = await _seed(engine, comments=3)

        await engine.collections.posts.delete({"id": post["id"]})

        assert await engine.collections.comments.count() == 0
        deleted = await engine.collections.comments.find_deleted()
        assert len(deleted) == 3
        for comment in deleted:
            versions = await engine.collections.comments.get_versions(comment["id"])
            assert [v["operation"] for v in versions] == ["create", "delete"]

    @pytest.mark.asyncio
    async def test_failing_child_hook_rolls_back_parent(self, make_engine, users, posts):
        """A comment's before_update failure undoes the post's soft delete too."""
        def refuse(args):
            raise RuntimeError("comments are locked")

        comments = collection(
            "comments",
            field("body", "text", required=True),
            relation("post", "posts", required=True),
            hooks=HookSet.of(before_update=refuse),
        )
        engine = await make_engine([users, posts, comments], _plugins())
        post = await engine.collections.posts.create({"title": "Locked"})
        await engine.collections.comments.create({"body": "c", "post": post["id"]})

        with pytest.raises(HookError) as exc_info:
            await engine.collections.posts.delete({"id": post["id"]})

        assert exc_info.value.stage == "before_update"
        assert exc_info.value.origin == "collection:comments"
        live = await engine.collections.posts.find_unique({"id": post["id"]})
        assert live["deleted_at"] is None
        assert await engine.collections.comments.count() == 1
        assert [v["operation"] for v in await engine.collections.posts.get_versions(post["id"])] == ["create"]

    @pytest.mark.asyncio
    async def test_include_hides_deleted_relation(self, engine):
        author, post = await _seed(engine, comments=0)

        await engine.collections.users.delete({"id": author["id"]})

        row = await engine.collections.posts.find_unique({"id": post["id"]}, include=["author"])
        assert row["author"] is None

    @pytest.mark.asyncio
    async def test_permanent_delete_cascades(self, engine):
        _, post = await _seed(engine, comments=2)

        await engine.collections.posts.delete({"id": post["id"]}, permanent=True)

        with pytest.raises(NotFoundError):
            await engine.collections.posts.find_unique({"id": post["id"]}, include_deleted=True)
        assert await engine.collections.comments.count(include_deleted=True) == 0


class TestCacheStack:
    """Cache behavior with every other plugin applied."""

    @pytest.mark.asyncio
    async def test_repeated_read_identical(self, engine, store):
        """The second identical read returns the same bytes without a store call."""
        await _seed(engine)
        posts = engine.collections.posts

        first = await posts.find_many({"status": "draft"}, order_by="-created_at")
        if isinstance(store, MemoryStore):
            calls_before = store.calls.get("find_many", 0)
        second = await posts.find_many({"status": "draft"}, order_by="-created_at")

        assert _canonical(second) == _canonical(first)
        if isinstance(store, MemoryStore):
            assert store.calls.get("find_many", 0) == calls_before
        stats = await posts.cache.stats()
        assert stats["hits"] == 1

    @pytest.mark.asyncio
    async def test_soft_delete_invalidates(self, engine):
        _, post = await _seed(engine, comments=1)
        assert await engine.collections.posts.count() == 1
        assert await engine.collections.comments.count() == 1

        await engine.collections.posts.delete({"id": post["id"]})

        assert await engine.collections.posts.count() == 0
        assert await engine.collections.comments.count() == 0

    @pytest.mark.asyncio
    async def test_deleted_and_live_reads_cached_apart(self, engine):
        _, post = await _seed(engine, comments=0)
        await engine.collections.posts.delete({"id": post["id"]})

        assert await engine.collections.posts.count() == 0
        assert await engine.collections.posts.count(include_deleted=True) == 1

    @pytest.mark.asyncio
    async def test_concurrent_read_never_caches_rolled_back_write(self, make_engine):
        """A read during an open write sees committed data, so nothing stale is cached."""
        reached = asyncio.Event()
        release = asyncio.Event()

        async def stall_then_fail(args):
            reached.set()
            await release.wait()
            raise RuntimeError("rejected after insert")

        drafts = collection(
            "drafts",
            field("title", "text", required=True),
            hooks=HookSet.of(after_create=stall_then_fail),
        )
        engine = await make_engine([drafts], [cache()])
        client = engine.collections.drafts

        writer = asyncio.create_task(client.create({"title": "ghost"}))
        await reached.wait()
        during = await client.find_many()
        release.set()
        with pytest.raises(HookError):
            await writer

        assert during == []
        assert await client.find_many() == []
        assert await client.count() == 0
