"""
Unit tests for the versioning plugin.

Tests cover:
- Version numbering and labels
- Snapshots and diffs (full and diff mode)
- restore_version / compare_versions / cleanup_versions
- Rollback of version records with the write
"""

from datetime import datetime, timezone

import pytest

from collforge import HookSet, Partial, Plugin, Settings, collection, field, versioning
from collforge.errors import ConfigurationError, HookError, NotFoundError, VersioningError
from collforge.plugins import compute_diff


@pytest.fixture
async def engine(make_engine, users, posts):
    return await make_engine([users, posts], [versioning(collections=["posts"])])


def _refuse_versions():
    """Plugin whose hook rejects every write to the version collection."""
    def refuse(args):
        raise RuntimeError("version storage unavailable")

    def extend(coll):
        if coll.slug != "posts_versions":
            return None
        return Partial(hooks=HookSet.of(before_create=refuse))

    return Plugin(name="refuse_versions", extend=extend)


class TestComputeDiff:
    """Tests for compute_diff()."""

    def test_only_changed_fields(self):
        diff = compute_diff({"a": 1, "b": 2}, {"a": 1, "b": 3}, ["a", "b"])

        assert diff == {"b": {"from": 2, "to": 3}}

    def test_datetimes_serialized(self):
        moment = datetime(2024, 5, 1, tzinfo=timezone.utc)
        diff = compute_diff({}, {"at": moment}, ["at"])

        assert diff["at"]["to"] == "2024-05-01T00:00:00+00:00"


class TestVersionRecords:
    """Writes append version records."""

    @pytest.mark.asyncio
    async def test_shadow_collection(self, engine):
        shadow = engine.schema["posts_versions"]

        assert shadow.auxiliary
        assert shadow.owner == "versioning"
        assert "users_versions" not in engine.schema

    @pytest.mark.asyncio
    async def test_create_is_version_one(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "Hello"}, actor="user:1")

        versions = await posts.get_versions(post["id"])

        assert len(versions) == 1
        first = versions[0]
        assert first["version"] == 1
        assert first["operation"] == "create"
        assert first["actor"] == "user:1"
        assert first["snapshot"]["title"] == "Hello"
        assert first["diff"]["title"] == {"from": None, "to": "Hello"}

    @pytest.mark.asyncio
    async def test_versions_gap_free(self, engine):
        """Version numbers run 1..N in write order."""
        posts = engine.collections.posts
        post = await posts.create({"title": "v1"})
        for i in range(2, 6):
            await posts.update({"id": post["id"]}, {"title": f"v{i}"})

        versions = await posts.get_versions(post["id"])

        assert [v["version"] for v in versions] == [1, 2, 3, 4, 5]
        assert [v["snapshot"]["title"] for v in versions] == ["v1", "v2", "v3", "v4", "v5"]

    @pytest.mark.asyncio
    async def test_update_diff(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "Hello"})

        await posts.update({"id": post["id"]}, {"views": 5})

        second = await posts.get_version(post["id"], 2)
        assert second["operation"] == "update"
        assert second["diff"] == {"views": {"from": 0, "to": 5}}
        assert second["changed_fields"] == ["views"]

    @pytest.mark.asyncio
    async def test_numbering_per_record(self, engine):
        posts = engine.collections.posts
        a = await posts.create({"title": "a"})
        b = await posts.create({"title": "b"})
        await posts.update({"id": a["id"]}, {"views": 1})

        assert [v["version"] for v in await posts.get_versions(b["id"])] == [1]
        assert [v["version"] for v in await posts.get_versions(a["id"])] == [1, 2]

    @pytest.mark.asyncio
    async def test_delete_version(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "gone"})

        await posts.delete({"id": post["id"]})

        last = (await posts.get_versions(post["id"]))[-1]
        assert last["operation"] == "delete"
        assert last["snapshot"]["title"] == "gone"
        assert last["diff"] == {}

    @pytest.mark.asyncio
    async def test_missing_version(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "a"})

        with pytest.raises(NotFoundError):
            await posts.get_version(post["id"], 9)

    @pytest.mark.asyncio
    async def test_tracked_and_ignored_fields(self, make_engine, users, posts):
        engine = await make_engine(
            [users, posts], [versioning(collections=["posts"], ignore_fields=["views"])]
        )
        client = engine.collections.posts
        post = await client.create({"title": "a"})

        await client.update({"id": post["id"]}, {"views": 3, "body": "text"})

        second = await client.get_version(post["id"], 2)
        assert second["changed_fields"] == ["body"]
        assert "views" not in second["snapshot"]

    @pytest.mark.asyncio
    async def test_version_rolls_back_with_write(self, make_engine, users):
        """A failing after hook undoes the write and its version record."""
        def reject_published(args):
            if args.result["title"] == "bad":
                raise RuntimeError("rejected")

        posts = collection(
            "posts",
            field("title", "text"),
            hooks=HookSet.of(after_update=reject_published),
        )
        engine = await make_engine([users, posts], [versioning(collections=["posts"])])
        client = engine.collections.posts
        post = await client.create({"title": "good"})

        with pytest.raises(HookError):
            await client.update({"id": post["id"]}, {"title": "bad"})

        assert [v["version"] for v in await client.get_versions(post["id"])] == [1]
        assert (await client.find_unique({"id": post["id"]}))["title"] == "good"

    @pytest.mark.asyncio
    async def test_lenient_failure_keeps_write(self, make_engine, users, posts):
        """By default a version that cannot be written is logged and skipped."""
        engine = await make_engine(
            [users, posts],
            [versioning(collections=["posts"]), _refuse_versions()],
            settings=Settings(strict_plugins=False),
        )
        client = engine.collections.posts

        post = await client.create({"title": "kept"})

        assert (await client.find_unique({"id": post["id"]}))["title"] == "kept"
        assert await client.get_versions(post["id"]) == []

    @pytest.mark.asyncio
    async def test_strict_failure_raises(self, make_engine, users, posts):
        """In strict mode the failure aborts the write."""
        engine = await make_engine(
            [users, posts],
            [versioning(collections=["posts"]), _refuse_versions()],
            settings=Settings(strict_plugins=True),
        )
        client = engine.collections.posts

        with pytest.raises(HookError) as exc_info:
            await client.create({"title": "dropped"})

        assert exc_info.value.stage == "before_create"
        assert exc_info.value.origin == "refuse_versions"
        assert await client.count() == 0

    def test_unknown_snapshot_mode(self):
        with pytest.raises(ConfigurationError, match="snapshot mode"):
            versioning(snapshot_mode="delta")


class TestRestoreAndCompare:
    """restore_version() and compare_versions()."""

    @pytest.mark.asyncio
    async def test_compare_versions(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "a"})
        await posts.update({"id": post["id"]}, {"title": "b", "views": 2})

        diff = await posts.compare_versions(post["id"], 1, 2)

        assert diff == {"title": {"from": "a", "to": "b"}, "views": {"from": 0, "to": 2}}
        assert await posts.compare_versions(post["id"], 2, 2) == {}

    @pytest.mark.asyncio
    async def test_restore_creates_new_version(self, engine):
        """Restoring appends a version equal to the restored one."""
        posts = engine.collections.posts
        post = await posts.create({"title": "original"})
        await posts.update({"id": post["id"]}, {"title": "edited", "views": 4})

        restored = await posts.restore_version(post["id"], 1, actor="editor")

        assert restored["title"] == "original"
        assert restored["views"] == 0
        versions = await posts.get_versions(post["id"])
        assert [v["version"] for v in versions] == [1, 2, 3]
        assert versions[2]["operation"] == "restore"
        assert versions[2]["note"] == "Restored version 1"
        assert versions[2]["actor"] == "editor"
        assert await posts.compare_versions(post["id"], 1, 3) == {}

    @pytest.mark.asyncio
    async def test_restore_with_note(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "a"})
        await posts.update({"id": post["id"]}, {"title": "b"})

        await posts.restore_version(post["id"], 1, note="undo vandalism")

        assert (await posts.get_version(post["id"], 3))["note"] == "undo vandalism"

    @pytest.mark.asyncio
    async def test_diff_mode_rebuilds_state(self, make_engine, users, posts):
        """Without snapshots a past state is replayed from the diffs."""
        engine = await make_engine([users, posts], [versioning(collections=["posts"], snapshot_mode="diff")])
        client = engine.collections.posts
        post = await client.create({"title": "a", "body": "first"})
        await client.update({"id": post["id"]}, {"title": "b"})
        await client.update({"id": post["id"]}, {"body": "second"})

        assert (await client.get_version(post["id"], 1))["snapshot"] is None
        assert await client.compare_versions(post["id"], 1, 3) == {
            "body": {"from": "first", "to": "second"},
            "title": {"from": "a", "to": "b"},
        }

        restored = await client.restore_version(post["id"], 2)
        assert restored["title"] == "b"
        assert restored["body"] == "first"


class TestCleanup:
    """cleanup_versions()."""

    @pytest.mark.asyncio
    async def test_keeps_newest(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "v1"})
        for i in range(2, 5):
            await posts.update({"id": post["id"]}, {"title": f"v{i}"})

        removed = await posts.cleanup_versions(post["id"], keep_last=2)

        assert removed == 2
        assert [v["version"] for v in await posts.get_versions(post["id"])] == [3, 4]

    @pytest.mark.asyncio
    async def test_numbering_continues_after_cleanup(self, engine):
        posts = engine.collections.posts
        post = await posts.create({"title": "v1"})
        await posts.update({"id": post["id"]}, {"title": "v2"})
        await posts.cleanup_versions(post["id"], keep_last=1)

        await posts.update({"id": post["id"]}, {"title": "v3"})

        assert [v["version"] for v in await posts.get_versions(post["id"])] == [2, 3]

    @pytest.mark.asyncio
    async def test_every_record(self, engine):
        posts = engine.collections.posts
        for title in ("a", "b"):
            post = await posts.create({"title": title})
            await posts.update({"id": post["id"]}, {"views": 1})

        assert await posts.cleanup_versions(keep_last=1) == 2

    @pytest.mark.asyncio
    async def test_rejected_in_diff_mode(self, make_engine, users, posts):
        engine = await make_engine([users, posts], [versioning(collections=["posts"], snapshot_mode="diff")])

        with pytest.raises(VersioningError, match="snapshot_mode='full'"):
            await engine.collections.posts.cleanup_versions(keep_last=1)

    @pytest.mark.asyncio
    async def test_keep_last_positive(self, engine):
        with pytest.raises(VersioningError, match="keep_last"):
            await engine.collections.posts.cleanup_versions(keep_last=0)
