"""
Shared fixtures for the collforge test suite.

Unit tests run against the in-memory store; tests/integration overrides the
store fixture to run every test against both MemoryStore and SqliteStore.
"""

import pytest

from collforge import MemoryStore, Settings, collection, configure, field, relation


@pytest.fixture
def store():
    """In-memory store (tests read its call counters)."""
    return MemoryStore()


@pytest.fixture
def settings():
    """Settings with plugin side-effect failures escalated."""
    return Settings(strict_plugins=True)


@pytest.fixture
def users():
    return collection(
        "users",
        field("name", "text", required=True),
        field("email", "email", unique=True),
    )


@pytest.fixture
def posts():
    return collection(
        "posts",
        field("title", "text", required=True, max_length=200),
        field("body", "text"),
        field("status", "select", choices=("draft", "published"), default="draft"),
        field("views", "integer", min=0, default=0),
        relation("author", "users"),
    )


@pytest.fixture
def comments():
    return collection(
        "comments",
        field("body", "text", required=True),
        relation("post", "posts", required=True),
    )


@pytest.fixture
def blog(users, posts, comments):
    """users <- posts <- comments."""
    return [users, posts, comments]


@pytest.fixture
async def make_engine(store, settings):
    """Factory building engines on the test's store; engines are closed afterwards."""
    engines = []

    async def factory(collections, plugins=(), **kwargs):
        kwargs.setdefault("settings", settings)
        engine = await configure(database=store, collections=collections, plugins=plugins, **kwargs)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        await engine.close()
