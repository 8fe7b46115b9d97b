"""
Integration fixtures: every test runs once per store backend.
"""

import pytest

from collforge import MemoryStore, SqliteStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """MemoryStore, or a SqliteStore on a file in the test's tmp dir."""
    if request.param == "memory":
        return MemoryStore()
    return SqliteStore(str(tmp_path / "content.db"))
