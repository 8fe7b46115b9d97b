"""
Unit tests for settings, logging setup, locale strings and configure().
"""

import json
import logging

import pytest

from collforge import (
    DictCatalog,
    LocaleCatalog,
    Settings,
    SqliteStore,
    collection,
    configure,
    field,
    setup_logging,
)
from collforge.config import DatabaseConfig
from collforge.errors import SchemaMismatchError
from collforge.locale import resolve_string


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, monkeypatch):
        for name in ("COLLFORGE_DEFAULT_LOCALE", "COLLFORGE_STRICT_PLUGINS", "COLLFORGE_DATABASE_URL"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings()

        assert settings.default_locale == "en"
        assert settings.strict_plugins is False
        assert settings.database_url == "memory://"
        assert settings.cache_strategy == "lru"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("COLLFORGE_DEFAULT_LOCALE", "de")
        monkeypatch.setenv("COLLFORGE_STRICT_PLUGINS", "true")
        monkeypatch.setenv("COLLFORGE_CACHE_MAX_ENTRIES", "50")

        settings = Settings()

        assert settings.default_locale == "de"
        assert settings.strict_plugins is True
        assert settings.cache_max_entries == 50


class TestSetupLogging:
    """Tests for setup_logging()."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_level_and_text_format(self):
        setup_logging(Settings(log_level="debug"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert "%(levelname)s" in root_format()

    def test_json_format_escapes_messages(self):
        """Messages with quotes still produce one valid JSON object."""
        setup_logging(Settings(log_format="json"))
        record = logging.LogRecord(
            "collforge.pipeline.hooks", logging.ERROR, __file__, 1, 'Hook failed: bad value "x"', None, None
        )

        line = logging.getLogger().handlers[0].formatter.format(record)

        payload = json.loads(line)
        assert payload["message"] == 'Hook failed: bad value "x"'
        assert payload["level"] == "ERROR"
        assert payload["logger"] == "collforge.pipeline.hooks"
        assert "time" in payload

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(Settings(log_level="loud"))

        assert logging.getLogger().level == logging.INFO


def root_format():
    return logging.getLogger().handlers[0].formatter._fmt


class TestLocale:
    """Tests for DictCatalog and resolve_string()."""

    def test_catalog_is_locale_catalog(self):
        assert isinstance(DictCatalog(), LocaleCatalog)

    def test_lookup_and_add(self):
        catalog = DictCatalog({"en": {"k": "English"}})
        catalog.add("de", "k", "Deutsch")

        assert catalog.lookup("k", "de") == "Deutsch"
        assert catalog.lookup("k", "fr") is None
        assert catalog.locales() == ["de", "en"]

    def test_fallback_order(self):
        """Catalog locale, catalog default, fallback locale, fallback default, default."""
        catalog = DictCatalog({"en": {"a": "cat-en"}, "de": {"a": "cat-de"}})
        fallback = {"fr": "fb-fr", "en": "fb-en"}

        assert resolve_string(catalog, "a", "de", "en") == "cat-de"
        assert resolve_string(catalog, "a", "fr", "en") == "cat-en"
        assert resolve_string(catalog, "b", "fr", "en", fallback=fallback) == "fb-fr"
        assert resolve_string(catalog, "b", "it", "en", fallback=fallback) == "fb-en"
        assert resolve_string(None, "b", "it", "en", default="b") == "b"


class TestLabels:
    """Collection and field labels through the client."""

    @pytest.fixture
    def tags(self):
        return collection(
            "tags",
            field("name", "text", label={"en": "Name", "de": "Bezeichnung"}),
            labels={"en": "Tags", "de": "Schlagwörter"},
        )

    @pytest.mark.asyncio
    async def test_declared_labels(self, make_engine, tags):
        engine = await make_engine([tags])
        client = engine.collections.tags

        assert client.label() == "Tags"
        assert client.label("de") == "Schlagwörter"
        assert client.label("fr") == "Tags"
        assert client.field_label("name", "de") == "Bezeichnung"

    @pytest.mark.asyncio
    async def test_catalog_wins(self, make_engine, tags):
        catalog = DictCatalog({"de": {"collections.tags.label": "Etiketten"}})
        engine = await make_engine([tags], catalog=catalog)

        assert engine.collections.tags.label("de") == "Etiketten"
        assert engine.collections.tags.label("en") == "Tags"

    @pytest.mark.asyncio
    async def test_slug_when_unlabelled(self, make_engine):
        engine = await make_engine([collection("notes", field("text", "text"))])

        assert engine.collections.notes.label() == "notes"
        assert engine.collections.notes.field_label("text") == "text"


class TestConfigure:
    """Tests for configure() database handling."""

    @pytest.mark.asyncio
    async def test_database_url(self, tmp_path):
        url = f"sqlite:///{tmp_path}/app.db"
        engine = await configure(database=url, collections=[collection("tags")], settings=Settings())

        assert isinstance(engine.db, SqliteStore)
        await engine.close()

    @pytest.mark.asyncio
    async def test_settings_database_url(self):
        settings = Settings(database_url="memory://")
        engine = await configure(collections=[collection("tags")], settings=settings)

        assert type(engine.db).__name__ == "MemoryStore"
        await engine.close()

    @pytest.mark.asyncio
    async def test_expected_fingerprint_mismatch(self):
        config = DatabaseConfig(url="memory://", expected_fingerprint="sha256:stale")

        with pytest.raises(SchemaMismatchError) as exc_info:
            await configure(database=config, collections=[collection("tags")], settings=Settings())

        assert exc_info.value.expected_fingerprint == "sha256:stale"

    @pytest.mark.asyncio
    async def test_stored_fingerprint_verified(self, tmp_path):
        """A file database remembers the schema it was created with."""
        url = f"sqlite:///{tmp_path}/app.db"
        first = await configure(database=url, collections=[collection("tags")], settings=Settings())
        await first.close()

        config = DatabaseConfig(url=url, verify_stored_fingerprint=True)
        changed = [collection("tags", field("name", "text"))]
        with pytest.raises(SchemaMismatchError):
            await configure(database=config, collections=changed, settings=Settings())

        same = await configure(database=config, collections=[collection("tags")], settings=Settings())
        await same.close()

    @pytest.mark.asyncio
    async def test_engine_context_manager(self):
        async with await configure(collections=[collection("tags")], settings=Settings()) as engine:
            await engine.collections.tags.create({})

            assert await engine.collections.tags.count() == 1
