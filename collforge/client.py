"""
Engine entry point for collforge.

This module provides the runtime surface:
- configure(): Resolve the schema, open the store, return an Engine
- Engine: Holds the schema, the store and the per-collection clients
- CollectionClient: Operation API of one collection, plus plugin operations

Example:
    >>> engine = await configure(
    ...     database="sqlite:///content.db",
    ...     collections=[users, posts, comments],
    ...     plugins=[soft_delete(cascade={"posts": ["comments"]}), versioning()],
    ... )
    >>> post = await engine.collections.posts.create({"title": "Hello"}, actor="user:1")
    >>> await engine.collections.posts.get_versions(post["id"])

Invariants:
    - The schema is resolved exactly once per Engine
    - Plugin operations are bound to the collection client they run on
    - Dotted plugin operation names ("cache.invalidate") become namespaces
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from .config import DatabaseConfig, Settings
from .errors import ConfigurationError, SchemaMismatchError, UnknownCollectionError
from .locale import LocaleCatalog, resolve_string
from .pipeline.context import OperationContext
from .pipeline.executor import OperationExecutor
from .pipeline.query import FindOptions, Where
from .schema.fieldtypes import FieldTypeRegistry
from .schema.plugin import Plugin
from .schema.resolved import ResolvedCollection, ResolvedSchema
from .schema.resolver import resolve_schema
from .schema.types import CollectionDef
from .store.base import Store, open_store

logger = logging.getLogger(__name__)


class _Namespace:
    """Attribute access to a group of bound plugin operations."""

    def __init__(self, name: str, methods: Dict[str, Callable[..., Any]]) -> None:
        self._name = name
        self._methods = methods

    def __getattr__(self, item: str) -> Callable[..., Any]:
        try:
            return self._methods[item]
        except KeyError:
            raise AttributeError(f"'{self._name}' has no operation '{item}'") from None

    def __dir__(self) -> List[str]:
        return sorted(self._methods)


class CollectionClient:
    """Operation API of one resolved collection.

    Every method accepts actor= (recorded in the context for audit fields)
    and context= (join an enclosing operation explicitly; operations started
    from a hook join it automatically).
    """

    def __init__(self, engine: Engine, collection: ResolvedCollection) -> None:
        self._engine = engine
        self.collection = collection
        self.slug = collection.slug
        self._bound: Dict[str, Any] = {}
        namespaces: Dict[str, Dict[str, Callable[..., Any]]] = {}
        for name, fn in collection.methods.items():
            if hasattr(CollectionClient, name.split(".", 1)[0]):
                raise ConfigurationError(
                    f"Plugin operation '{name}' on '{collection.slug}' shadows a built-in operation"
                )
            bound = partial(fn, self)
            if "." in name:
                group, method = name.split(".", 1)
                namespaces.setdefault(group, {})[method] = bound
            else:
                self._bound[name] = bound
        for group, methods in namespaces.items():
            if group in self._bound:
                raise ConfigurationError(
                    f"Plugin operation '{group}' on '{self.slug}' clashes with namespace '{group}'"
                )
            self._bound[group] = _Namespace(group, methods)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def _executor(self) -> OperationExecutor:
        return self._engine.executor

    def __getattr__(self, item: str) -> Any:
        bound = self.__dict__.get("_bound", {})
        if item in bound:
            return bound[item]
        raise AttributeError(f"Collection '{self.slug}' has no operation '{item}'")

    def operations(self) -> List[str]:
        """Names of the plugin-contributed operations."""
        return sorted(self.collection.methods)

    async def find_many(
        self,
        where: Optional[Where] = None,
        *,
        select: Optional[Iterable[str]] = None,
        include: Optional[Iterable[str]] = None,
        order_by: Any = None,
        limit: Optional[int] = None,
        offset: int = 0,
        locale: Optional[str] = None,
        include_deleted: bool = False,
        cache: Any = None,
        actor: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> List[Dict[str, Any]]:
        """Records matching where."""
        options = FindOptions.build(
            where=where,
            select=select,
            include=include,
            order_by=order_by,
            limit=limit,
            offset=offset,
            locale=locale,
            include_deleted=include_deleted,
            cache=cache,
        )
        return await self._executor.find_many(self.slug, options, actor=actor, parent=context)

    async def find_unique(
        self,
        where: Where,
        *,
        select: Optional[Iterable[str]] = None,
        include: Optional[Iterable[str]] = None,
        locale: Optional[str] = None,
        include_deleted: bool = False,
        cache: Any = None,
        actor: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        """The single record matching where.

        Raises:
            NotFoundError: If nothing matches
            ValidationError: If more than one record matches
        """
        options = FindOptions.build(
            where=where,
            select=select,
            include=include,
            locale=locale,
            include_deleted=include_deleted,
            cache=cache,
        )
        return await self._executor.find_unique(self.slug, options, actor=actor, parent=context)

    async def count(
        self,
        where: Optional[Where] = None,
        *,
        locale: Optional[str] = None,
        include_deleted: bool = False,
        cache: Any = None,
        actor: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> int:
        options = FindOptions.build(
            where=where, locale=locale, include_deleted=include_deleted, cache=cache
        )
        return await self._executor.count(self.slug, options, actor=actor, parent=context)

    async def create(
        self,
        data: Dict[str, Any],
        *,
        locale: Optional[str] = None,
        actor: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        return await self._executor.create(self.slug, data, locale=locale, actor=actor, parent=context)

    async def update(
        self,
        where: Where,
        data: Dict[str, Any],
        *,
        locale: Optional[str] = None,
        actor: Optional[str] = None,
        include_deleted: bool = False,
        context: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        return await self._executor.update(
            self.slug,
            where,
            data,
            locale=locale,
            actor=actor,
            include_deleted=include_deleted,
            parent=context,
        )

    async def delete(
        self,
        where: Where,
        *,
        permanent: bool = False,
        locale: Optional[str] = None,
        actor: Optional[str] = None,
        include_deleted: bool = False,
        context: Optional[OperationContext] = None,
    ) -> Dict[str, Any]:
        """Delete the record matching where.

        With the soft-delete plugin the record is only marked deleted unless
        permanent=True.
        """
        return await self._executor.delete(
            self.slug,
            where,
            permanent=permanent,
            locale=locale,
            actor=actor,
            include_deleted=include_deleted,
            parent=context,
        )

    def label(self, locale: Optional[str] = None) -> str:
        """Display label in a locale (catalog, then declared labels, then slug)."""
        settings = self._engine.settings
        return resolve_string(
            self._engine.catalog,
            f"collections.{self.slug}.label",
            locale or settings.default_locale,
            settings.default_locale,
            fallback=self.collection.declaration.labels,
            default=self.slug,
        )

    def field_label(self, name: str, locale: Optional[str] = None) -> str:
        settings = self._engine.settings
        f = self.collection.get_field(name)
        if f is None:
            raise ConfigurationError(f"Collection '{self.slug}' has no field '{name}'")
        return resolve_string(
            self._engine.catalog,
            f"collections.{self.slug}.fields.{name}.label",
            locale or settings.default_locale,
            settings.default_locale,
            fallback=f.definition.label,
            default=name,
        )

    def __repr__(self) -> str:
        return f"CollectionClient({self.slug!r})"


class Collections(Mapping[str, CollectionClient]):
    """slug -> CollectionClient, with attribute access."""

    def __init__(self, clients: Dict[str, CollectionClient]) -> None:
        self._clients = clients

    def __getitem__(self, slug: str) -> CollectionClient:
        try:
            return self._clients[slug]
        except KeyError:
            raise UnknownCollectionError(slug) from None

    def __getattr__(self, slug: str) -> CollectionClient:
        clients = self.__dict__.get("_clients", {})
        if slug in clients:
            return clients[slug]
        raise AttributeError(f"No collection '{slug}'")

    def __iter__(self) -> Iterator[str]:
        return iter(self._clients)

    def __len__(self) -> int:
        return len(self._clients)


class Engine:
    """A configured collforge runtime.

    Attributes:
        schema: Resolved schema
        db: Persistence collaborator
        settings: Engine settings
        catalog: Locale-string collaborator
        collections: Per-collection operation API
    """

    def __init__(
        self,
        schema: ResolvedSchema,
        db: Store,
        settings: Settings,
        catalog: Optional[LocaleCatalog] = None,
    ) -> None:
        self.schema = schema
        self.db = db
        self.settings = settings
        self.catalog = catalog
        self.executor = OperationExecutor(schema, db, settings, self)
        self.collections = Collections({slug: CollectionClient(self, coll) for slug, coll in schema.items()})

    async def close(self) -> None:
        await self.db.close()
        logger.info("Engine closed")

    async def __aenter__(self) -> Engine:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def _open_database(
    database: Union[Store, DatabaseConfig, str, None],
    settings: Settings,
) -> tuple[Store, Optional[DatabaseConfig]]:
    if database is None:
        database = settings.database_url
    if isinstance(database, str):
        database = DatabaseConfig(url=database)
    if isinstance(database, DatabaseConfig):
        store = open_store(
            database.url, busy_timeout_ms=database.busy_timeout_ms, wal_mode=database.wal_mode
        )
        return store, database
    if isinstance(database, Store):
        return database, None
    raise ConfigurationError(f"Unsupported database {database!r}")


async def configure(
    database: Union[Store, DatabaseConfig, str, None] = None,
    collections: Sequence[CollectionDef] = (),
    plugins: Sequence[Plugin] = (),
    registry: Optional[FieldTypeRegistry] = None,
    settings: Optional[Settings] = None,
    catalog: Optional[LocaleCatalog] = None,
) -> Engine:
    """Resolve the schema, prepare the store and build an Engine.

    Args:
        database: Store instance, DatabaseConfig or URL (Settings.database_url if omitted)
        collections: Declared collections
        plugins: Global plugins, in application order
        registry: Field type registry (builtins if omitted)
        settings: Engine settings (loaded from env if omitted)
        catalog: Locale-string collaborator

    Returns:
        Engine

    Raises:
        ConfigurationError: If the schema cannot be resolved
        SchemaMismatchError: If the resolved schema differs from the
            expected (or stored) fingerprint
    """
    settings = settings or Settings()
    schema = resolve_schema(collections, plugins, registry)

    store, config = _open_database(database, settings)
    if config is not None and config.expected_fingerprint:
        if config.expected_fingerprint != schema.fingerprint:
            raise SchemaMismatchError(config.expected_fingerprint, schema.fingerprint)

    verify = config is not None and config.verify_stored_fingerprint
    try:
        await store.initialize(schema, verify=verify)
    except SchemaMismatchError:
        await store.close()
        raise

    engine = Engine(schema, store, settings, catalog)
    logger.info(
        f"Configured engine with {len(schema)} collections ({', '.join(sorted(schema))}), "
        f"store={type(store).__name__}"
    )
    return engine
