"""
collforge - declarative collections with composable plugins.

Applications declare collections (typed fields, relations, computed fields,
hooks) and plugins (fields, hooks, auxiliary collections, middlewares and
extra operations). configure() resolves everything once into an immutable
schema and returns an Engine whose collection clients run every operation
through a fixed-stage hook pipeline against a pluggable store.

Architecture:
    collections + plugins
            │
            ▼
    ┌────────────────┐     ┌──────────────────┐     ┌─────────────┐
    │ Schema Resolver│────▶│ ResolvedSchema   │────▶│   Engine    │
    │ (+ Composer)   │     │ (frozen, hashed) │     │ collections │
    └────────────────┘     └──────────────────┘     └──────┬──────┘
                                                           │
                                                           ▼
                        ┌──────────────────────────────────────────┐
                        │ Operation Executor (hook pipeline)       │
                        │ validate → authorize → hooks → Execute   │
                        └────────────────────┬─────────────────────┘
                                             ▼
                                 ┌──────────────────────┐
                                 │ Store (memory/SQLite)│
                                 └──────────────────────┘

Invariants:
    - The schema is resolved once and never changes at runtime
    - Hooks run in composed order: global plugins, collection plugins, inline
    - A write and everything its hooks start commit or roll back together
    - Every error is a CollforgeError carrying a code and details

How to change safely:
    - New plugin capabilities go into Plugin and the composer together
    - Keep store backends behaviorally identical (same predicate semantics)
"""

from ._version import __version__
from .client import CollectionClient, Engine, configure
from .config import DatabaseConfig, Settings
from .errors import (
    AccessDeniedError,
    CacheError,
    CollforgeError,
    ConfigurationError,
    ConflictError,
    DuplicateCollectionError,
    DuplicateFieldTypeError,
    DuplicatePluginError,
    HookError,
    InvalidFieldError,
    MissingDependencyError,
    NotFoundError,
    RestrictError,
    SchemaMismatchError,
    StoreError,
    UniqueViolationError,
    UnknownCollectionError,
    UnknownFieldError,
    UnknownFieldTypeError,
    UnknownOptionError,
    ValidationError,
    VersioningError,
)
from .locale import DictCatalog, LocaleCatalog
from .log import setup_logging
from .pipeline import HookArgs, OperationContext, OperationKind, Skip
from .plugins import audit, cache, seo, soft_delete, versioning
from .schema import (
    CollectionDef,
    FieldDef,
    FieldTypeDescriptor,
    FieldTypeRegistry,
    HookSet,
    OperationMiddleware,
    Partial,
    Plugin,
    ResolvedSchema,
    collection,
    computed,
    field,
    relation,
    resolve_schema,
    reverse_relation,
)
from .store import MemoryStore, SqliteStore, Store

__all__ = [
    "__version__",
    # Engine
    "configure",
    "Engine",
    "CollectionClient",
    "Settings",
    "DatabaseConfig",
    "setup_logging",
    # Declarations
    "collection",
    "field",
    "relation",
    "reverse_relation",
    "computed",
    "CollectionDef",
    "FieldDef",
    "HookSet",
    "Plugin",
    "Partial",
    "OperationMiddleware",
    "FieldTypeDescriptor",
    "FieldTypeRegistry",
    "ResolvedSchema",
    "resolve_schema",
    # Pipeline
    "HookArgs",
    "OperationContext",
    "OperationKind",
    "Skip",
    # Plugins
    "audit",
    "cache",
    "seo",
    "soft_delete",
    "versioning",
    # Collaborators
    "Store",
    "MemoryStore",
    "SqliteStore",
    "LocaleCatalog",
    "DictCatalog",
    # Errors
    "CollforgeError",
    "ConfigurationError",
    "ConflictError",
    "DuplicateCollectionError",
    "DuplicateFieldTypeError",
    "DuplicatePluginError",
    "InvalidFieldError",
    "MissingDependencyError",
    "SchemaMismatchError",
    "UnknownCollectionError",
    "UnknownFieldTypeError",
    "UnknownOptionError",
    "ValidationError",
    "UnknownFieldError",
    "UniqueViolationError",
    "HookError",
    "NotFoundError",
    "AccessDeniedError",
    "RestrictError",
    "CacheError",
    "VersioningError",
    "StoreError",
]
