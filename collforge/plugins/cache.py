"""
Cache plugin for collforge.

Caches read results around the Execute stage:
- Key: <prefix>:<slug>:<operation>:<sha256 of the normalized query>
- Hit: the middleware returns Skip(cached value) and Execute does not run
- Miss: Execute runs; the result is stored after it succeeds, tagged with
  collection:<slug>, record:<slug>:<id> for every returned record, and any
  caller tags (cache={"tags": [...]})

Writes invalidate through an after_operation hook:
    exact    entries holding the written record, plus the collection's
             find_many and count entries
    pattern  every entry of the collection (<prefix>:<slug>:*)
    all      every entry under the prefix
related={"users": ["posts"]} also drops posts entries when users change.

Reads that run inside an open write transaction bypass the cache, so a
nested read never sees (or stores) a result the transaction might roll back.
Per call: cache=False or cache={"skip": True} bypasses, cache={"ttl": 30}
overrides the TTL.

Invariants:
    - A hit returns the same value Execute produced on the miss
    - Cache failures never fail a read unless the plugin is strict (or
      Settings.strict_plugins is set); then they raise HookError

Example:
    >>> engine = await configure(collections=[posts], plugins=[cache(strategy="smart", ttl=60)])
    >>> await engine.collections.posts.find_many({"status": "published"})
    >>> await engine.collections.posts.cache.stats()
    {'hits': 0, 'misses': 1, ...}
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from ..config import Settings
from ..errors import ConfigurationError, HookError
from ..pipeline.context import OperationContext, OperationKind
from ..pipeline.hooks import HookArgs, Skip
from ..pipeline.query import FindOptions, params_digest
from ..schema.plugin import OperationMiddleware, Plugin
from ..schema.resolved import ResolvedCollection
from ..schema.types import HookSet
from .cache_backends import CacheBackend, CacheStats, MemoryCacheBackend, build_strategy

logger = logging.getLogger(__name__)

INVALIDATION_STRATEGIES = ("exact", "pattern", "all")
READ_OPERATIONS = ("find_many", "find_unique", "count")

_KEY = "cache.key"
_OPTIONS = "cache.options"


def cache_key(prefix: str, slug: str, operation: str, query: FindOptions, locale: str) -> str:
    """Deterministic key of one read."""
    params = query.cache_params()
    params["locale"] = locale
    return f"{prefix}:{slug}:{operation}:{params_digest(params)}"


def _call_options(query: Optional[FindOptions]) -> Optional[Dict[str, Any]]:
    """Per-call cache options, or None when the caller bypasses the cache."""
    if query is None or query.cache is False:
        return None
    if query.cache is None or query.cache is True:
        return {}
    if isinstance(query.cache, Mapping):
        if query.cache.get("skip"):
            return None
        return dict(query.cache)
    raise ConfigurationError(f"Invalid cache option {query.cache!r}: use a bool or a mapping")


def _record_ids(result: Any) -> List[str]:
    if isinstance(result, Mapping):
        return [result["id"]] if result.get("id") else []
    if isinstance(result, list):
        return [r["id"] for r in result if isinstance(r, Mapping) and r.get("id")]
    return []


class CacheManager:
    """State and callables behind one cache plugin instance.

    The backend is built on first use from Settings (cache_strategy,
    cache_max_entries, cache_ttl_seconds) unless one is passed in.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        strategy: Optional[str] = None,
        ttl: Optional[float] = None,
        max_entries: Optional[int] = None,
        invalidation: str = "exact",
        related: Optional[Mapping[str, Sequence[str]]] = None,
        collections: Optional[Sequence[str]] = None,
        key_prefix: Optional[str] = None,
        strict: Optional[bool] = None,
        name: str = "cache",
    ) -> None:
        if invalidation not in INVALIDATION_STRATEGIES:
            raise ConfigurationError(
                f"Unknown invalidation strategy {invalidation!r}. "
                f"Valid strategies: {list(INVALIDATION_STRATEGIES)}"
            )
        if strategy is not None:
            build_strategy(strategy, ttl)
        self.backend = backend
        self.strategy = strategy
        self.ttl = ttl
        self.max_entries = max_entries
        self.invalidation = invalidation
        self.related = {slug: tuple(targets) for slug, targets in (related or {}).items()}
        self.collections = set(collections) if collections is not None else None
        self.key_prefix = key_prefix
        self.strict = strict
        self.name = name
        self.counters = CacheStats()

    def backend_for(self, settings: Settings) -> CacheBackend:
        if self.backend is None:
            strategy = build_strategy(
                self.strategy or settings.cache_strategy,
                self.ttl if self.ttl is not None else settings.cache_ttl_seconds,
            )
            self.backend = MemoryCacheBackend(strategy, self.max_entries or settings.cache_max_entries)
            logger.info(f"Cache '{self.name}' using in-process backend ({strategy!r})")
        return self.backend

    def prefix(self, settings: Settings) -> str:
        return self.key_prefix or settings.cache_key_prefix

    def applies_to(self, collection: ResolvedCollection) -> bool:
        if self.collections is not None:
            return collection.slug in self.collections
        return not collection.auxiliary

    def _is_strict(self, ctx: OperationContext) -> bool:
        return self.strict if self.strict is not None else ctx.engine.settings.strict_plugins

    async def _guarded(self, ctx: OperationContext, action: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except Exception as e:
            self.counters.errors += 1
            if self._is_strict(ctx):
                raise HookError(
                    f"{type(e).__name__}: {e}",
                    stage=f"cache:{action}",
                    origin=self.name,
                    collection=ctx.slug,
                    hook=f"cache.{action}",
                ) from e
            logger.warning(f"Cache {action} failed on '{ctx.slug}': {type(e).__name__}: {e}")
            return None

    # -- read middleware ------------------------------------------------

    async def before_read(self, args: HookArgs) -> Optional[Skip]:
        ctx = args.context
        if ctx.transaction is not None or not self.applies_to(ctx.collection):
            return None
        options = _call_options(args.query)
        if options is None:
            return None

        settings = ctx.engine.settings
        key = cache_key(self.prefix(settings), ctx.slug, ctx.operation.value, args.query, ctx.locale)
        ctx.state[_KEY] = key
        ctx.state[_OPTIONS] = options

        value = await self._guarded(ctx, "get", self.backend_for(settings).get(key))
        if value is None:
            self.counters.misses += 1
            logger.debug(f"Cache miss {key}")
            return None
        self.counters.hits += 1
        logger.debug(f"Cache hit {key}")
        return Skip(value)

    async def after_read(self, args: HookArgs) -> None:
        ctx = args.context
        key = ctx.state.get(_KEY)
        if key is None or args.skipped or args.result is None:
            return
        options = ctx.state.get(_OPTIONS) or {}
        tags: Set[str] = {f"collection:{ctx.slug}"}
        tags.update(f"record:{ctx.slug}:{record_id}" for record_id in _record_ids(args.result))
        tags.update(options.get("tags") or ())

        backend = self.backend_for(ctx.engine.settings)
        stored = backend.set(key, args.result, ttl=options.get("ttl"), tags=tags)
        await self._guarded(ctx, "set", stored)
        self.counters.sets += 1

    # -- write invalidation ---------------------------------------------

    async def invalidate_write(self, args: HookArgs) -> None:
        ctx = args.context
        if not ctx.operation.is_write:
            return
        settings = ctx.engine.settings
        backend = self.backend_for(settings)
        prefix = self.prefix(settings)
        removed = 0

        if self.applies_to(ctx.collection):
            if self.invalidation == "all":
                removed += await self._guarded(ctx, "clear", backend.clear()) or 0
            elif self.invalidation == "pattern":
                own = backend.delete_pattern(f"{prefix}:{ctx.slug}:*")
                removed += await self._guarded(ctx, "invalidate", own) or 0
            else:
                record = args.result if isinstance(args.result, Mapping) else args.existing
                if record and record.get("id"):
                    tag = f"record:{ctx.slug}:{record['id']}"
                    removed += await self._guarded(ctx, "invalidate", backend.delete_tags([tag])) or 0
                for operation in (OperationKind.FIND_MANY, OperationKind.COUNT):
                    pattern = f"{prefix}:{ctx.slug}:{operation.value}:*"
                    removed += await self._guarded(ctx, "invalidate", backend.delete_pattern(pattern)) or 0

        for related in self.related.get(ctx.slug, ()):
            dropped = backend.delete_pattern(f"{prefix}:{related}:*")
            removed += await self._guarded(ctx, "invalidate", dropped) or 0

        if removed:
            self.counters.invalidations += removed
            logger.debug(f"{ctx.operation.value} on '{ctx.slug}' invalidated {removed} cache entr(ies)")

    # -- collection operations -------------------------------------------

    async def invalidate(
        self,
        client: Any,
        tags: Optional[Iterable[str]] = None,
        pattern: Optional[str] = None,
    ) -> int:
        """Drop cached entries of a collection.

        Args:
            tags: Drop entries carrying any of these tags
            pattern: Glob over the operation part of the key ("find_many:*")

        With neither, every entry of the collection is dropped.
        """
        settings = client.engine.settings
        backend = self.backend_for(settings)
        prefix = self.prefix(settings)
        if tags is not None:
            removed = await backend.delete_tags(list(tags))
        else:
            removed = await backend.delete_pattern(f"{prefix}:{client.slug}:{pattern or '*'}")
        self.counters.invalidations += removed
        logger.info(f"Invalidated {removed} cache entr(ies) of '{client.slug}'")
        return removed

    async def stats(self, client: Any) -> Dict[str, Any]:
        """Hit/miss counters plus backend statistics."""
        backend = self.backend_for(client.engine.settings)
        return {**self.counters.to_dict(), **await backend.stats()}

    def plugin(self, operations: Sequence[str] = READ_OPERATIONS) -> Plugin:
        unknown = [op for op in operations if op not in READ_OPERATIONS]
        if unknown:
            raise ConfigurationError(f"Cache can only wrap read operations, got {unknown}")
        middleware = OperationMiddleware(before=self.before_read, after=self.after_read)
        return Plugin(
            name=self.name,
            hooks=HookSet.of(after_operation=self.invalidate_write),
            operations={op: middleware for op in operations},
            methods={"cache.invalidate": self.invalidate, "cache.stats": self.stats},
            description="Read-through result cache",
        )


def cache(
    backend: Optional[CacheBackend] = None,
    strategy: Optional[str] = None,
    ttl: Optional[float] = None,
    max_entries: Optional[int] = None,
    invalidation: str = "exact",
    related: Optional[Mapping[str, Sequence[str]]] = None,
    collections: Optional[Sequence[str]] = None,
    operations: Sequence[str] = READ_OPERATIONS,
    key_prefix: Optional[str] = None,
    strict: Optional[bool] = None,
    name: str = "cache",
) -> Plugin:
    """Build a cache plugin.

    Args:
        backend: Cache backing store (in-process backend built from Settings if omitted)
        strategy: "lru", "ttl" or "smart" (Settings.cache_strategy if omitted)
        ttl: Base TTL in seconds (Settings.cache_ttl_seconds if omitted)
        max_entries: Capacity of the in-process backend
        invalidation: "exact", "pattern" or "all"
        related: slug -> collections whose entries a write to slug also drops
        collections: Slugs to cache (every non-auxiliary collection if omitted)
        operations: Read operations to cache
        key_prefix: Key prefix (Settings.cache_key_prefix if omitted)
        strict: Raise on backend failures (Settings.strict_plugins if None)
        name: Plugin name

    Raises:
        ConfigurationError: For unknown strategies or operations
    """
    manager = CacheManager(
        backend=backend,
        strategy=strategy,
        ttl=ttl,
        max_entries=max_entries,
        invalidation=invalidation,
        related=related,
        collections=collections,
        key_prefix=key_prefix,
        strict=strict,
        name=name,
    )
    return manager.plugin(operations)
