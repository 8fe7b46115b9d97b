"""
Cache backends and eviction strategies for the collforge cache plugin.

Backends store operation results under string keys. Every entry carries tags
(collection:<slug>, record:<slug>:<id> and caller tags) so a write can drop
each entry that mentions the written record.

Strategies decide eviction only; keys and invalidation behave the same for
all of them:
    lru     evicts the least recently used entry at capacity
    ttl     entries expire a fixed time after they were stored
    smart   counts hits per key; hot keys (hits >= hot_threshold) live
            hot_multiplier times longer than the base TTL, cold keys
            live base TTL / cold_divisor; re-evaluated on every hit

Invariants:
    - get() returns a copy; mutating it never changes the cached value
    - An expired entry is never returned
    - delete_tags() removes every entry carrying any of the tags

Example:
    >>> backend = MemoryCacheBackend(SmartStrategy(default_ttl=60), max_entries=500)
    >>> await backend.set("collforge:posts:count:ab12", 3, tags=["collection:posts"])
    >>> await backend.get("collforge:posts:count:ab12")
    3
"""

from __future__ import annotations

import copy
import json
import logging
import math
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Optional,
    Protocol,
    Set,
    runtime_checkable,
)

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import CacheError, ConfigurationError
from ..pipeline.query import canonical_json

logger = logging.getLogger(__name__)

STRATEGIES = ("lru", "ttl", "smart")


@dataclass
class CacheEntry:
    """One cached value with its bookkeeping.

    Attributes:
        key: Cache key
        value: Cached result
        tags: Invalidation tags
        ttl: Base time-to-live in seconds (None never expires)
        created_at: Clock value when stored
        last_access: Clock value of the latest hit
        hits: Number of hits since stored
    """

    key: str
    value: Any
    tags: FrozenSet[str] = frozenset()
    ttl: Optional[float] = None
    created_at: float = 0.0
    last_access: float = 0.0
    hits: int = 0

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass
class CacheStats:
    """Cache plugin counters."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate, 4),
        }


# ---------------------------------------------------------------------------
# Eviction strategies
# ---------------------------------------------------------------------------


class EvictionStrategy:
    """Base eviction policy.

    Attributes:
        default_ttl: TTL given to entries stored without one
    """

    name = "base"
    hit_sensitive = False

    def __init__(self, default_ttl: Optional[float] = None) -> None:
        self.default_ttl = default_ttl

    def effective_ttl(self, entry: CacheEntry) -> Optional[float]:
        return entry.ttl

    def expired(self, entry: CacheEntry, now: float) -> bool:
        ttl = self.effective_ttl(entry)
        return ttl is not None and entry.age(now) >= ttl

    def victim(self, entries: Iterable[CacheEntry]) -> CacheEntry:
        """Entry to evict; entries arrive least recently used first."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(default_ttl={self.default_ttl})"


class LRUStrategy(EvictionStrategy):
    """Evict the least recently used entry."""

    name = "lru"

    def victim(self, entries: Iterable[CacheEntry]) -> CacheEntry:
        return next(iter(entries))


class TTLStrategy(EvictionStrategy):
    """Expire entries by absolute age; evict the oldest at capacity."""

    name = "ttl"

    def __init__(self, default_ttl: Optional[float] = 300.0) -> None:
        super().__init__(default_ttl)

    def victim(self, entries: Iterable[CacheEntry]) -> CacheEntry:
        return min(entries, key=lambda e: e.created_at)


class SmartStrategy(EvictionStrategy):
    """Hot/cold TTL by access frequency; evict the least used entry."""

    name = "smart"
    hit_sensitive = True

    def __init__(
        self,
        default_ttl: Optional[float] = 300.0,
        hot_threshold: int = 5,
        hot_multiplier: float = 4.0,
        cold_divisor: float = 2.0,
    ) -> None:
        super().__init__(default_ttl)
        if hot_threshold < 1 or hot_multiplier <= 0 or cold_divisor <= 0:
            raise ConfigurationError(
                "smart cache strategy needs hot_threshold >= 1 and positive multiplier/divisor"
            )
        self.hot_threshold = hot_threshold
        self.hot_multiplier = hot_multiplier
        self.cold_divisor = cold_divisor

    def is_hot(self, entry: CacheEntry) -> bool:
        return entry.hits >= self.hot_threshold

    def effective_ttl(self, entry: CacheEntry) -> Optional[float]:
        if entry.ttl is None:
            return None
        if self.is_hot(entry):
            return entry.ttl * self.hot_multiplier
        return entry.ttl / self.cold_divisor

    def victim(self, entries: Iterable[CacheEntry]) -> CacheEntry:
        return min(entries, key=lambda e: e.hits)


def build_strategy(name: str, ttl: Optional[float] = None, **options: Any) -> EvictionStrategy:
    """Build an eviction strategy by name.

    Raises:
        ConfigurationError: For an unknown strategy name
    """
    if name == "lru":
        return LRUStrategy(ttl)
    if name == "ttl":
        return TTLStrategy(ttl if ttl is not None else 300.0)
    if name == "smart":
        return SmartStrategy(ttl if ttl is not None else 300.0, **options)
    raise ConfigurationError(f"Unknown cache strategy {name!r}. Valid strategies: {list(STRATEGIES)}")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@runtime_checkable
class CacheBackend(Protocol):
    """Protocol for cache backing stores."""

    async def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on a miss."""
        ...

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern; returns the number deleted."""
        ...

    async def delete_tags(self, tags: Iterable[str]) -> int:
        """Delete entries carrying any of the tags; returns the number deleted."""
        ...

    async def clear(self) -> int:
        ...

    async def stats(self) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


class MemoryCacheBackend:
    """In-process backend with capacity-bound eviction.

    Attributes:
        strategy: Eviction strategy
        max_entries: Capacity
    """

    def __init__(
        self,
        strategy: Optional[EvictionStrategy] = None,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ConfigurationError(f"max_entries must be at least 1, got {max_entries}")
        self.strategy = strategy or LRUStrategy()
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tags: Dict[str, Set[str]] = {}
        self.evictions = 0
        self.expirations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Bookkeeping record of a key (for inspection)."""
        return self._entries.get(key)

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        for tag in entry.tags:
            keys = self._tags.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tags[tag]
        return True

    def _purge_expired(self, now: float) -> None:
        for key in [k for k, e in self._entries.items() if self.strategy.expired(e, now)]:
            self._remove(key)
            self.expirations += 1

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if self.strategy.expired(entry, now):
            self._remove(key)
            self.expirations += 1
            return None
        entry.hits += 1
        entry.last_access = now
        self._entries.move_to_end(key)
        return copy.deepcopy(entry.value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> None:
        now = self._clock()
        self._remove(key)
        if len(self._entries) >= self.max_entries:
            self._purge_expired(now)
        while len(self._entries) >= self.max_entries:
            victim = self.strategy.victim(self._entries.values())
            self._remove(victim.key)
            self.evictions += 1
            logger.debug(f"Evicted cache entry {victim.key} ({self.strategy.name})")

        entry = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            tags=frozenset(tags),
            ttl=ttl if ttl is not None else self.strategy.default_ttl,
            created_at=now,
            last_access=now,
        )
        self._entries[key] = entry
        for tag in entry.tags:
            self._tags.setdefault(tag, set()).add(key)

    async def delete(self, key: str) -> bool:
        return self._remove(key)

    async def delete_pattern(self, pattern: str) -> int:
        keys = [k for k in self._entries if fnmatchcase(k, pattern)]
        for key in keys:
            self._remove(key)
        return len(keys)

    async def delete_tags(self, tags: Iterable[str]) -> int:
        keys: Set[str] = set()
        for tag in tags:
            keys.update(self._tags.get(tag, ()))
        for key in keys:
            self._remove(key)
        return len(keys)

    async def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._tags.clear()
        return count

    async def stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "strategy": self.strategy.name,
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }

    async def close(self) -> None:
        await self.clear()


class RedisCacheBackend:
    """Redis backend (redis-py asyncio).

    Values are stored as JSON envelopes carrying the base TTL, the store time,
    the hit count and the entry's tags, so the smart strategy can re-evaluate
    expiry on every hit. Tags are Redis sets under <prefix>:tag:<tag>; a tag
    set expires no earlier than its longest-lived member, and a tag
    invalidation also removes the dropped keys from their other tag sets.
    Capacity-bound eviction is left to the server's maxmemory-policy.

    Redis failures are raised as CacheError.

    Example:
        >>> backend = RedisCacheBackend.from_url("redis://localhost:6379/0")
        >>> plugin = cache(backend=backend, strategy="smart")
    """

    def __init__(
        self,
        client: redis.Redis,
        strategy: Optional[EvictionStrategy] = None,
        prefix: str = "collforge",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.strategy = strategy or TTLStrategy()
        self.prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisCacheBackend:
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}:tag:{tag}"

    @staticmethod
    def _expiry(seconds: Optional[float]) -> Optional[int]:
        if seconds is None:
            return None
        return max(1, math.ceil(seconds))

    @asynccontextmanager
    async def _errors(self, action: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as e:
            raise CacheError(f"Redis {action} failed: {type(e).__name__}: {e}") from e

    async def _tag(self, key: str, tags: Iterable[str], expiry: Optional[int]) -> None:
        tags = list(tags)
        if not tags:
            return
        async with self.client.pipeline(transaction=False) as pipe:
            for tag in tags:
                tag_key = self._tag_key(tag)
                pipe.sadd(tag_key, key)
                if expiry is None:
                    pipe.persist(tag_key)
                else:
                    pipe.expire(tag_key, expiry, nx=True)
                    pipe.expire(tag_key, expiry, gt=True)
            await pipe.execute()

    async def get(self, key: str) -> Optional[Any]:
        async with self._errors("get"):
            raw = await self.client.get(key)
            if raw is None:
                return None
            envelope = json.loads(raw)
            entry = CacheEntry(
                key=key,
                value=envelope["value"],
                ttl=envelope.get("ttl"),
                created_at=envelope.get("created_at", 0.0),
                hits=envelope.get("hits", 0),
            )
            now = self._clock()
            if self.strategy.expired(entry, now):
                await self.client.delete(key)
                return None

            if self.strategy.hit_sensitive:
                entry.hits += 1
                envelope["hits"] = entry.hits
                ttl = self.strategy.effective_ttl(entry)
                expiry = self._expiry(None if ttl is None else ttl - entry.age(now))
                await self.client.set(key, canonical_json(envelope), ex=expiry)
                await self._tag(key, envelope.get("tags", ()), expiry)
            return entry.value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> None:
        tags = sorted(set(tags))
        entry = CacheEntry(
            key=key,
            value=value,
            ttl=ttl if ttl is not None else self.strategy.default_ttl,
            created_at=self._clock(),
        )
        envelope = {
            "value": value,
            "ttl": entry.ttl,
            "created_at": entry.created_at,
            "hits": 0,
            "tags": tags,
        }
        expiry = self._expiry(self.strategy.effective_ttl(entry))
        async with self._errors("set"):
            await self.client.set(key, canonical_json(envelope), ex=expiry)
            await self._tag(key, tags, expiry)

    async def delete(self, key: str) -> bool:
        async with self._errors("delete"):
            return bool(await self.client.delete(key))

    async def delete_pattern(self, pattern: str) -> int:
        async with self._errors("delete_pattern"):
            keys = [key async for key in self.client.scan_iter(match=pattern)]
            if not keys:
                return 0
            deleted = await self.client.delete(*keys)
        logger.debug(f"Cache delete pattern {pattern}: {deleted} key(s)")
        return deleted

    async def delete_tags(self, tags: Iterable[str]) -> int:
        tag_keys = [self._tag_key(tag) for tag in tags]
        if not tag_keys:
            return 0
        async with self._errors("delete_tags"):
            keys: Set[str] = set()
            for tag_key in tag_keys:
                keys.update(await self.client.smembers(tag_key))
            ordered = sorted(keys)
            raws = await self.client.mget(ordered) if ordered else []
            async with self.client.pipeline(transaction=False) as pipe:
                for key, raw in zip(ordered, raws):
                    if raw is None:
                        continue
                    for other in json.loads(raw).get("tags", ()):
                        if self._tag_key(other) not in tag_keys:
                            pipe.srem(self._tag_key(other), key)
                if ordered:
                    pipe.delete(*ordered)
                pipe.delete(*tag_keys)
                results = await pipe.execute()
        return results[-2] if ordered else 0

    async def clear(self) -> int:
        return await self.delete_pattern(f"{self.prefix}:*")

    async def stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "strategy": self.strategy.name, "prefix": self.prefix}

    async def close(self) -> None:
        await self.client.aclose()
