"""
Reference plugins for collforge.

Each factory returns a Plugin; pass it to configure(plugins=[...]) to apply
it to every collection, or to collection(..., plugins=[...]) for one.
"""

from .audit import audit
from .cache import CacheManager, cache
from .cache_backends import (
    CacheBackend,
    CacheEntry,
    EvictionStrategy,
    LRUStrategy,
    MemoryCacheBackend,
    RedisCacheBackend,
    SmartStrategy,
    TTLStrategy,
)
from .seo import seo, slugify
from .soft_delete import soft_delete
from .versioning import compute_diff, versioning

__all__ = [
    "audit",
    "cache",
    "seo",
    "soft_delete",
    "versioning",
    "CacheManager",
    "CacheBackend",
    "CacheEntry",
    "EvictionStrategy",
    "LRUStrategy",
    "TTLStrategy",
    "SmartStrategy",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "compute_diff",
    "slugify",
]
