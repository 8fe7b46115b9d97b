"""
Persistence backends for collforge.

- MemoryStore: in-process tables (tests, local development)
- SqliteStore: one table per collection, built from resolved storage columns
"""

from .base import Record, Store, Transaction, open_store
from .memory import MemoryStore
from .sqlite import SqliteStore

__all__ = ["Record", "Store", "Transaction", "open_store", "MemoryStore", "SqliteStore"]
