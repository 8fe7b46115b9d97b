"""
In-memory store implementation for collforge.

This module provides a simple in-process Store for:
- Unit tests
- Integration tests
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Provides the same predicate and ordering semantics as SqliteStore
    - Write transactions are serialized and work on a private copy of the
      tables; readers outside the transaction see the last committed state
    - Writes without a transaction run in one of their own

How to change safely:
    - Keep the interface compatible with the Store protocol
    - Keep copies at the boundary: callers never see internal dicts
"""

from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from ..errors import SchemaMismatchError, StoreError, UniqueViolationError
from ..pipeline.query import matches, paginate, sort_records
from .base import Record, Transaction

logger = logging.getLogger(__name__)


class MemoryStore:
    """In-memory implementation of Store.

    Attributes:
        calls: Number of store calls per method (read by tests)

    Thread safety:
        Uses an asyncio lock to serialize write transactions. Safe to use
        from multiple coroutines.

    Example:
        >>> store = MemoryStore()
        >>> await store.initialize(schema)
        >>> async with store.transaction() as tx:
        ...     await store.insert("posts", {"id": "p1", "title": "Hi"}, tx)
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._unique: Dict[str, Tuple[str, ...]] = {}
        self._fingerprint: Optional[str] = None
        self._lock = asyncio.Lock()
        self.calls: Dict[str, int] = {}

    def _count_call(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def _table(self, collection: str, tx: Optional[Transaction] = None) -> Dict[str, Record]:
        tables = tx.handle if tx is not None else self._tables
        table = tables.get(collection)
        if table is None:
            raise StoreError(f"Unknown table '{collection}'")
        return table

    async def initialize(self, schema: Any, verify: bool = False) -> Optional[str]:
        """Create a table per collection."""
        previous = self._fingerprint
        if verify and previous and previous != schema.fingerprint:
            raise SchemaMismatchError(previous, schema.fingerprint)
        for slug, coll in schema.items():
            self._tables.setdefault(slug, {})
            self._unique[slug] = tuple(
                f.name for f in coll.stored_fields() if f.descriptor.storage.unique and f.name != "id"
            )
        self._fingerprint = schema.fingerprint
        logger.debug(f"MemoryStore initialized with {len(self._tables)} tables")
        return previous

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Serialize writers; the working copy replaces the tables on commit."""
        async with self._lock:
            tx = Transaction(handle=copy.deepcopy(self._tables))
            logger.debug(f"MemoryStore transaction {tx.id} started")
            try:
                yield tx
            except BaseException:
                logger.debug(f"MemoryStore transaction {tx.id} rolled back")
                raise
            self._tables = tx.handle
            logger.debug(f"MemoryStore transaction {tx.id} committed")

    async def find_many(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Sequence[Tuple[str, str]] = (),
        limit: Optional[int] = None,
        offset: int = 0,
        tx: Optional[Transaction] = None,
    ) -> List[Record]:
        self._count_call("find_many")
        rows = [r for r in self._table(collection, tx).values() if matches(r, where)]
        rows = sort_records(rows, order_by)
        return copy.deepcopy(paginate(rows, limit, offset))

    async def count(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        self._count_call("count")
        return sum(1 for r in self._table(collection, tx).values() if matches(r, where))

    def _check_unique(self, collection: str, record: Record, tx: Transaction) -> None:
        table = self._table(collection, tx)
        for name in self._unique.get(collection, ()):
            value = record.get(name)
            if value is None:
                continue
            for other in table.values():
                if other["id"] != record["id"] and other.get(name) == value:
                    raise UniqueViolationError(collection, name)

    async def insert(self, collection: str, record: Record, tx: Optional[Transaction] = None) -> Record:
        if tx is None:
            async with self.transaction() as own:
                return await self.insert(collection, record, own)
        self._count_call("insert")
        table = self._table(collection, tx)
        if record["id"] in table:
            raise UniqueViolationError(collection, "id")
        self._check_unique(collection, record, tx)
        table[record["id"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def update(
        self,
        collection: str,
        record_id: str,
        data: Record,
        tx: Optional[Transaction] = None,
    ) -> Record:
        if tx is None:
            async with self.transaction() as own:
                return await self.update(collection, record_id, data, own)
        self._count_call("update")
        table = self._table(collection, tx)
        current = table.get(record_id)
        if current is None:
            raise StoreError(f"Record '{record_id}' not found in '{collection}'")
        merged = {**current, **copy.deepcopy(data)}
        self._check_unique(collection, merged, tx)
        table[record_id] = merged
        return copy.deepcopy(merged)

    async def delete(self, collection: str, record_id: str, tx: Optional[Transaction] = None) -> None:
        if tx is None:
            async with self.transaction() as own:
                await self.delete(collection, record_id, own)
            return
        self._count_call("delete")
        self._table(collection, tx).pop(record_id, None)

    async def close(self) -> None:
        """Clear all data."""
        self._tables.clear()
        logger.debug("MemoryStore closed")
