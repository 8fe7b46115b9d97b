"""
Base protocol for collforge persistence collaborators.

The engine never touches storage directly: the Execute stage calls a Store.
This module defines the Store protocol every backend implements, the
Transaction handle, and open_store() which builds a store from a URL.

Invariants:
    - Records are plain dicts keyed by field name, including id, created_at
      and updated_at
    - Every mutation issued with a transaction commits or rolls back with it
    - Unique violations raise UniqueViolationError naming the field
    - Stores return copies; mutating a returned record never changes storage

How to change safely:
    - Protocol changes require updating all implementations
    - Keep predicate semantics identical across backends (see query.matches)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from ..errors import ConfigurationError

if TYPE_CHECKING:
    from ..schema.resolved import ResolvedSchema

Record = Dict[str, Any]


@dataclass
class Transaction:
    """Handle of an open store transaction.

    Attributes:
        id: Transaction identifier (for logs)
        handle: Backend-specific state (snapshot, connection)
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    handle: Any = None


@runtime_checkable
class Store(Protocol):
    """Protocol for persistence backends."""

    async def initialize(self, schema: ResolvedSchema, verify: bool = False) -> Optional[str]:
        """Prepare storage for the schema.

        Args:
            schema: Resolved schema
            verify: Refuse a schema whose fingerprint differs from the
                recorded one, before anything is created or recorded

        Returns:
            Fingerprint recorded by a previous initialize(), if any

        Raises:
            SchemaMismatchError: If verify is set and the fingerprints differ
        """
        ...

    def transaction(self) -> AsyncContextManager[Transaction]:
        """Open a transaction; commit on clean exit, roll back on error."""
        ...

    async def find_many(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Sequence[Tuple[str, str]] = (),
        limit: Optional[int] = None,
        offset: int = 0,
        tx: Optional[Transaction] = None,
    ) -> List[Record]:
        """Records matching a validated predicate tree."""
        ...

    async def count(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        ...

    async def insert(self, collection: str, record: Record, tx: Optional[Transaction] = None) -> Record:
        ...

    async def update(
        self,
        collection: str,
        record_id: str,
        data: Record,
        tx: Optional[Transaction] = None,
    ) -> Record:
        """Apply data to a record and return the full updated record."""
        ...

    async def delete(self, collection: str, record_id: str, tx: Optional[Transaction] = None) -> None:
        ...

    async def close(self) -> None:
        ...


def open_store(url: str, busy_timeout_ms: int = 5000, wal_mode: bool = True) -> Store:
    """Build a store from a database URL.

    Supported:
        memory://            in-process store
        sqlite:///path.db    SQLite file
        sqlite://:memory:    private in-memory SQLite database

    Raises:
        ConfigurationError: For unsupported schemes
    """
    if url.startswith("memory://"):
        from .memory import MemoryStore

        return MemoryStore()
    if url.startswith("sqlite://"):
        from .sqlite import SqliteStore

        path = url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:] or ":memory:"
        return SqliteStore(path or ":memory:", busy_timeout_ms=busy_timeout_ms, wal_mode=wal_mode)
    raise ConfigurationError(
        f"Unsupported database URL {url!r}. Use memory:// or sqlite:///path",
        code="UNSUPPORTED_DATABASE",
    )
