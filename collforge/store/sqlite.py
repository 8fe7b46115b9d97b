"""
SQLite store for collforge.

This module maps every resolved collection to one SQLite table whose columns
come from the resolved StorageColumn descriptors:

    <slug>:
        - id TEXT PRIMARY KEY (UUID)
        - created_at TEXT (ISO-8601, UTC)
        - updated_at TEXT (ISO-8601, UTC)
        - one column per stored field (sql_type, NOT NULL, UNIQUE, index)

    _collforge_meta:
        - key TEXT PRIMARY KEY
        - value TEXT          (schema fingerprint of the last initialize)

Value encodings:
    json      -> json.dumps / json.loads
    datetime  -> isoformat (decoded by the field's coerce function)
    bool      -> 0/1 (decoded by the field's coerce function)

Invariants:
    - Write transactions are serialized on the writer connection
    - Reads outside a transaction never see uncommitted writes: file
      databases read on a second connection, :memory: reads wait for the lock
    - All writes in a transaction commit or roll back together
    - Identifiers are quoted; values are always bound parameters
    - Tables are created, never altered or dropped (no migrations)

How to change safely:
    - Keep predicate semantics identical to query.matches()
    - Test with a file database and with :memory:
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from ..errors import SchemaMismatchError, StoreError, UniqueViolationError
from ..pipeline.query import OPERATORS
from ..schema.fieldtypes import StorageColumn
from .base import Record, Transaction

logger = logging.getLogger(__name__)

META_TABLE = "_collforge_meta"


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class SqliteStore:
    """SQLite-backed Store.

    Thread safety:
        An asyncio lock serializes write transactions on the writer
        connection. Reads outside a transaction use a separate reader
        connection (file databases) or wait for the lock (:memory:).

    Example:
        >>> store = SqliteStore("/var/lib/app/content.db")
        >>> await store.initialize(schema)
        >>> rows = await store.find_many("posts", {"status": "published"})
    """

    def __init__(self, path: str = ":memory:", busy_timeout_ms: int = 5000, wal_mode: bool = True) -> None:
        """Initialize the store.

        Args:
            path: Database file path, or ":memory:"
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode for file databases
        """
        self.path = path
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._conn: Optional[sqlite3.Connection] = None
        self._reader: Optional[sqlite3.Connection] = None
        self._columns: Dict[str, Dict[str, StorageColumn]] = {}
        self._lock = asyncio.Lock()

    def _open(self) -> sqlite3.Connection:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode and self.path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = self._open()
        return self._conn

    def _reader_connection(self) -> sqlite3.Connection:
        if self._reader is None:
            self._reader = self._open()
        return self._reader

    @asynccontextmanager
    async def _read_conn(self, tx: Optional[Transaction]) -> AsyncIterator[sqlite3.Connection]:
        """Connection for a read: the transaction's, or one that sees committed data only."""
        if tx is not None:
            yield tx.handle
        elif self.path != ":memory:":
            yield self._reader_connection()
        else:
            async with self._lock:
                yield self._connection()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_table(self, conn: sqlite3.Connection, slug: str, columns: Dict[str, StorageColumn]) -> None:
        parts = []
        for name, column in columns.items():
            ddl = f"{_quote(name)} {column.sql_type}"
            if name == "id":
                ddl += " PRIMARY KEY"
            else:
                if not column.nullable:
                    ddl += " NOT NULL"
                if column.unique:
                    ddl += " UNIQUE"
            parts.append(ddl)
        conn.execute(f"CREATE TABLE IF NOT EXISTS {_quote(slug)} ({', '.join(parts)})")
        for name, column in columns.items():
            if column.indexed and not column.unique and name != "id":
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {_quote(f'idx_{slug}_{name}')} "
                    f"ON {_quote(slug)}({_quote(name)})"
                )

    async def initialize(self, schema: Any, verify: bool = False) -> Optional[str]:
        """Create tables for every collection and record the fingerprint.

        Returns:
            Fingerprint stored by the previous initialize(), if any

        Raises:
            SchemaMismatchError: If verify is set and the stored fingerprint differs
        """
        async with self._lock:
            conn = self._connection()
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {META_TABLE} (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            row = conn.execute(f"SELECT value FROM {META_TABLE} WHERE key = 'fingerprint'").fetchone()
            previous = row["value"] if row else None
            if verify and previous and previous != schema.fingerprint:
                raise SchemaMismatchError(previous, schema.fingerprint)

            conn.execute("BEGIN IMMEDIATE")
            try:
                for slug, coll in schema.items():
                    columns = {f.name: f.descriptor.storage for f in coll.stored_fields()}
                    self._columns[slug] = columns
                    self._create_table(conn, slug, columns)
                conn.execute(
                    f"INSERT OR REPLACE INTO {META_TABLE} (key, value) VALUES ('fingerprint', ?)",
                    (schema.fingerprint,),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

            if previous and previous != schema.fingerprint:
                logger.warning(
                    f"Schema fingerprint changed from {previous} to {schema.fingerprint}; "
                    "existing tables are not migrated"
                )
            logger.info(f"Initialized SQLite store at {self.path} with {len(self._columns)} tables")
            return previous

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """BEGIN IMMEDIATE / COMMIT, ROLLBACK on error."""
        async with self._lock:
            conn = self._connection()
            tx = Transaction(handle=conn)
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield tx
            except BaseException:
                conn.execute("ROLLBACK")
                logger.debug(f"SQLite transaction {tx.id} rolled back")
                raise
            conn.execute("COMMIT")
            logger.debug(f"SQLite transaction {tx.id} committed")

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _table(self, collection: str) -> Dict[str, StorageColumn]:
        columns = self._columns.get(collection)
        if columns is None:
            raise StoreError(f"Unknown table '{collection}'")
        return columns

    def _column(self, collection: str, name: str) -> StorageColumn:
        column = self._table(collection).get(name)
        if column is None:
            raise StoreError(f"Unknown column '{collection}.{name}'")
        return column

    @staticmethod
    def _encode(column: StorageColumn, value: Any) -> Any:
        if value is None:
            return None
        if column.encoding == "json":
            return json.dumps(value, sort_keys=True)
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, bool):
            return int(value)
        return value

    @staticmethod
    def _decode(column: Optional[StorageColumn], value: Any) -> Any:
        if value is None or column is None:
            return value
        if column.encoding == "json" and isinstance(value, str):
            return json.loads(value)
        return value

    def _row_to_record(self, collection: str, row: sqlite3.Row) -> Record:
        columns = self._columns[collection]
        return {key: self._decode(columns.get(key), row[key]) for key in row.keys()}

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def _compile(self, collection: str, where: Optional[Dict[str, Any]], params: List[Any]) -> str:
        if not where:
            return "1"
        clauses: List[str] = []
        for key, value in where.items():
            if key in ("AND", "OR"):
                if not value:
                    clauses.append("1" if key == "AND" else "0")
                    continue
                joined = f" {key} ".join(self._compile(collection, w, params) for w in value)
                clauses.append(f"({joined})")
            elif key == "NOT":
                clauses.append(f"NOT coalesce(({self._compile(collection, value, params)}), 0)")
            elif isinstance(value, dict) and value and all(op in OPERATORS for op in value):
                for op, operand in value.items():
                    clauses.append(self._compile_op(collection, key, op, operand, params))
            else:
                clauses.append(self._compile_op(collection, key, "eq", value, params))
        return " AND ".join(clauses) if clauses else "1"

    def _compile_op(self, collection: str, name: str, op: str, operand: Any, params: List[Any]) -> str:
        column = self._column(collection, name)
        col = _quote(name)

        if op in ("eq", "ne") and operand is None:
            return f"{col} IS NULL" if op == "eq" else f"{col} IS NOT NULL"
        if op == "eq":
            params.append(self._encode(column, operand))
            return f"{col} = ?"
        if op == "ne":
            params.append(self._encode(column, operand))
            return f"({col} != ? OR {col} IS NULL)"
        if op in ("in", "not_in"):
            values = list(operand)
            has_null = any(v is None for v in values)
            values = [v for v in values if v is not None]
            params.extend(self._encode(column, v) for v in values)
            marks = ", ".join("?" for _ in values)
            if op == "in":
                parts = [f"{col} IN ({marks})"] if values else []
                if has_null:
                    parts.append(f"{col} IS NULL")
                return "(" + " OR ".join(parts) + ")" if parts else "0"
            parts = [f"{col} NOT IN ({marks})"] if values else []
            parts.append(f"{col} IS NOT NULL" if has_null else f"{col} IS NULL")
            if has_null:
                return "(" + " AND ".join(parts) + ")"
            return "(" + " OR ".join(parts) + ")" if values else "1"
        if op == "contains":
            if column.encoding == "json":
                params.append(json.dumps(operand))
            else:
                params.append(str(operand))
            return f"instr({col}, ?) > 0"
        if op == "starts_with":
            params.append(str(operand))
            return f"instr({col}, ?) = 1"
        if op == "ends_with":
            params.extend([str(operand), str(operand)])
            return f"substr({col}, length({col}) - length(?) + 1) = ?"

        sql_op = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}[op]
        params.append(self._encode(column, operand))
        return f"{col} {sql_op} ?"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def find_many(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Sequence[Tuple[str, str]] = (),
        limit: Optional[int] = None,
        offset: int = 0,
        tx: Optional[Transaction] = None,
    ) -> List[Record]:
        self._table(collection)
        params: List[Any] = []
        sql = f"SELECT * FROM {_quote(collection)} WHERE {self._compile(collection, where, params)}"
        if order_by:
            for name, _ in order_by:
                self._column(collection, name)
            sql += " ORDER BY " + ", ".join(
                f"{_quote(name)} {'DESC' if direction == 'desc' else 'ASC'}" for name, direction in order_by
            )
        if limit is not None or offset:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit if limit is not None else -1, offset])

        async with self._read_conn(tx) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(collection, row) for row in rows]

    async def count(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        self._table(collection)
        params: List[Any] = []
        sql = f"SELECT COUNT(*) FROM {_quote(collection)} WHERE {self._compile(collection, where, params)}"
        async with self._read_conn(tx) as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row[0])

    def _execute_write(self, collection: str, conn: sqlite3.Connection, sql: str, params: List[Any]) -> None:
        try:
            conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            message = str(e)
            if "UNIQUE constraint failed" in message:
                column = message.split(":", 1)[1].strip().split(",")[0].split(".")[-1]
                raise UniqueViolationError(collection, column) from e
            raise StoreError(f"Integrity error on '{collection}': {message}") from e
        except sqlite3.Error as e:
            raise StoreError(f"SQLite error on '{collection}': {e}") from e

    async def insert(self, collection: str, record: Record, tx: Optional[Transaction] = None) -> Record:
        if tx is None:
            async with self.transaction() as own:
                return await self.insert(collection, record, own)
        names = [k for k in record if k in self._columns.get(collection, {})]
        params = [self._encode(self._column(collection, n), record[n]) for n in names]
        sql = (
            f"INSERT INTO {_quote(collection)} ({', '.join(_quote(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)})"
        )
        self._execute_write(collection, tx.handle, sql, params)
        return await self._get(collection, record["id"], tx)

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
        names = [k for k in data if k != "id" and k in self._columns.get(collection, {})]
        if names:
            params = [self._encode(self._column(collection, n), data[n]) for n in names]
            params.append(record_id)
            sql = (
                f"UPDATE {_quote(collection)} SET {', '.join(f'{_quote(n)} = ?' for n in names)} "
                "WHERE id = ?"
            )
            self._execute_write(collection, tx.handle, sql, params)
        return await self._get(collection, record_id, tx)

    async def delete(self, collection: str, record_id: str, tx: Optional[Transaction] = None) -> None:
        if tx is None:
            async with self.transaction() as own:
                await self.delete(collection, record_id, own)
            return
        self._execute_write(
            collection,
            tx.handle,
            f"DELETE FROM {_quote(collection)} WHERE id = ?",
            [record_id],
        )

    async def _get(self, collection: str, record_id: str, tx: Optional[Transaction]) -> Record:
        rows = await self.find_many(collection, {"id": record_id}, tx=tx)
        if not rows:
            raise StoreError(f"Record '{record_id}' not found in '{collection}'")
        return rows[0]

    async def close(self) -> None:
        """Close the writer and reader connections."""
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug(f"SQLite store at {self.path} closed")

