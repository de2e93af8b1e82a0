"""
Storage Backend Module

Abstract storage interface with in-memory (testing) and SQLite (persistence)
implementations. Records are stored as JSON documents; Decimals travel as strings.
Both backends support atomic() blocks that commit or roll back as a unit.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date
from enum import Enum
import sqlite3
import json
import copy
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


def to_storable(value: Any) -> Any:
    """Convert a value into JSON-friendly primitives"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return getattr(value, "code", value.value)
    if isinstance(value, dict):
        return {k: to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp that may be missing"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    """Parse a Decimal stored as string that may be missing"""
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class DuplicateRecordError(KeyError):
    """Raised when insert() targets an id that already exists"""


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return to_storable(asdict(self))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; never overwrites (append-only tables)"""
        with self.atomic():
            if self.exists(table, record_id):
                raise DuplicateRecordError(f"{table}:{record_id} already exists")
            self.save(table, record_id, data)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level keys equal the given filters"""
        return [
            record for record in self.load_all(table)
            if all(record.get(key) == value for key, value in filters.items())
        ]

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""

    def rollback(self) -> None:
        """Roll back current transaction (default no-op)"""

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; nested blocks join the outer one"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage for tests; transactions snapshot the data and restore on rollback"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            # Round-trip through JSON so callers never share mutable state with the store
            self._table(table)[record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Nothing to release"""

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = copy.deepcopy(self._data)
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite storage; one document table per record type"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # isolation_level=None: transactions are opened explicitly in begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                seq INTEGER NOT NULL
            )
        """)
        self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_seq ON {table}(seq)")
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, seq)
                VALUES (?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM {table}))
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """, (record_id, json.dumps(data, default=str)))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row["data"]) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._connection.execute(f"SELECT data FROM {table} ORDER BY seq").fetchall()
            return [json.loads(row["data"]) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        with self._lock:
            self._connection.close()

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._connection.execute("BEGIN IMMEDIATE")
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._connection.execute("COMMIT")
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._connection.execute("ROLLBACK")
            # tables created inside the transaction are gone again
            self._tables.clear()
        self._lock.release()


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a configured URL"""
    if database_url in ("", "memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        database_url = database_url[len("sqlite:///"):]
    return SQLiteStorage(database_url)
