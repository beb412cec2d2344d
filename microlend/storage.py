"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support nested atomic units of work: a failure inside
``atomic()`` undoes every write made since the matching ``begin_transaction``.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import PersistenceFailure, ValidationError


logger = logging.getLogger(__name__)


def serialize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, passing None through"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse an ISO date, passing None through"""
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    """Parse a Decimal string, passing None through"""
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(value)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for storage"""
        return {key: serialize_value(value) for key, value in asdict(self).items()}


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a (possibly nested) transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit the innermost transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Roll back the innermost transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Each thread keeps its own undo log while inside ``atomic()``; rollback
    restores the previous value of every record the thread touched. Other
    threads are never blocked for the length of a transaction.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _marks(self) -> List[int]:
        if not hasattr(self._local, 'marks'):
            self._local.marks = []
            self._local.undo = []
        return self._local.marks

    def _remember(self, table: str, record_id: str) -> None:
        """Record the pre-image of a record for the active transaction"""
        if self._marks():
            previous = self._data[table].get(record_id)
            self._local.undo.append((table, record_id, previous))

    @property
    def in_transaction(self) -> bool:
        return bool(self._marks())

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def begin_transaction(self) -> None:
        marks = self._marks()
        marks.append(len(self._local.undo))

    def commit(self) -> None:
        marks = self._marks()
        if not marks:
            return
        marks.pop()
        if not marks:
            self._local.undo = []

    def rollback(self) -> None:
        marks = self._marks()
        if not marks:
            return
        mark = marks.pop()
        undo = self._local.undo
        undone = undo[mark:]
        with self._lock:
            for table, record_id, previous in reversed(undone):
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
        del undo[mark:]
        logger.warning("In-memory transaction rolled back (%d writes undone)", len(undone))

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    A single connection is shared between threads. A transaction holds the
    storage lock from ``begin_transaction`` until commit/rollback, so units of
    work are serialized; nested units use SAVEPOINTs.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            # Autocommit mode; transactions are opened explicitly with BEGIN
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _driver_errors(self, operation: str):
        try:
            yield
        except sqlite3.Error as e:
            logger.error("SQLite %s failed: %s", operation, e)
            raise PersistenceFailure(f"SQLite {operation} failed: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._driver_errors("save"):
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Preserve the original insertion time on update
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._driver_errors("load"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._driver_errors("load_all"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._driver_errors("delete"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._driver_errors("exists"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._driver_errors("count"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        """Start a transaction, or a savepoint when already inside one"""
        self._lock.acquire()
        try:
            with self._driver_errors("begin"):
                if self._depth == 0:
                    self._connection.execute("BEGIN IMMEDIATE")
                else:
                    self._connection.execute(f"SAVEPOINT sp_{self._depth}")
        except PersistenceFailure:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        """Commit the innermost transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            with self._driver_errors("commit"):
                if self._depth == 0:
                    self._connection.execute("COMMIT")
                else:
                    self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Roll back the innermost transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            with self._driver_errors("rollback"):
                if self._depth == 0:
                    self._connection.execute("ROLLBACK")
                    # Tables created inside the transaction are gone again
                    self._tables = set()
                else:
                    self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                    self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            logger.warning("SQLite transaction rolled back")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """Build the storage backend selected by configuration"""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.sqlite_path)
    raise ValidationError(f"Unknown storage backend: {config.storage_backend}")
