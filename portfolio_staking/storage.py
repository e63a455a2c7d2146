"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Besides plain CRUD, backends offer the primitives the ledger relies on to avoid
lost updates: insert-if-absent, field-level atomic increment with floor guards,
and compare-and-set keyed on current field values. ``atomic()`` groups calls
into a single unit of work that either commits or rolls back as a whole.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import PersistenceError


Number = Union[int, Decimal]


def _to_storable(value: Any) -> Any:
    """Convert a Python value to its JSON-friendly stored form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: _to_storable(value) for key, value in asdict(self).items()}

    @staticmethod
    def _parse_timestamps(data: Dict[str, Any]) -> Dict[str, Any]:
        """Convert ISO timestamp strings back to datetime objects"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        return cls(**cls._parse_timestamps(data))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != _to_storable(value):
            return False
    return True


def _apply_increment(
    record: Dict[str, Any],
    deltas: Dict[str, Number],
    floors: Optional[Dict[str, Number]]
) -> Optional[Dict[str, Any]]:
    """
    Return a copy of record with deltas applied, or None if a floor is broken.

    Decimal deltas operate on Decimal strings; int deltas on ints.
    """
    updated = dict(record)
    for field_name, delta in deltas.items():
        current = record.get(field_name)
        if isinstance(delta, Decimal):
            updated[field_name] = str(Decimal(str(current if current is not None else "0")) + delta)
        else:
            updated[field_name] = int(current or 0) + delta

    for field_name, floor in (floors or {}).items():
        if Decimal(str(updated.get(field_name, 0))) < Decimal(str(floor)):
            return None

    updated['updated_at'] = datetime.now(timezone.utc).isoformat()
    return updated


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (upsert) a record to storage"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record only if its id is free; returns False if it exists"""
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
    def increment(
        self,
        table: str,
        record_id: str,
        deltas: Dict[str, Number],
        floors: Optional[Dict[str, Number]] = None,
        values: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically add deltas to numeric fields of one record.

        Args:
            table: Table name
            record_id: Record to update
            deltas: Field name -> amount to add (negative to subtract)
            floors: Field name -> minimum allowed value after the update
            values: Plain field values to set in the same atomic step

        Returns:
            The updated record, or None if the record is missing or a floor
            would be broken (in which case nothing is written)
        """
        pass

    @abstractmethod
    def compare_and_set(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically apply updates if every expected field currently matches.

        Returns:
            The updated record, or None if missing or any expectation failed
        """
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
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


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    A unit of work holds the re-entrant lock for its whole duration and keeps
    a snapshot per nesting level, so concurrent callers are serialized and a
    rollback restores the exact pre-transaction state.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Dict[str, Dict[str, Dict[str, Any]]]] = []

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy through JSON to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                return False
            self._data[table][record_id] = self._copy(data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def increment(self, table, record_id, deltas, floors=None, values=None):
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                return None
            updated = _apply_increment(record, deltas, floors)
            if updated is None:
                return None
            if values:
                updated.update(_to_storable(values))
            self._data[table][record_id] = self._copy(updated)
            return self._copy(updated)

    def compare_and_set(self, table, record_id, expected, updates):
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not _matches(record, expected):
                return None
            updated = dict(record)
            updated.update(_to_storable(updates))
            updated['updated_at'] = datetime.now(timezone.utc).isoformat()
            self._data[table][record_id] = self._copy(updated)
            return self._copy(updated)

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._snapshots.append(copy.deepcopy(self._data))

    def commit(self) -> None:
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        self._data = self._snapshots.pop()
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Records are JSON documents keyed by id. The connection runs in autocommit
    mode; a unit of work opens ``BEGIN IMMEDIATE`` so the write lock is taken
    up front, with savepoints for nested units.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._guard():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _guard(self):
        """Hold the connection lock and translate sqlite errors"""
        with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite error: {e}") from e

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

    def _fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._connection.execute(
            f"SELECT data FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return json.loads(row['data']) if row else None

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._connection.execute(f"""
            INSERT INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
        """, (record_id, json.dumps(data, default=str), now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._guard():
            self._ensure_table(table)
            self._write(table, record_id, data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._guard():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            return cursor.rowcount > 0

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            return self._fetch(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT COUNT(*) as count FROM {table}"
            )
            return cursor.fetchone()['count']

    def increment(self, table, record_id, deltas, floors=None, values=None):
        with self.atomic(), self._guard():
            self._ensure_table(table)
            record = self._fetch(table, record_id)
            if record is None:
                return None
            updated = _apply_increment(record, deltas, floors)
            if updated is None:
                return None
            if values:
                updated.update(_to_storable(values))
            self._write(table, record_id, updated)
            return updated

    def compare_and_set(self, table, record_id, expected, updates):
        with self.atomic(), self._guard():
            self._ensure_table(table)
            record = self._fetch(table, record_id)
            if record is None or not _matches(record, expected):
                return None
            updated = dict(record)
            updated.update(_to_storable(updates))
            updated['updated_at'] = datetime.now(timezone.utc).isoformat()
            self._write(table, record_id, updated)
            return updated

    def clear_table(self, table: str) -> None:
        with self._guard():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._connection.execute("BEGIN IMMEDIATE")
            else:
                self._connection.execute(f"SAVEPOINT sp_{self._depth}")
        except sqlite3.Error as e:
            self._lock.release()
            raise PersistenceError(f"Cannot begin transaction: {e}") from e
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.execute("COMMIT")
            else:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        except sqlite3.Error as e:
            raise PersistenceError(f"Commit failed: {e}") from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            # Tables created inside the rolled back unit no longer exist
            self._tables.clear()
        except sqlite3.Error as e:
            raise PersistenceError(f"Rollback failed: {e}") from e
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str, sqlite_path: str = ":memory:") -> StorageInterface:
    """Build a storage backend by name ("memory" or "sqlite")"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(sqlite_path)
    raise ValueError(f"Unknown storage backend: {backend}")
