"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents; monetary values are stored
as integer minor units.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict, field
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrencyConflict


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


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
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: int) -> None:
        """
        Save a record only if its stored version equals expected_version.

        A record that does not exist yet has version 0. The caller stores the
        new version number inside data. Raises ConcurrencyConflict otherwise.
        """
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
            self.commit()
        except Exception:
            self.rollback()
            raise


_DELETED = object()


@dataclass
class _Transaction:
    """Per-thread write buffer for InMemoryStorage"""
    writes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    guards: List[Tuple[str, str, int]] = field(default_factory=list)
    depth: int = 0


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions are buffered per thread and applied atomically on commit, so
    concurrent units of work see only committed data from other threads.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _tx(self) -> Optional[_Transaction]:
        return getattr(self._local, 'tx', None)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed table overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            view = dict(self._data[table])
        tx = self._tx()
        if tx and table in tx.writes:
            for record_id, record in tx.writes[table].items():
                if record is _DELETED:
                    view.pop(record_id, None)
                else:
                    view[record_id] = record
        return view

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = self._copy(data)
        tx = self._tx()
        if tx:
            tx.writes.setdefault(table, {})[record_id] = record
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = record

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: int) -> None:
        """Save with optimistic version check (checked again at commit)"""
        current = self._view(table).get(record_id)
        actual = current.get('version', 0) if current else 0
        if actual != expected_version:
            raise ConcurrencyConflict(table, record_id, expected_version, actual)

        tx = self._tx()
        if tx:
            pending = tx.writes.get(table, {})
            if record_id not in pending:
                tx.guards.append((table, record_id, expected_version))
            pending = tx.writes.setdefault(table, {})
            pending[record_id] = self._copy(data)
            return

        with self._lock:
            self._ensure_table(table)
            committed = self._data[table].get(record_id)
            actual = committed.get('version', 0) if committed else 0
            if actual != expected_version:
                raise ConcurrencyConflict(table, record_id, expected_version, actual)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._view(table).get(record_id)
        if record:
            return self._copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = record_id in self._view(table)
        tx = self._tx()
        if tx:
            tx.writes.setdefault(table, {})[record_id] = _DELETED
            return existed
        with self._lock:
            self._ensure_table(table)
            self._data[table].pop(record_id, None)
        return existed

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            self._copy(record) for record in self._view(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Start (or nest into) this thread's transaction"""
        tx = self._tx()
        if tx:
            tx.depth += 1
        else:
            self._local.tx = _Transaction()

    def commit(self) -> None:
        """Apply buffered writes atomically after re-checking version guards"""
        tx = self._tx()
        if not tx:
            return
        if tx.depth > 0:
            tx.depth -= 1
            return
        self._local.tx = None

        with self._lock:
            for table, record_id, expected in tx.guards:
                committed = self._data.get(table, {}).get(record_id)
                actual = committed.get('version', 0) if committed else 0
                if actual != expected:
                    raise ConcurrencyConflict(table, record_id, expected, actual)

            for table, records in tx.writes.items():
                self._ensure_table(table)
                for record_id, record in records.items():
                    if record is _DELETED:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record

    def rollback(self) -> None:
        """Discard this thread's transaction, including any outer levels"""
        self._local.tx = None

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    One connection is shared by all threads; atomic() holds the connection
    lock for the whole unit, so concurrent units serialize.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
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
            if not self._in_transaction:
                self._connection.commit()
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()

    def save_versioned(self, table: str, record_id: str, data: Dict[str, Any],
                       expected_version: int) -> None:
        """Save with optimistic version check under the connection lock"""
        with self._lock:
            current = self.load(table, record_id)
            actual = current.get('version', 0) if current else 0
            if actual != expected_version:
                raise ConcurrencyConflict(table, record_id, expected_version, actual)
            self.save(table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
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
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            if not self._in_transaction:
                self._connection.commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

            if not self._in_transaction:
                self._connection.commit()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # SQLite with isolation_level='DEFERRED' automatically starts transactions
                # We just need to track the state
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # Tables created inside the unit are gone too
                self._tables.clear()

    @contextmanager
    def atomic(self):
        """Atomic unit holding the connection lock until commit or rollback"""
        with self._lock:
            if self._in_transaction:
                # Nested unit joins the outer transaction
                yield
                return
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    memory://             -> InMemoryStorage
    sqlite:///:memory:    -> SQLiteStorage in memory
    sqlite:///path/to.db  -> SQLiteStorage on disk
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
