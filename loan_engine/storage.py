"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support nested atomic transactions and conditional commits
(``require``) used for per-loan optimistic concurrency control.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, timezone, date
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrentModification


def _to_storable(value: Any) -> Any:
    """Convert a field value to its JSON-friendly form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
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

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
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
    def require(self, table: str, record_id: str, field: str, expected: Any) -> None:
        """
        Condition the current transaction on a stored field value.

        The transaction fails with ConcurrentModification at commit if the
        committed record no longer holds ``expected`` in ``field``.
        """
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
            self.commit()
        except Exception:
            self.rollback()
            raise


class _PendingTransaction:
    """Writes buffered by one thread until commit"""

    def __init__(self):
        self.depth = 0
        self.writes: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}
        self.cleared: set = set()
        self.requirements: List[Tuple[str, str, str, Any]] = []

    def table_writes(self, table: str) -> Dict[str, Optional[Dict[str, Any]]]:
        return self.writes.setdefault(table, {})


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions buffer writes per thread and publish them in one step at
    commit, so concurrent readers see either none or all of a transaction.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _tx(self) -> Optional[_PendingTransaction]:
        return getattr(self._local, 'tx', None)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _visible(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            tx = self._tx()
            rows = {} if tx and table in tx.cleared else dict(self._data[table])
        if tx:
            for record_id, record in tx.writes.get(table, {}).items():
                if record is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = record
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = self._copy(data)
        tx = self._tx()
        if tx:
            tx.table_writes(table)[record_id] = record
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._visible(table).get(record_id)
        if record:
            return self._copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [self._copy(record) for record in self._visible(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = record_id in self._visible(table)
        tx = self._tx()
        if tx:
            if existed:
                tx.table_writes(table)[record_id] = None
            return existed
        with self._lock:
            self._ensure_table(table)
            return self._data[table].pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._visible(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            self._copy(record) for record in self._visible(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._visible(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        tx = self._tx()
        if tx:
            tx.cleared.add(table)
            tx.writes[table] = {}
            return
        with self._lock:
            self._data[table] = {}

    def require(self, table: str, record_id: str, field: str, expected: Any) -> None:
        """Check now, or at commit when inside a transaction"""
        tx = self._tx()
        if tx:
            pending = tx.writes.get(table, {})
            if record_id not in pending:
                tx.requirements.append((table, record_id, field, expected))
                return
            # Already written by this transaction: check the pending value
            record = pending[record_id]
            if record is None or record.get(field) != expected:
                raise ConcurrentModification(
                    f"{table} record {record_id} changed since it was read"
                )
            return
        with self._lock:
            self._check_requirement(table, record_id, field, expected)

    def _check_requirement(self, table: str, record_id: str, field: str, expected: Any) -> None:
        self._ensure_table(table)
        current = self._data[table].get(record_id)
        if current is None or current.get(field) != expected:
            raise ConcurrentModification(
                f"{table} record {record_id} changed since it was read"
            )

    def begin_transaction(self) -> None:
        """Start (or nest into) this thread's transaction"""
        tx = self._tx()
        if tx is None:
            tx = _PendingTransaction()
            self._local.tx = tx
        tx.depth += 1

    def commit(self) -> None:
        """Publish buffered writes once the outermost transaction commits"""
        tx = self._tx()
        if tx is None:
            return
        tx.depth -= 1
        if tx.depth > 0:
            return
        self._local.tx = None
        with self._lock:
            for table, record_id, field, expected in tx.requirements:
                self._check_requirement(table, record_id, field, expected)
            for table in tx.cleared:
                self._data[table] = {}
            for table, writes in tx.writes.items():
                self._ensure_table(table)
                for record_id, record in writes.items():
                    if record is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record

    def rollback(self) -> None:
        """Discard all buffered writes of this thread"""
        self._local.tx = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A transaction holds the connection lock until it commits or rolls back,
    so writers serialize and other threads never see a half-written
    transaction. File databases run in WAL mode and serve reads from threads
    outside the open transaction through a second connection, so those reads
    see the last committed state without waiting for the writer.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: Optional[int] = None
        self._tables: set = set()
        self._reader: Optional[sqlite3.Connection] = None
        self._read_lock = threading.Lock()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
            self._reader = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            self._reader.row_factory = sqlite3.Row

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _query(self, table: str, sql: str, params: Union[Tuple, List] = ()) -> List[sqlite3.Row]:
        """Run a read on the writer connection, or on the read connection for other threads"""
        if self._reader is not None and self._owner != threading.get_ident():
            with self._read_lock:
                found = self._reader.execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
                ).fetchone()
                if found is None:
                    return []
                return self._reader.execute(sql, params).fetchall()
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql, params).fetchall()

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

            self._commit_unless_in_transaction()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        rows = self._query(table, f"""
            SELECT data FROM {table} WHERE id = ?
        """, (record_id,))
        if rows:
            return json.loads(rows[0]['data'])
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        rows = self._query(table, f"""
            SELECT data FROM {table} ORDER BY created_at
        """)
        return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        rows = self._query(table, f"""
            SELECT 1 FROM {table} WHERE id = ? LIMIT 1
        """, (record_id,))
        return len(rows) > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key matching)"""
        if not filters:
            return self.load_all(table)

        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) IS ?")
            params.extend([f"$.{key}", value])

        rows = self._query(table, f"""
            SELECT data FROM {table}
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at
        """, params)

        # json_extract maps JSON booleans to 0/1, so confirm in Python
        return [
            record for record in (json.loads(row['data']) for row in rows)
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        rows = self._query(table, f"""
            SELECT COUNT(*) as count FROM {table}
        """)
        return rows[0]['count'] if rows else 0

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def require(self, table: str, record_id: str, field: str, expected: Any) -> None:
        """Check immediately; the transaction lock keeps the check valid until commit"""
        with self._lock:
            current = self.load(table, record_id)
            if current is None or current.get(field) != expected:
                raise ConcurrentModification(
                    f"{table} record {record_id} changed since it was read"
                )

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        self._lock.acquire()
        self._depth += 1
        self._owner = threading.get_ident()

    def commit(self) -> None:
        """Commit current transaction"""
        if not self._in_transaction:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._owner = None
                try:
                    self._connection.commit()
                except sqlite3.Error:
                    self._connection.rollback()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self._in_transaction:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._owner = None
            self._connection.rollback()
            # Tables created inside the transaction are gone again
            self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connections"""
        with self._lock:
            if self._reader:
                with self._read_lock:
                    self._reader.close()
                    self._reader = None
            if self._connection:
                self._connection.close()
                self._connection = None
