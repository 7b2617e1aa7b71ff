"""
Storage Backend Module

Document store behind the account store, the ledger and the audit trail.
Records are JSON documents keyed by id within a named table; amounts are
kept as Decimal strings so nothing is ever stored as a float.

Each call is atomic on its own. Atomicity across several calls (debit, credit,
ledger append) is provided by the transfer engine, not by the storage layer.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import PersistenceError


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
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Table-of-documents contract shared by the in-memory and SQLite backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace `record_id`; a replaced record keeps its position"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """The record, or None when `record_id` is absent"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record, in first-insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove `record_id`; False if it was not there"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every value in `filters`"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Drop every record, keeping the table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the backend; later calls may fail"""
        pass


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class InMemoryStorage(StorageInterface):
    """Dict-backed store for tests and `memory://` deployments"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            # Callers only ever see copies
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

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
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    Single-file SQLite store

    One connection is shared by all threads and serialized by a re-entrant
    lock. Each table holds (id, data, seq); `seq` fixes insertion order.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._tables = set()
        try:
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row

            # WAL lets readers proceed while a write is in progress
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e

    @contextmanager
    def _guard(self, operation: str, table: str):
        """Serialize access to the connection and translate driver errors"""
        with self._lock:
            if self._connection is None:
                raise PersistenceError("Storage is closed")
            try:
                self._ensure_table(table)
                yield self._connection
            except sqlite3.Error as e:
                self._connection.rollback()
                raise PersistenceError(f"{operation} on {table} failed: {e}") from e

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
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_seq ON {table}(seq)
        """)
        self._connection.commit()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite, keeping its original insertion position"""
        with self._guard("save", table) as conn:
            data_json = json.dumps(data, default=str)
            conn.execute(f"""
                INSERT INTO {table} (id, data, seq)
                VALUES (?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM {table}))
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """, (record_id, data_json))
            conn.commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._guard("load", table) as conn:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._guard("load_all", table) as conn:
            cursor = conn.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._guard("delete", table) as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            conn.commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._guard("exists", table) as conn:
            cursor = conn.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Filtered in Python over load_all; tables here are small"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._guard("count", table) as conn:
            row = conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        with self._guard("clear_table", table) as conn:
            conn.execute(f"DELETE FROM {table}")
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Args:
        database_url: "memory://" or "sqlite:///<path>"

    Returns:
        Storage backend instance
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
