"""
Storage Backend Module

Provides the logical store contract used by every stage of the chain, with an
in-memory implementation (testing) and a SQLite implementation (persistence).

Beyond plain key/value records the contract offers what idempotent consumers
and the ledger need from durable storage:

- natural-key uniqueness constraints (``unique_fields``) checked on write
- ``compare_and_set`` for optimistic, per-key serialization
- durable, atomic, monotonic named sequences
- ``atomic()`` blocks that commit or roll back as a unit

All monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union, Iterable
from decimal import Decimal
from datetime import datetime
from enum import Enum
import copy
import sqlite3
import json
import threading
import typing
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .exceptions import DuplicateRecordError


def _unwrap_optional(hint):
    """Return T for Optional[T], otherwise the hint itself"""
    if typing.get_origin(hint) is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def encode_value(value: Any) -> Any:
    """Convert Enum, Decimal and datetime values to JSON-safe primitives"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def decode_value(hint: Any, value: Any) -> Any:
    """Restore a JSON primitive to the type named by a dataclass field hint"""
    hint = _unwrap_optional(hint)
    if value is None or not isinstance(hint, type):
        return value
    if issubclass(hint, Enum):
        return hint(value)
    if issubclass(hint, Decimal):
        return Decimal(str(value))
    if issubclass(hint, datetime) and isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for storage"""
        return {f.name: encode_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, restoring Enum/Decimal/datetime fields"""
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = decode_value(hints.get(f.name), data[f.name])
        return cls(**kwargs)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any],
             unique_fields: Optional[Iterable[str]] = None) -> None:
        """Save (upsert) a record; raise DuplicateRecordError if a unique field is taken"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Optional[Iterable[str]] = None) -> None:
        """Insert a new record; raise DuplicateRecordError if the id or a unique field exists"""
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
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table, optionally matching filters"""
        pass

    @abstractmethod
    def compare_and_set(self, table: str, record_id: str, expected_version: int,
                        data: Dict[str, Any]) -> bool:
        """
        Write ``data`` with ``version = expected_version + 1`` only if the stored
        record's version equals ``expected_version`` (0 means "must not exist").
        Returns False when another writer got there first.
        """
        pass

    @abstractmethod
    def next_sequence(self, name: str, start: int = 1) -> int:
        """Atomically increment and return a named counter"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the first record matching filters, or None"""
        results = self.find(table, filters)
        return results[0] if results else None

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def _atomic_state(self) -> threading.local:
        # Per-thread nesting depth and pending on_commit callbacks
        state = self.__dict__.get("_atomic_local")
        if state is None:
            state = self.__dict__.setdefault("_atomic_local", threading.local())
        if not hasattr(state, "depth"):
            state.depth = 0
            state.callbacks = []
        return state

    def on_commit(self, callback: Callable[[], None]) -> None:
        """
        Run ``callback`` once the enclosing atomic block has committed.

        Outside an atomic block the callback runs immediately. Callbacks
        registered in a block that rolls back are discarded.
        """
        state = self._atomic_state()
        if state.depth == 0:
            callback()
        else:
            state.callbacks.append(callback)

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; nested blocks join the outer one"""
        state = self._atomic_state()
        self.begin_transaction()
        state.depth += 1
        try:
            yield
        except Exception:
            state.depth -= 1
            if state.depth == 0:
                state.callbacks = []
            self.rollback()
            raise

        state.depth -= 1
        if state.depth > 0:
            self.commit()
            return

        callbacks, state.callbacks = state.callbacks, []
        self.commit()
        # Runs after the backend lock is released
        for callback in callbacks:
            callback()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[tuple, Dict[Any, str]] = {}  # (table, field) -> value -> record_id
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _claim_unique(self, table: str, record_id: str, data: Dict[str, Any],
                      unique_fields: Optional[Iterable[str]]) -> None:
        if not unique_fields:
            return
        unique_fields = list(unique_fields)
        # Check every field before claiming any so a rejection changes nothing
        for field in unique_fields:
            value = data.get(field)
            owner = self._unique.get((table, field), {}).get(value)
            if value is not None and owner is not None and owner != record_id:
                raise DuplicateRecordError(table, field, str(value))
        for field in unique_fields:
            index = self._unique.setdefault((table, field), {})
            for value, owner in list(index.items()):
                if owner == record_id:
                    del index[value]
            value = data.get(field)
            if value is not None:
                index[value] = record_id

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             unique_fields: Optional[Iterable[str]] = None) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._claim_unique(table, record_id, data, unique_fields)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Optional[Iterable[str]] = None) -> None:
        """Insert a record, rejecting duplicates"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecordError(table, "id", record_id)
            self.save(table, record_id, data, unique_fields)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
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
                del self._data[table][record_id]
                for (index_table, _), index in self._unique.items():
                    if index_table == table:
                        for value, owner in list(index.items()):
                            if owner == record_id:
                                del index[value]
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
            return [json.loads(json.dumps(record))
                    for record in self._data[table].values() if _matches(record, filters)]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return len(self._data[table])
            return sum(1 for record in self._data[table].values() if _matches(record, filters))

    def compare_and_set(self, table: str, record_id: str, expected_version: int,
                        data: Dict[str, Any]) -> bool:
        """Versioned write"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            current_version = current.get("version", 0) if current else 0
            if current_version != expected_version:
                return False
            record = dict(data)
            record["version"] = expected_version + 1
            self._data[table][record_id] = json.loads(json.dumps(record, default=str))
            return True

    def next_sequence(self, name: str, start: int = 1) -> int:
        """Increment a named counter"""
        with self._lock:
            value = self._sequences.get(name, start - 1) + 1
            self._sequences[name] = value
            return value

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
            for key in [k for k in self._unique if k[0] == table]:
                del self._unique[key]

    def begin_transaction(self) -> None:
        """Hold the lock and snapshot state so the block can be rolled back"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = copy.deepcopy((self._data, self._unique, self._sequences))
        self._depth += 1

    def commit(self) -> None:
        """Leave the atomic block"""
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot taken when the outermost block began"""
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data, self._unique, self._sequences = self._snapshot
            self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        with self._lock:
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _unique_keys (
                    table_name TEXT NOT NULL,
                    field TEXT NOT NULL,
                    value TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    PRIMARY KEY (table_name, field, value)
                )
            """)
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _maybe_commit(self) -> None:
        # Only commit if not inside an atomic block
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._maybe_commit()
            self._tables.add(table)

    def _claim_unique(self, table: str, record_id: str, data: Dict[str, Any],
                      unique_fields: Optional[Iterable[str]]) -> None:
        for field in unique_fields or []:
            value = data.get(field)
            self._connection.execute("""
                DELETE FROM _unique_keys
                WHERE table_name = ? AND field = ? AND record_id = ?
            """, (table, field, record_id))
            if value is None:
                continue
            self._connection.execute("""
                INSERT OR IGNORE INTO _unique_keys (table_name, field, value, record_id)
                VALUES (?, ?, ?, ?)
            """, (table, field, str(value), record_id))
            owner = self._connection.execute("""
                SELECT record_id FROM _unique_keys
                WHERE table_name = ? AND field = ? AND value = ?
            """, (table, field, str(value))).fetchone()
            if owner['record_id'] != record_id:
                raise DuplicateRecordError(table, field, str(value))

    def _write(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Optional[Iterable[str]], insert_only: bool) -> None:
        self._ensure_table(table)
        now = datetime.now().astimezone().isoformat()
        data_json = json.dumps(data, default=str)
        try:
            self._claim_unique(table, record_id, data, unique_fields)
            if insert_only:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, data_json, now, now))
            else:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (record_id, data_json, now, now))
        except sqlite3.IntegrityError:
            if not self._in_transaction:
                self._connection.rollback()
            raise DuplicateRecordError(table, "id", record_id)
        except DuplicateRecordError:
            if not self._in_transaction:
                self._connection.rollback()
            raise
        self._maybe_commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             unique_fields: Optional[Iterable[str]] = None) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._write(table, record_id, data, unique_fields, insert_only=False)

    def insert(self, table: str, record_id: str, data: Dict[str, Any],
               unique_fields: Optional[Iterable[str]] = None) -> None:
        """Insert a record; the primary key rejects duplicates"""
        with self._lock:
            self._write(table, record_id, data, unique_fields, insert_only=True)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
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
            self._connection.execute("""
                DELETE FROM _unique_keys WHERE table_name = ? AND record_id = ?
            """, (table, record_id))
            self._maybe_commit()
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
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records in table"""
        if filters:
            return len(self.find(table, filters))
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def compare_and_set(self, table: str, record_id: str, expected_version: int,
                        data: Dict[str, Any]) -> bool:
        """Versioned write using the version column"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now().astimezone().isoformat()
            record = dict(data)
            record["version"] = expected_version + 1
            data_json = json.dumps(record, default=str)
            if expected_version == 0:
                cursor = self._connection.execute(f"""
                    INSERT OR IGNORE INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, 1, ?, ?)
                """, (record_id, data_json, now, now))
            else:
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (data_json, now, record_id, expected_version))
            self._maybe_commit()
            return cursor.rowcount == 1

    def next_sequence(self, name: str, start: int = 1) -> int:
        """Increment a named counter inside the database"""
        with self._lock:
            self._connection.execute("""
                INSERT OR IGNORE INTO _sequences (name, value) VALUES (?, ?)
            """, (name, start - 1))
            self._connection.execute("""
                UPDATE _sequences SET value = value + 1 WHERE name = ?
            """, (name,))
            value = self._connection.execute("""
                SELECT value FROM _sequences WHERE name = ?
            """, (name,)).fetchone()['value']
            self._maybe_commit()
            return value

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._connection.execute("DELETE FROM _unique_keys WHERE table_name = ?", (table,))
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start (or join) a database transaction"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Commit when the outermost block ends"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback the whole transaction when the outermost block ends"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.rollback()
                # Tables created inside the transaction are gone again
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class StorageSequenceSource:
    """
    Sequence Source backed by durable storage counters.

    Counters are atomic and monotonic across every caller sharing the storage;
    gaps are tolerated (a rolled-back atomic block may or may not consume a value
    depending on the backend).
    """

    def __init__(self, storage: StorageInterface, starts: Optional[Dict[str, int]] = None):
        self.storage = storage
        self.starts = dict(starts or {})

    def next(self, counter_name: str) -> int:
        return self.storage.next_sequence(counter_name, self.starts.get(counter_name, 1))


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a URL ("memory" or "sqlite:///path")"""
    if database_url in ("memory", "memory://", ""):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
