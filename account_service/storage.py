"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite and PostgreSQL persistence. Records are JSON documents
keyed by id, each carrying a version counter for optimistic concurrency.
Uniqueness is enforced by store-level unique indexes, checked atomically
with the write. All monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import json
import logging
import re
import threading

from .errors import (
    StorageError, StorageUnavailable, UniqueConstraintViolation, StaleRecordError
)


logger = logging.getLogger("accounts.storage")

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def _check_identifier(name: str) -> str:
    """Table and field names are inlined into SQL, so only plain identifiers pass"""
    if not _IDENTIFIER.match(name):
        raise StorageError(f"Invalid identifier: {name!r}")
    return name


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


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
    """Abstract interface for storage backends"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> int:
        """
        Insert a new record at version 1

        Raises:
            UniqueConstraintViolation: If the id or a unique field collides
        """

    @abstractmethod
    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        """
        Replace a record only if it is still at expected_version

        Returns:
            The new version

        Raises:
            StaleRecordError: If the record is missing or at another version
            UniqueConstraintViolation: If a unique field collides
        """

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a record and hold its row lock until the enclosing atomic block ends

        Other writers of the same row wait instead of reading a version that
        is about to go stale.
        """

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def ensure_unique(self, table: str, field: str) -> None:
        """Declare a unique index on a top-level field; absent/null values never collide"""

    @abstractmethod
    def atomic(self):
        """
        Context manager for atomic operations

        Everything written inside the block commits together or not at all.
        Nested blocks join the outermost one.
        """

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, List[str]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._closed = False

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if self._closed:
            raise StorageUnavailable("Storage is closed")
        _check_identifier(table)
        return self._data.setdefault(table, {})

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        rows = self._data[table]
        for field in self._unique.get(table, []):
            value = data.get(field)
            if value is None:
                continue
            for other_id, other in rows.items():
                if other_id != record_id and other.get(field) == value:
                    raise UniqueConstraintViolation(table, field)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> int:
        with self._lock:
            rows = self._ensure_table(table)
            if record_id in rows:
                raise UniqueConstraintViolation(table, "id")
            self._check_unique(table, record_id, data)
            rows[record_id] = _copy(dict(data, version=1))
            return 1

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        with self._lock:
            rows = self._ensure_table(table)
            current = rows.get(record_id)
            if current is None or current.get('version') != expected_version:
                raise StaleRecordError(table, record_id, expected_version)
            self._check_unique(table, record_id, data)
            new_version = expected_version + 1
            rows[record_id] = _copy(dict(data, version=new_version))
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        # atomic() already holds the only lock for the whole block
        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._ensure_table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._ensure_table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._ensure_table(table)
            for key in filters:
                _check_identifier(key)
            results = []
            for record in rows.values():
                if all(record.get(key) == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._ensure_table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table] = {}

    def ensure_unique(self, table: str, field: str) -> None:
        with self._lock:
            self._ensure_table(table)
            _check_identifier(field)
            fields = self._unique.setdefault(table, [])
            if field not in fields:
                fields.append(field)

    @contextmanager
    def atomic(self):
        with self._lock:
            outermost = self._depth == 0
            snapshot = _copy(self._data) if outermost else None
            self._depth += 1
            try:
                yield
            except Exception:
                if outermost:
                    self._data = snapshot
                raise
            finally:
                self._depth -= 1

    def close(self) -> None:
        """Close storage (further calls raise StorageUnavailable)"""
        with self._lock:
            self._closed = True


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    _UNAVAILABLE_MARKERS = ("locked", "busy", "unable to open", "disk i/o", "readonly")

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        # Autocommit mode; atomic() issues BEGIN IMMEDIATE / COMMIT itself
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()
        self._unique: Dict[str, List[str]] = {}

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _translate(self, table: str, error: sqlite3.Error) -> Exception:
        """Map a driver error onto the storage error taxonomy"""
        message = str(error)
        if isinstance(error, sqlite3.IntegrityError) and "UNIQUE" in message:
            for field in self._unique.get(table, []):
                if f"uq_{table}_{field}" in message:
                    return UniqueConstraintViolation(table, field)
            if f"{table}.id" in message:
                return UniqueConstraintViolation(table, "id")
            return UniqueConstraintViolation(table, None)
        if isinstance(error, sqlite3.OperationalError) and any(
            marker in message.lower() for marker in self._UNAVAILABLE_MARKERS
        ):
            logger.warning(f"SQLite unavailable: {message}")
            return StorageUnavailable(f"SQLite unavailable: {message}")
        return StorageError(message)

    def _execute(self, table: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise StorageUnavailable("Storage is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise self._translate(table, e) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_identifier(table)
        self._execute(table, f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(table, f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(dict(data, version=1), default=str)
            self._execute(table, f"""
                INSERT INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, 1, ?, ?)
            """, (record_id, data_json, now, now))
            return 1

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        with self._lock:
            self._ensure_table(table)
            new_version = expected_version + 1
            data_json = json.dumps(dict(data, version=new_version), default=str)
            cursor = self._execute(table, f"""
                UPDATE {table}
                SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (data_json, new_version, datetime.now(timezone.utc).isoformat(),
                  record_id, expected_version))
            if cursor.rowcount != 1:
                raise StaleRecordError(table, record_id, expected_version)
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(
                table, f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        # BEGIN IMMEDIATE in atomic() already holds the database write lock
        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(table, f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(
                table, f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records using json_extract so unique indexes serve the lookup"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params = []
            for key, value in filters.items():
                expression = f"json_extract(data, '$.{_check_identifier(key)}')"
                if value is None:
                    conditions.append(f"{expression} IS NULL")
                else:
                    conditions.append(f"{expression} = ?")
                    params.append(value)
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._execute(table, f"""
                SELECT data FROM {table} {where_clause}
                ORDER BY created_at, rowid
            """, tuple(params))
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(table, f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(table, f"DELETE FROM {table}")

    def ensure_unique(self, table: str, field: str) -> None:
        with self._lock:
            self._ensure_table(table)
            _check_identifier(field)
            self._execute(table, f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{field}
                ON {table}(json_extract(data, '$.{field}'))
            """)
            fields = self._unique.setdefault(table, [])
            if field not in fields:
                fields.append(field)

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._depth == 0:
                # IMMEDIATE takes the write lock up front so other connections
                # cannot interleave a read-modify-write with ours
                self._execute("", "BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except Exception:
                self._depth -= 1
                if self._depth == 0:
                    self._rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self._execute("", "COMMIT")

    def _rollback(self) -> None:
        # Tables created inside the failed transaction are gone again
        self._tables.clear()
        try:
            self._execute("", "ROLLBACK")
        except (StorageError, StorageUnavailable):
            logger.exception("SQLite rollback failed")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str, timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.timeout = timeout
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()
        self._unique: Dict[str, List[str]] = {}
        self._connect()

    def _connect(self) -> None:
        """Establish database connection with bounded connect and statement time"""
        with self._lock:
            try:
                self._connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor,
                    connect_timeout=max(1, int(self.timeout)),
                    options=f"-c statement_timeout={int(self.timeout * 1000)}"
                )
            except self.psycopg2.OperationalError as e:
                raise StorageUnavailable(f"PostgreSQL unavailable: {e}") from e
            self._connection.autocommit = False  # We handle transactions manually

    def _translate(self, table: str, error: Exception) -> Exception:
        if isinstance(error, self.psycopg2.IntegrityError) and getattr(error, 'pgcode', None) == '23505':
            constraint = getattr(getattr(error, 'diag', None), 'constraint_name', None) or ""
            for field in self._unique.get(table, []):
                if constraint == f"uq_{table}_{field}":
                    return UniqueConstraintViolation(table, field)
            if constraint == f"{table}_pkey":
                return UniqueConstraintViolation(table, "id")
            return UniqueConstraintViolation(table, None)
        if isinstance(error, (self.psycopg2.OperationalError, self.psycopg2.InterfaceError)):
            logger.warning(f"PostgreSQL unavailable: {error}")
            return StorageUnavailable(f"PostgreSQL unavailable: {error}")
        return StorageError(str(error))

    @contextmanager
    def _cursor(self, table: str):
        """Cursor that commits on its own unless an atomic block is open"""
        if self._connection is None:
            raise StorageUnavailable("Storage is closed")
        cursor = self._connection.cursor()
        try:
            yield cursor
            if self._depth == 0:
                self._connection.commit()
        except self.psycopg2.Error as e:
            if self._depth == 0:
                self._safe_rollback()
            raise self._translate(table, e) from e
        finally:
            cursor.close()

    def _safe_rollback(self) -> None:
        self._tables.clear()
        try:
            self._connection.rollback()
        except self.psycopg2.Error:
            logger.exception("PostgreSQL rollback failed")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_identifier(table)
        with self._cursor(table) as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
        self._tables.add(table)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            data_json = json.dumps(dict(data, version=1), default=str)
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (%s, %s, 1, %s, %s)
                """, (record_id, data_json, now, now))
            return 1

    def update(self, table: str, record_id: str, data: Dict[str, Any],
               expected_version: int) -> int:
        with self._lock:
            self._ensure_table(table)
            new_version = expected_version + 1
            data_json = json.dumps(dict(data, version=new_version), default=str)
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    UPDATE {table}
                    SET data = %s, version = %s, updated_at = %s
                    WHERE id = %s AND version = %s
                """, (data_json, new_version, datetime.now(timezone.utc),
                      record_id, expected_version))
                updated = cursor.rowcount
            if updated != 1:
                raise StaleRecordError(table, record_id, expected_version)
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(
                    f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,)
                )
                row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at, id")
                return [dict(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params = []
            for key, value in filters.items():
                expression = f"(data->>'{_check_identifier(key)}')"
                if value is None:
                    conditions.append(f"{expression} IS NULL")
                else:
                    conditions.append(f"{expression} = %s")
                    params.append(json.dumps(value) if isinstance(value, bool) else str(value))
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    SELECT data FROM {table} {where_clause}
                    ORDER BY created_at, id
                """, params)
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"DELETE FROM {table}")

    def ensure_unique(self, table: str, field: str) -> None:
        with self._lock:
            self._ensure_table(table)
            _check_identifier(field)
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{field}
                    ON {table} ((data->>'{field}'))
                """)
            fields = self._unique.setdefault(table, [])
            if field not in fields:
                fields.append(field)

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._connection is None:
                raise StorageUnavailable("Storage is closed")
            # psycopg2 opens the transaction implicitly on the first statement
            self._depth += 1
            try:
                yield
            except Exception:
                self._depth -= 1
                if self._depth == 0:
                    self._safe_rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.commit()
                except self.psycopg2.Error as e:
                    self._safe_rollback()
                    raise self._translate("", e) from e

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error:
                    logger.exception("Error closing PostgreSQL connection")
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Create a storage backend from a URL

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:``, ``postgresql://...`` (or ``postgres://``).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
