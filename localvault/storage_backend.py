"""
LocalVault Storage Backends
Key -> opaque string persistence for vault, lockout and license state.

Everything handed to a backend is already encrypted or deliberately public
(salt, verification hash, signed license records, password hint), so the
backend itself does no cryptography.
"""

import sqlite3
import os
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from localvault.config import DB_PATH
from localvault.errors import LocalVaultError

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class StorageError(LocalVaultError):
    """Raised when the persistence layer fails"""
    pass


class StorageBackend:
    """
    Interface for key/value persistence.

    Implementations must make ``set`` durable before returning.
    """

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def contains(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryStorageBackend(StorageBackend):
    """In-process backend. State is lost when the object is dropped."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Value for '{key}' must be a string")
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class SQLiteStorageBackend(StorageBackend):
    """
    SQLite-backed key/value store.

    Responsibilities:
        - Schema creation on first connect
        - Single shared connection guarded by a lock
        - Immediate commit on every write
    """

    def __init__(self, db_path: str = DB_PATH):
        """
        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self.connection: Optional[sqlite3.Connection] = None
        self._conn_lock = threading.RLock()

        directory = os.path.dirname(self.db_path)
        if db_path != ":memory:" and directory:
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Database directory is not writable: {directory}") from e

    def connect(self) -> sqlite3.Connection:
        """
        Create or return the existing connection.

        Prefers WAL journaling and falls back to DELETE where WAL is unsupported.
        """
        with self._conn_lock:
            if self.connection is not None:
                return self.connection
            try:
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                res = conn.execute("PRAGMA journal_mode=WAL;").fetchone()
                if not res or res[0].lower() not in ("wal", "memory"):
                    conn.execute("PRAGMA journal_mode=DELETE;")
                conn.executescript(_SCHEMA)
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to open vault database: {e}") from e
            self.connection = conn
            return self.connection

    def close(self):
        """Commit and close the connection."""
        with self._conn_lock:
            if self.connection:
                try:
                    self.connection.commit()
                finally:
                    self.connection.close()
                    self.connection = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def get(self, key: str) -> Optional[str]:
        with self._conn_lock:
            conn = self.connect()
            try:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to read '{key}': {e}") from e
            return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Value for '{key}' must be a string")
        now = datetime.now(timezone.utc).isoformat()
        with self._conn_lock:
            conn = self.connect()
            try:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                   updated_at = excluded.updated_at
                    """,
                    (key, value, now),
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Failed to write '{key}': {e}") from e

    def delete(self, key: str) -> None:
        with self._conn_lock:
            conn = self.connect()
            try:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Failed to delete '{key}': {e}") from e

    def keys(self, prefix: str = "") -> List[str]:
        # LIKE treats _ and % as wildcards, so filter in Python
        with self._conn_lock:
            conn = self.connect()
            try:
                rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to list keys: {e}") from e
        return [r[0] for r in rows if r[0].startswith(prefix)]
