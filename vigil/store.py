"""
Vigil Persistent Store

Opaque key-value storage for trust ledgers, mode state, recovery
checkpoints and the audit trail, keyed by identity/session.

Two implementations:
- InMemoryStore: process-local, thread-safe (tests, embedding)
- SQLiteStore:   ~/.vigil/state.db by default, WAL mode

Values are JSON documents. ``get`` returns an entry even if it has
expired; expiry is only acted on by ``delete_expired`` (bulk) or by the
caller. Any storage failure raises PersistentStoreUnavailable.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from vigil.errors import PersistentStoreUnavailable

DEFAULT_STATE_PATH = Path.home() / ".vigil" / "state.db"


def _encode(value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise PersistentStoreUnavailable(f"value is not JSON serializable: {e}") from e


def _epoch(when: Optional[datetime]) -> Optional[float]:
    return when.timestamp() if when is not None else None


class KeyValueStore(ABC):
    """Interface every persistent store implements."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if absent."""

    @abstractmethod
    def put(self, key: str, value: Any, expires_at: Optional[datetime] = None) -> None:
        """Insert or replace a value."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """All keys starting with prefix, sorted."""

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        """Bulk-delete entries whose expiry is at or before now."""

    def close(self) -> None:
        pass


class InMemoryStore(KeyValueStore):
    """Dictionary-backed store. Values are copied through JSON on the way in and out."""

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
        return json.loads(entry[0]) if entry else None

    def put(self, key: str, value: Any, expires_at: Optional[datetime] = None) -> None:
        encoded = _encode(value)
        with self._lock:
            self._data[key] = (encoded, _epoch(expires_at))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def delete_expired(self, now: datetime) -> int:
        cutoff = now.timestamp()
        with self._lock:
            expired = [
                k for k, (_, exp) in self._data.items()
                if exp is not None and exp <= cutoff
            ]
            for key in expired:
                del self._data[key]
        return len(expired)


class SQLiteStore(KeyValueStore):
    """SQLite-backed store with a single kv_entries table."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_STATE_PATH
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._ensure_schema()
        except (OSError, sqlite3.Error) as e:
            raise PersistentStoreUnavailable(f"cannot open {self.db_path}: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create a SQLite connection with WAL mode."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=5.0,
                isolation_level=None,  # autocommit
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _ensure_schema(self):
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL,
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_kv_expires
                ON kv_entries(expires_at);
        """)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (self.SCHEMA_VERSION,),
        )

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._get_connection().execute(sql, params)
            except sqlite3.Error as e:
                # Drop the connection so the next call starts fresh
                self.close()
                raise PersistentStoreUnavailable(f"{self.db_path}: {e}") from e

    def get(self, key: str) -> Optional[Any]:
        row = self._execute("SELECT value FROM kv_entries WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    def put(self, key: str, value: Any, expires_at: Optional[datetime] = None) -> None:
        self._execute(
            """
            INSERT INTO kv_entries (key, value, expires_at, updated_at)
            VALUES (?, ?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """,
            (key, _encode(value), _epoch(expires_at)),
        )

    def delete(self, key: str) -> bool:
        cursor = self._execute("DELETE FROM kv_entries WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._execute(
            "SELECT key FROM kv_entries WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (escaped + "%",),
        ).fetchall()
        # LIKE ignores ASCII case
        return [row["key"] for row in rows if row["key"].startswith(prefix)]

    def delete_expired(self, now: datetime) -> int:
        cursor = self._execute(
            "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now.timestamp(),),
        )
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                finally:
                    self._conn = None
