"""SQLite storage and the persisted version state store."""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from .models import VersionState


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# SQLite allows concurrent reads but only one writer at a time.
# This lock ensures safe access from multiple threads (server handlers, precache workers).
_db_lock = threading.Lock()

# Persisted key names, before the deployment's key prefix is applied
CURRENT_VERSION_KEY = "service_worker.current.version"
PENDING_VERSION_KEY = "service_worker.pending.version"
BRICKED_KEY = "service_worker.bricked"


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")

        # Synchronous key-value state (version markers, brick flag)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS generations (
                name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                generation TEXT NOT NULL REFERENCES generations(name) ON DELETE CASCADE,
                request_key TEXT NOT NULL,
                status INTEGER NOT NULL,
                reason TEXT NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                PRIMARY KEY (generation, request_key)
            )
        """)

        # Worker registrations owned by the local host, one slot per scope
        conn.execute("""
            CREATE TABLE IF NOT EXISTS registrations (
                scope TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL,
                script_url TEXT NOT NULL,
                script BLOB NOT NULL,
                state TEXT NOT NULL,
                PRIMARY KEY (scope, role)
            )
        """)

        # Metadata table for bookkeeping (e.g., the active generation)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS _metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a metadata value by key.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute("SELECT value FROM _metadata WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to read metadata '{key}': {e}")


def set_metadata(conn: sqlite3.Connection, key: str, value: str | None) -> None:
    """Set a metadata value, or delete it when value is None.

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            if value is None:
                conn.execute("DELETE FROM _metadata WHERE key = ?", (key,))
            else:
                conn.execute("INSERT OR REPLACE INTO _metadata (key, value) VALUES (?, ?)", (key, value))
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to write metadata '{key}': {e}")


class StateStore:
    """Durable JSON key-value store, synchronous from the caller's perspective.

    Every key written through the version helpers is namespaced with the
    deployment's key prefix. Writes are last-writer-wins per key.

    Example:
        store = StateStore(conn, key_prefix="app1.")
        store.set("service_worker.current.version", "a1b2c3")
        store.version_state()
    """

    def __init__(self, conn: sqlite3.Connection, key_prefix: str = "") -> None:
        self._conn = conn
        self._prefix = key_prefix

    @property
    def key_prefix(self) -> str:
        return self._prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Any:
        """Return the decoded value stored under key, or None if absent."""
        try:
            with _db_lock:
                row = self._conn.execute("SELECT value FROM state WHERE key = ?", (self._key(key),)).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to read state '{key}': {e}")

        if row is None:
            return None
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        """Store value under key. Storing None removes the key."""
        try:
            with _db_lock:
                if value is None:
                    self._conn.execute("DELETE FROM state WHERE key = ?", (self._key(key),))
                else:
                    self._conn.execute(
                        "INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)",
                        (self._key(key), json.dumps(value)),
                    )
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to write state '{key}': {e}")

    def keys(self) -> list[str]:
        """Return every stored key, including other prefixes' keys."""
        try:
            with _db_lock:
                rows = self._conn.execute("SELECT key FROM state ORDER BY key").fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to list state keys: {e}")
        return [row["key"] for row in rows]

    def clear(self) -> int:
        """Erase all synchronous state for the whole store, across prefixes.

        Returns:
            Number of keys deleted.
        """
        try:
            with _db_lock:
                cursor = self._conn.execute("DELETE FROM state")
                self._conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to clear state: {e}")

    # Version protocol helpers

    @property
    def current_version(self) -> str | None:
        return self.get(CURRENT_VERSION_KEY)

    @current_version.setter
    def current_version(self, version: str | None) -> None:
        self.set(CURRENT_VERSION_KEY, version)

    @property
    def pending_version(self) -> str | None:
        return self.get(PENDING_VERSION_KEY)

    @pending_version.setter
    def pending_version(self, version: str | None) -> None:
        self.set(PENDING_VERSION_KEY, version)

    @property
    def bricked(self) -> bool:
        return bool(self.get(BRICKED_KEY))

    def mark_bricked(self) -> None:
        """Set the terminal brick flag. Nothing in normal operation unsets it."""
        self.set(BRICKED_KEY, True)

    def version_state(self) -> VersionState:
        """Return a snapshot of the persisted version markers."""
        return VersionState(
            current_version=self.current_version,
            pending_version=self.pending_version,
            bricked=self.bricked,
        )
