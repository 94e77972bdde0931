"""SQLite connection management and schema guarantees."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock, RLock
from typing import Dict

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS registrations (
        account_id INTEGER PRIMARY KEY,
        access_token TEXT NOT NULL,
        query_kind TEXT NOT NULL DEFAULT 'notifications'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL REFERENCES registrations (account_id),
        text TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        UNIQUE (account_id, text)
    )
    """,
)


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self, busy_timeout: float = 5.0) -> None:
        self.busy_timeout = busy_timeout
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._path_locks: Dict[Path, RLock] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, timeout=self.busy_timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def lock_for(self, path: Path) -> RLock:
        """Lock serialising transactions on the shared connection for ``path``."""

        with self._lock:
            return self._path_locks.setdefault(path, RLock())

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()

    def close(self, path: Path) -> None:
        with self._lock:
            conn = self._connections.pop(path, None)
        if conn is not None:
            conn.close()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


__all__ = ["SCHEMA", "SQLiteManager"]
