"""Notification store: the single authority on whether a notification is new."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from ..errors import StoreUnavailable
from ..infra.storage import SQLiteManager


@dataclass(frozen=True, slots=True)
class Notification:
    id: int
    account_id: int
    text: str
    created_at: str


@dataclass(frozen=True, slots=True)
class Created:
    notification: Notification


@dataclass(frozen=True, slots=True)
class AlreadyExists:
    account_id: int
    text: str


InsertOutcome = Created | AlreadyExists


class NotificationStore:
    """Persist notifications keyed by ``(account_id, text)``.

    ``insert_if_new`` is one ``INSERT OR IGNORE`` against the unique
    constraint, so concurrent callers racing on the same key see exactly one
    ``Created``. Connection and transaction failures surface as
    ``StoreUnavailable`` and must never be read as a duplicate.
    """

    def __init__(self, manager: SQLiteManager, db_path: Path) -> None:
        self.manager = manager
        self.db_path = db_path
        self._lock = self.manager.lock_for(db_path)
        self._conn = self.manager.connect(db_path)

    def insert_if_new(self, account_id: int, text: str) -> InsertOutcome:
        with self._lock:
            try:
                cur = self._conn.execute(
                    "INSERT OR IGNORE INTO notifications(account_id, text) VALUES (?, ?)",
                    (account_id, text),
                )
                if cur.rowcount == 0:
                    self._conn.rollback()
                    return AlreadyExists(account_id, text)
                row = self._conn.execute(
                    "SELECT id, account_id, text, created_at FROM notifications WHERE id = ?",
                    (cur.lastrowid,),
                ).fetchone()
                self._conn.commit()
            except sqlite3.Error as exc:
                self._safe_rollback()
                raise StoreUnavailable(f"Unable to insert notification: {exc}") from exc
        return Created(_row_to_notification(row))

    def notifications_for(
        self, account_id: int, after_id: int | None = None, limit: int = 50
    ) -> list[Notification]:
        """Read path used by clients resynchronising after a gap."""

        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT id, account_id, text, created_at FROM notifications "
                    "WHERE account_id = ? AND id > ? ORDER BY id LIMIT ?",
                    (account_id, after_id or 0, limit),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Unable to read notifications: {exc}") from exc
        return [_row_to_notification(row) for row in rows]

    def count(self, account_id: int) -> int:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT count(*) FROM notifications WHERE account_id = ?", (account_id,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Unable to count notifications: {exc}") from exc
        return int(row[0])

    def _safe_rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error:
            pass


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        account_id=row["account_id"],
        text=row["text"],
        created_at=row["created_at"],
    )


__all__ = ["AlreadyExists", "Created", "InsertOutcome", "Notification", "NotificationStore"]
