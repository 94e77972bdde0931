"""Read-only view over the registrations table."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

import structlog
from pydantic import ValidationError

from ..config import QueryKind, SourceQuery, WatchedAccount
from ..errors import AccountConfigError, StoreUnavailable
from ..infra.storage import SQLiteManager


@dataclass(slots=True)
class AccountListing:
    """Accounts that parsed cleanly plus the rows that were skipped."""

    accounts: list[WatchedAccount]
    rejected: list[tuple[object, str]]


class AccountDirectory:
    """Expose watched accounts to the scheduler without ever mutating them."""

    def __init__(
        self,
        manager: SQLiteManager,
        db_path: Path,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.manager = manager
        self.db_path = db_path
        self.logger = logger or structlog.get_logger("so_relay.accounts")
        self._lock = self.manager.lock_for(db_path)
        self._conn = self.manager.connect(db_path)

    def list_watched_accounts(self) -> list[WatchedAccount]:
        listing = self.scan()
        for account_id, reason in listing.rejected:
            self.logger.warning("account_config_invalid", account_id=account_id, reason=reason)
        return listing.accounts

    def scan(self) -> AccountListing:
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT account_id, access_token, query_kind FROM registrations ORDER BY account_id"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Unable to query registrations: {exc}") from exc
        accounts: list[WatchedAccount] = []
        rejected: list[tuple[object, str]] = []
        for row in rows:
            try:
                accounts.append(_row_to_account(row))
            except AccountConfigError as exc:
                rejected.append((row["account_id"], str(exc)))
        return AccountListing(accounts, rejected)

    def register(self, account_id: int, access_token: str, kind: QueryKind = QueryKind.NOTIFICATIONS) -> WatchedAccount:
        """Upsert a registration; stands in for the OAuth registration flow."""

        account = WatchedAccount(
            account_id=account_id,
            query=SourceQuery(kind=kind, access_token=access_token),
        )
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO registrations(account_id, access_token, query_kind) VALUES (?, ?, ?) "
                    "ON CONFLICT(account_id) DO UPDATE SET "
                    "access_token = excluded.access_token, query_kind = excluded.query_kind",
                    (account.account_id, account.query.access_token, account.query.kind.value),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreUnavailable(f"Unable to persist registration: {exc}") from exc
        return account


def _row_to_account(row: sqlite3.Row) -> WatchedAccount:
    try:
        return WatchedAccount(
            account_id=row["account_id"],
            query=SourceQuery(kind=row["query_kind"], access_token=row["access_token"] or ""),
        )
    except ValidationError as exc:
        errors = "; ".join(error["msg"] for error in exc.errors())
        raise AccountConfigError(errors) from exc


__all__ = ["AccountDirectory", "AccountListing"]
