"""Pytest configuration providing shared fixtures for the relay pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

import pytest

from so_relay.config import QueryKind, RelayConfig, SourceQuery, StackExchangeConfig, WatchedAccount
from so_relay.engine import AccountDirectory, FanoutHub, NotificationStore, PollWorkerPool
from so_relay.engine.source import RawItem
from so_relay.infra import SQLiteManager


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedSource:
    """Stand-in for ``StackExchangeClient`` replaying queued results per access token.

    Each queued result is either a list of ``RawItem`` or an exception to
    raise from ``fetch``. When a token's script runs out, the last result
    repeats.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[Any]] = {}
        self.calls: list[str] = []
        self.closed = False

    def queue(self, token: str, *results: Any) -> None:
        self.scripts.setdefault(token, []).extend(results)

    def fetch(self, query: SourceQuery) -> Iterator[RawItem]:
        self.calls.append(query.access_token)
        script = self.scripts.get(query.access_token, [[]])
        result = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(result, BaseException):
            raise result
        return iter(list(result))

    def close(self) -> None:
        self.closed = True


def raw_item(body: str, item_type: str = "comment", **overrides: Any) -> RawItem:
    payload: dict[str, Any] = {
        "body": body,
        "creation_date": 1_700_000_000,
        "is_unread": True,
        "item_type": item_type,
    }
    payload.update(overrides)
    return RawItem.model_validate(payload)


def api_page(items: Iterable[dict], has_more: bool = False, **extra: Any) -> dict:
    page: dict[str, Any] = {
        "items": list(items),
        "has_more": has_more,
        "quota_max": 10_000,
        "quota_remaining": 9_999,
    }
    page.update(extra)
    return page


@pytest.fixture(autouse=True)
def relay_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("SO_RELAY_HOME", str(tmp_path))
    monkeypatch.delenv("SO_RELAY_CLIENT_KEY", raising=False)
    return tmp_path


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> Iterable[SQLiteManager]:
    manager = SQLiteManager()
    yield manager
    manager.close_all()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "relay.db"


@pytest.fixture
def store(storage: SQLiteManager, db_path: Path) -> NotificationStore:
    return NotificationStore(storage, db_path)


@pytest.fixture
def accounts(storage: SQLiteManager, db_path: Path) -> AccountDirectory:
    return AccountDirectory(storage, db_path)


@pytest.fixture
def hub() -> Iterable[FanoutHub]:
    fanout = FanoutHub(queue_depth=4)
    yield fanout
    fanout.close()


@pytest.fixture
def pool() -> Iterable[PollWorkerPool]:
    workers = PollWorkerPool(workers=4)
    yield workers
    workers.shutdown(timeout=5)


@pytest.fixture
def relay_config(db_path: Path) -> RelayConfig:
    return RelayConfig(
        cadence_seconds=20,
        backoff_base_ms=1,
        backoff_cap_ms=40,
        queue_depth=4,
        worker_count=4,
        store_retry_budget=3,
        unhealthy_after=2,
        shutdown_timeout_seconds=5,
        database_path=db_path,
        stack_exchange=StackExchangeConfig(client_key="test-key", min_interval_seconds=0),
    )


@pytest.fixture
def make_account() -> Callable[..., WatchedAccount]:
    def _builder(
        account_id: int = 1, token: str | None = None, kind: QueryKind = QueryKind.NOTIFICATIONS
    ) -> WatchedAccount:
        return WatchedAccount(
            account_id=account_id,
            query=SourceQuery(kind=kind, access_token=token or f"token-{account_id}"),
        )

    return _builder


@pytest.fixture
def scripted_source() -> ScriptedSource:
    return ScriptedSource()


@pytest.fixture
def make_item() -> Callable[..., RawItem]:
    return raw_item


@pytest.fixture
def make_page() -> Callable[..., dict]:
    return api_page
