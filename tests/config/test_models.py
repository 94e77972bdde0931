from __future__ import annotations

from pathlib import Path

import pytest

from so_relay.config import QueryKind, RelayConfig, SourceQuery, StackExchangeConfig, WatchedAccount


def test_relay_config_defaults_match_documented_cadence() -> None:
    config = RelayConfig()
    assert config.cadence_seconds == 60
    assert (config.backoff_base_ms, config.backoff_cap_ms) == (1_000, 60_000)
    assert config.queue_depth >= 1
    assert config.worker_count >= 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"cadence_seconds": 0},
        {"backoff_base_ms": 0},
        {"backoff_base_ms": 5_000, "backoff_cap_ms": 1_000},
        {"queue_depth": 0},
        {"worker_count": 0},
        {"store_retry_budget": 0},
    ],
)
def test_relay_config_rejects_bad_bounds(overrides: dict) -> None:
    with pytest.raises(ValueError):
        RelayConfig(**overrides)


def test_stack_exchange_config_normalises_api_base() -> None:
    config = StackExchangeConfig(api_base="https://api.stackexchange.com/2.3/")
    assert config.api_base == "https://api.stackexchange.com/2.3"
    with pytest.raises(ValueError):
        StackExchangeConfig(max_pages=0)


def test_watched_account_validation() -> None:
    account = WatchedAccount(account_id=7, query={"kind": "inbox", "access_token": " abc "})
    assert account.query.kind is QueryKind.INBOX
    assert account.query.access_token == "abc"
    with pytest.raises(ValueError):
        SourceQuery(access_token="   ")
    with pytest.raises(ValueError):
        WatchedAccount(account_id=0, query=SourceQuery(access_token="abc"))
    with pytest.raises(ValueError):
        SourceQuery(kind="questions", access_token="abc")


def test_resolved_database_path(tmp_path: Path) -> None:
    relative = RelayConfig(database_path="data/x.db")
    assert relative.resolved_database_path(tmp_path) == (tmp_path / "data" / "x.db").resolve()
    absolute = RelayConfig(database_path=tmp_path / "y.db")
    assert absolute.resolved_database_path(Path("/elsewhere")) == tmp_path / "y.db"
