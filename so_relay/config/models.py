"""Pydantic models used across so-relay configuration flow."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class QueryKind(str, Enum):
    """Stack Exchange feeds an account can watch."""

    NOTIFICATIONS = "notifications"
    INBOX = "inbox"


class SourceQuery(BaseModel):
    """What to ask the API on behalf of one account."""

    kind: QueryKind = QueryKind.NOTIFICATIONS
    access_token: str

    @field_validator("access_token")
    @classmethod
    def _non_empty_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("access_token cannot be empty")
        return value


class WatchedAccount(BaseModel):
    """A registered Stack Overflow account and its standing query."""

    account_id: int
    query: SourceQuery

    @field_validator("account_id")
    @classmethod
    def _positive_id(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("account_id must be positive")
        return value


class StackExchangeConfig(BaseModel):
    """Settings for talking to api.stackexchange.com."""

    client_key: str = ""
    site: str = "stackoverflow"
    api_base: str = "https://api.stackexchange.com/2.3"
    request_timeout: float = 15.0
    # Minimum spacing between two calls made with the same credential
    min_interval_seconds: float = 1.0
    max_pages: int = 3

    @model_validator(mode="after")
    def _validate_limits(self) -> "StackExchangeConfig":
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        self.api_base = self.api_base.rstrip("/")
        return self


class RelayConfig(BaseModel):
    """Process level settings consumed by the pipeline."""

    cadence_seconds: float = 60.0
    backoff_base_ms: int = 1_000
    backoff_cap_ms: int = 60_000
    queue_depth: int = 32
    worker_count: int = 8
    store_retry_budget: int = 3
    unhealthy_after: int = 3
    shutdown_timeout_seconds: float = 10.0
    database_path: Path = Field(default=Path("data/relay.db"))
    stack_exchange: StackExchangeConfig = Field(default_factory=StackExchangeConfig)

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @model_validator(mode="after")
    def _validate_bounds(self) -> "RelayConfig":
        if self.cadence_seconds <= 0:
            raise ValueError("cadence_seconds must be > 0")
        if self.backoff_base_ms <= 0:
            raise ValueError("backoff_base_ms must be > 0")
        if self.backoff_cap_ms < self.backoff_base_ms:
            raise ValueError("backoff_cap_ms must be >= backoff_base_ms")
        for name in ("queue_depth", "worker_count", "store_retry_budget", "unhealthy_after"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.shutdown_timeout_seconds < 0:
            raise ValueError("shutdown_timeout_seconds must be >= 0")
        return self

    def resolved_database_path(self, base_dir: Path) -> Path:
        """Return the database path relative to the project root."""

        if not self.database_path.is_absolute():
            return (base_dir / self.database_path).resolve()
        return self.database_path


__all__ = [
    "QueryKind",
    "RelayConfig",
    "SourceQuery",
    "StackExchangeConfig",
    "WatchedAccount",
]
