"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    QueryKind,
    RelayConfig,
    SourceQuery,
    StackExchangeConfig,
    WatchedAccount,
)

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
    "QueryKind",
    "RelayConfig",
    "SourceQuery",
    "StackExchangeConfig",
    "WatchedAccount",
]
