"""Exception taxonomy shared by the relay pipeline."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by so-relay."""


class SourceError(RelayError):
    """The Stack Exchange API call did not produce usable items."""


class RateLimited(SourceError):
    """The API asked us to slow down; no call before ``retry_after`` seconds."""

    def __init__(self, retry_after: float, message: str | None = None) -> None:
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(message or f"Rate limited, retry after {self.retry_after:.1f}s")


class SourceUnavailable(SourceError):
    """Network failure, timeout or 5xx from the API."""


class SourceMalformed(SourceError):
    """Payload could not be parsed into the expected shape."""


class StoreUnavailable(RelayError):
    """The notification store failed for reasons unrelated to the unique constraint."""


class SubscriberSlow(RelayError):
    """A subscriber queue overflowed and a pending delivery was dropped."""

    def __init__(self, account_id: int, dropped: int) -> None:
        self.account_id = account_id
        self.dropped = dropped
        super().__init__(f"Subscriber for account {account_id} dropped {dropped} deliveries")


class AccountConfigError(RelayError):
    """A registration row cannot be turned into a watched account."""


__all__ = [
    "AccountConfigError",
    "RateLimited",
    "RelayError",
    "SourceError",
    "SourceMalformed",
    "SourceUnavailable",
    "StoreUnavailable",
    "SubscriberSlow",
]
