"""Stack Exchange API client with rate-limit bookkeeping."""

from __future__ import annotations

import re
import time
from threading import Lock
from typing import Callable, Iterator

import httpx
import structlog
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
)

from .. import __version__
from ..config import QueryKind, SourceQuery, StackExchangeConfig
from ..errors import RateLimited, SourceMalformed, SourceUnavailable

USER_AGENT = f"so-relay (version:{__version__})"

_ENDPOINTS = {
    QueryKind.NOTIFICATIONS: ("/me/notifications/unread", "default"),
    QueryKind.INBOX: ("/me/inbox/unread", "withbody"),
}

# error_id values documented by the Stack Exchange API
THROTTLE_VIOLATION = 502
UNAVAILABLE_ERROR_IDS = {500, 503}

_RETRY_IN_MESSAGE = re.compile(r"(\d+)\s+seconds?", re.IGNORECASE)


class RawItem(BaseModel):
    """One unread notification or inbox entry, as strictly typed data."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    body: StrictStr = ""
    creation_date: StrictInt
    is_unread: StrictBool = True
    item_type: StrictStr = Field(validation_alias=AliasChoices("item_type", "notification_type"))
    post_id: StrictInt | None = None
    title: StrictStr | None = None
    link: StrictStr | None = None


class _Page(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: list[RawItem]
    has_more: StrictBool
    quota_max: StrictInt
    quota_remaining: StrictInt
    backoff: StrictInt | None = None


class _ApiError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error_id: StrictInt
    error_name: StrictStr = ""
    error_message: StrictStr = ""


class RateTracker:
    """Remember, per credential, the earliest moment the next call may go out."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._next_allowed: dict[tuple[str, str], float] = {}
        self._lock = Lock()

    def check(self, credential: tuple[str, str]) -> None:
        with self._lock:
            ready_at = self._next_allowed.get(credential)
            now = self.clock()
        if ready_at is not None and now < ready_at:
            raise RateLimited(ready_at - now, "Credential is cooling down")

    def hold(self, credential: tuple[str, str], seconds: float) -> None:
        with self._lock:
            ready_at = self.clock() + max(0.0, seconds)
            # never shorten a window that is already longer
            self._next_allowed[credential] = max(ready_at, self._next_allowed.get(credential, 0.0))

    def remaining(self, credential: tuple[str, str]) -> float:
        with self._lock:
            ready_at = self._next_allowed.get(credential)
            now = self.clock()
        if ready_at is None:
            return 0.0
        return max(0.0, ready_at - now)


class StackExchangeClient:
    """Fetch unread items for a watched account.

    ``fetch`` requests the first page eagerly so that rate limiting and
    availability errors surface at the call site; later pages are requested
    lazily while the caller iterates.
    """

    def __init__(
        self,
        config: StackExchangeConfig,
        *,
        default_retry_after: float = 60.0,
        rate_tracker: RateTracker | None = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.default_retry_after = default_retry_after
        self.rate_tracker = rate_tracker or RateTracker()
        self._sleep = sleep
        self.logger = logger or structlog.get_logger("so_relay.source")
        self._client = httpx.Client(
            follow_redirects=True,
            timeout=config.request_timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def fetch(self, query: SourceQuery) -> Iterator[RawItem]:
        first = self._fetch_page(query, page=1)
        return self._iterate(query, first)

    # ------------------------------------------------------------------
    def _iterate(self, query: SourceQuery, first: _Page) -> Iterator[RawItem]:
        page_number = 1
        page = first
        while True:
            yield from page.items
            if not page.has_more or page_number >= self.config.max_pages:
                return
            page_number += 1
            # pages of one fetch are spaced out rather than refused
            wait = self.rate_tracker.remaining(self._credential(query))
            if 0 < wait <= self.config.min_interval_seconds:
                self._sleep(wait)
            page = self._fetch_page(query, page=page_number)

    def _credential(self, query: SourceQuery) -> tuple[str, str]:
        return (self.config.client_key, query.access_token)

    def _fetch_page(self, query: SourceQuery, page: int) -> _Page:
        credential = self._credential(query)
        self.rate_tracker.check(credential)
        path, api_filter = _ENDPOINTS[query.kind]
        params = {
            "site": self.config.site,
            "access_token": query.access_token,
            "filter": api_filter,
            "page": page,
        }
        if self.config.client_key:
            params["key"] = self.config.client_key

        try:
            response = self._client.get(f"{self.config.api_base}{path}", params=params)
        except httpx.HTTPError as exc:
            self.rate_tracker.hold(credential, self.config.min_interval_seconds)
            raise SourceUnavailable(f"Request to {path} failed: {exc}") from exc
        self.rate_tracker.hold(credential, self.config.min_interval_seconds)

        payload = self._decode(response, path, credential)
        if "error_id" in payload:
            self._raise_api_error(payload, response, credential)
        if response.status_code == 429:
            self._raise_rate_limited(None, response, credential)
        if response.status_code >= 500:
            raise SourceUnavailable(f"{path} answered HTTP {response.status_code}")
        if response.is_error:
            raise SourceMalformed(f"{path} answered HTTP {response.status_code}")

        try:
            parsed = _Page.model_validate(payload)
        except ValidationError as exc:
            raise SourceMalformed(f"Unexpected payload shape from {path}: {exc}") from exc

        self.logger.debug(
            "quota",
            endpoint=path,
            quota_remaining=parsed.quota_remaining,
            quota_max=parsed.quota_max,
        )
        if parsed.backoff:
            self.logger.info("api_backoff_requested", endpoint=path, backoff=parsed.backoff)
            self.rate_tracker.hold(credential, float(parsed.backoff))
        return parsed

    def _decode(
        self, response: httpx.Response, path: str, credential: tuple[str, str]
    ) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            if response.status_code == 429:
                self._raise_rate_limited(None, response, credential)
            if response.status_code >= 500:
                raise SourceUnavailable(f"{path} answered HTTP {response.status_code}") from exc
            raise SourceMalformed(f"{path} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise SourceMalformed(f"{path} returned {type(payload).__name__}, expected an object")
        return payload

    def _raise_api_error(
        self, payload: dict, response: httpx.Response, credential: tuple[str, str]
    ) -> None:
        try:
            error = _ApiError.model_validate(payload)
        except ValidationError as exc:
            raise SourceMalformed(f"Unreadable API error body: {exc}") from exc
        if error.error_id == THROTTLE_VIOLATION:
            self._raise_rate_limited(error, response, credential)
        if error.error_id in UNAVAILABLE_ERROR_IDS:
            raise SourceUnavailable(f"{error.error_name}: {error.error_message}")
        raise SourceMalformed(f"API error {error.error_id} {error.error_name}: {error.error_message}")

    def _raise_rate_limited(
        self,
        error: _ApiError | None,
        response: httpx.Response,
        credential: tuple[str, str] | None,
    ) -> None:
        retry_after = _retry_after(response, error)
        if retry_after is None:
            retry_after = self.default_retry_after
        if credential is not None:
            self.rate_tracker.hold(credential, retry_after)
        raise RateLimited(retry_after)


def _retry_after(response: httpx.Response, error: _ApiError | None) -> float | None:
    header = response.headers.get("Retry-After")
    if header and header.strip().isdigit():
        return float(header.strip())
    if error is not None:
        match = _RETRY_IN_MESSAGE.search(error.error_message)
        if match:
            return float(match.group(1))
    return None


__all__ = ["RateTracker", "RawItem", "StackExchangeClient", "USER_AGENT"]
