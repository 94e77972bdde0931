"""Per-account schedule state and its transitions."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from threading import Lock
from typing import Dict, Iterable, Union


class Phase(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    BACKOFF = "backoff"


@dataclass(frozen=True, slots=True)
class AccountState:
    """Where one account sits in the ``Idle -> Polling -> Backoff -> Idle`` cycle."""

    account_id: int
    phase: Phase = Phase.IDLE
    backoff_until: float | None = None
    # consecutive source failures, drives the backoff ceiling
    failures: int = 0
    # consecutive cycles aborted because the store stayed unavailable
    escalations: int = 0

    def is_due(self, now: float) -> bool:
        if self.phase is Phase.IDLE:
            return True
        if self.phase is Phase.BACKOFF:
            return self.backoff_until is None or now >= self.backoff_until
        return False


@dataclass(frozen=True, slots=True)
class PollStarted:
    pass


@dataclass(frozen=True, slots=True)
class PollSucceeded:
    pass


@dataclass(frozen=True, slots=True)
class PollMalformed:
    pass


@dataclass(frozen=True, slots=True)
class PollInterrupted:
    pass


@dataclass(frozen=True, slots=True)
class SourceRateLimited:
    until: float


@dataclass(frozen=True, slots=True)
class SourceFailed:
    until: float


@dataclass(frozen=True, slots=True)
class StoreEscalated:
    until: float


@dataclass(frozen=True, slots=True)
class BackoffExpired:
    pass


Event = Union[
    PollStarted,
    PollSucceeded,
    PollMalformed,
    PollInterrupted,
    SourceRateLimited,
    SourceFailed,
    StoreEscalated,
    BackoffExpired,
]


def transition(state: AccountState, event: Event) -> AccountState:
    """Return the state that follows ``event``; ``state`` itself is untouched."""

    if isinstance(event, PollStarted):
        return replace(state, phase=Phase.POLLING, backoff_until=None)
    if isinstance(event, PollSucceeded):
        return replace(state, phase=Phase.IDLE, backoff_until=None, failures=0, escalations=0)
    if isinstance(event, PollMalformed):
        return replace(state, phase=Phase.IDLE, backoff_until=None, failures=0)
    if isinstance(event, PollInterrupted):
        # shutdown cut the cycle short; counters describe the last real outcome
        return replace(state, phase=Phase.IDLE, backoff_until=None)
    if isinstance(event, SourceRateLimited):
        return replace(state, phase=Phase.BACKOFF, backoff_until=event.until)
    if isinstance(event, SourceFailed):
        return replace(
            state, phase=Phase.BACKOFF, backoff_until=event.until, failures=state.failures + 1
        )
    if isinstance(event, StoreEscalated):
        return replace(
            state,
            phase=Phase.BACKOFF,
            backoff_until=event.until,
            escalations=state.escalations + 1,
        )
    if isinstance(event, BackoffExpired):
        if state.phase is Phase.BACKOFF:
            return replace(state, phase=Phase.IDLE, backoff_until=None)
        return state
    raise TypeError(f"Unknown schedule event: {event!r}")


class ScheduleRegistry:
    """Single owner of every account's ``AccountState``."""

    def __init__(self) -> None:
        self._states: Dict[int, AccountState] = {}
        self._lock = Lock()

    def get(self, account_id: int) -> AccountState:
        with self._lock:
            return self._states.get(account_id) or AccountState(account_id)

    def apply(self, account_id: int, event: Event) -> AccountState:
        with self._lock:
            current = self._states.get(account_id) or AccountState(account_id)
            updated = transition(current, event)
            self._states[account_id] = updated
            return updated

    def due(self, account_ids: Iterable[int], now: float) -> list[int]:
        """Account ids to poll at ``now``; expired backoffs return to idle here."""

        ready: list[int] = []
        with self._lock:
            for account_id in account_ids:
                state = self._states.get(account_id) or AccountState(account_id)
                if not state.is_due(now):
                    continue
                if state.phase is Phase.BACKOFF:
                    state = transition(state, BackoffExpired())
                self._states[account_id] = state
                ready.append(account_id)
        return ready

    def retain(self, account_ids: Iterable[int]) -> None:
        """Forget accounts that are no longer registered."""

        keep = set(account_ids)
        with self._lock:
            for account_id in list(self._states):
                if account_id not in keep:
                    del self._states[account_id]

    def snapshot(self) -> list[AccountState]:
        with self._lock:
            return sorted(self._states.values(), key=lambda state: state.account_id)

    def healthy(self, unhealthy_after: int) -> bool:
        """False once every known account has escalated ``unhealthy_after`` times in a row."""

        with self._lock:
            states = list(self._states.values())
        if not states:
            return True
        return not all(state.escalations >= unhealthy_after for state in states)


__all__ = [
    "AccountState",
    "BackoffExpired",
    "Event",
    "Phase",
    "PollInterrupted",
    "PollMalformed",
    "PollStarted",
    "PollSucceeded",
    "ScheduleRegistry",
    "SourceFailed",
    "SourceRateLimited",
    "StoreEscalated",
    "transition",
]
