"""Poll scheduler wiring source, builder, store and hub together."""

from __future__ import annotations

import time
from concurrent.futures import Future
from dataclasses import dataclass
from functools import partial
from threading import Event
from typing import Callable

import structlog

from .config import RelayConfig, WatchedAccount
from .engine.accounts import AccountDirectory
from .engine.backoff import BackoffPolicy
from .engine.builder import NotificationCandidate, build
from .engine.dedup import Created, InsertOutcome, Notification, NotificationStore
from .engine.hub import FanoutHub
from .engine.source import RawItem, StackExchangeClient
from .engine.thread_pool import PollWorkerPool
from .errors import RateLimited, SourceMalformed, SourceUnavailable, StoreUnavailable
from .logging_conf import account_logger, configure_logging
from .scheduler.state import (
    PollInterrupted,
    PollMalformed,
    PollStarted,
    PollSucceeded,
    ScheduleRegistry,
    SourceFailed,
    SourceRateLimited,
    StoreEscalated,
)

Builder = Callable[[WatchedAccount, RawItem], NotificationCandidate]


@dataclass(slots=True)
class CycleReport:
    """Counters for one account's poll cycle."""

    account_id: int
    outcome: str = "ok"
    fetched: int = 0
    created: int = 0
    duplicates: int = 0
    published: int = 0
    retry_in: float | None = None


class PollScheduler:
    """Drive every watched account through fetch → build → insert → publish.

    Cycles run on the bounded worker pool, one at a time per account. A
    notification is published only after its insert reported ``Created``;
    the hub never influences what gets stored.
    """

    def __init__(
        self,
        config: RelayConfig,
        accounts: AccountDirectory,
        source: StackExchangeClient,
        store: NotificationStore,
        hub: FanoutHub,
        pool: PollWorkerPool,
        scheduler=None,
        registry: ScheduleRegistry | None = None,
        backoff: BackoffPolicy | None = None,
        builder: Builder = build,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.accounts = accounts
        self.source = source
        self.store = store
        self.hub = hub
        self.pool = pool
        self.scheduler = scheduler
        self.registry = registry or ScheduleRegistry()
        self.backoff = backoff or BackoffPolicy.from_config(config)
        self.builder = builder
        self.clock = clock
        self.logger = configure_logging().bind(component="poll_scheduler")
        self._stopping = Event()

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.scheduler is None:
            raise RuntimeError("No cadence driver configured")
        self.scheduler.schedule_tick(self.config, self.tick)
        self.scheduler.start()
        self.logger.info(
            "poll_scheduler_started",
            cadence_seconds=self.config.cadence_seconds,
            workers=self.pool.workers,
        )

    def tick(self) -> list[Future]:
        """Submit a cycle for every account that is due and not already running."""

        if self._stopping.is_set():
            return []
        now = self.clock()
        try:
            accounts = self.accounts.list_watched_accounts()
        except StoreUnavailable as exc:
            self.logger.error("accounts_unavailable", error=str(exc))
            return []
        by_id = {account.account_id: account for account in accounts}
        self.registry.retain(by_id)

        futures: list[Future] = []
        skipped = 0
        for account_id in self.registry.due(by_id, now):
            future = self.pool.submit_exclusive(account_id, partial(self.run_cycle, by_id[account_id]))
            if future is None:
                skipped += 1
                continue
            futures.append(future)
        self.logger.debug(
            "tick", accounts=len(by_id), submitted=len(futures), busy=skipped
        )
        return futures

    def run_once(self, timeout: float | None = None) -> list[CycleReport]:
        """One synchronous tick: submit due accounts and wait for their reports."""

        futures = self.tick()
        self.pool.wait_idle(timeout)
        return [future.result() for future in futures if future.done() and not future.cancelled()]

    def run_cycle(self, account: WatchedAccount) -> CycleReport:
        log = account_logger(account.account_id)
        report = CycleReport(account.account_id)
        self.registry.apply(account.account_id, PollStarted())
        try:
            for item in self.source.fetch(account.query):
                if self._stopping.is_set():
                    report.outcome = "interrupted"
                    break
                report.fetched += 1
                candidate = self.builder(account, item)
                outcome = self._insert_with_retry(candidate, log)
                if isinstance(outcome, Created):
                    report.created += 1
                    if self._publish(account.account_id, outcome.notification, log):
                        report.published += 1
                else:
                    report.duplicates += 1
        except RateLimited as exc:
            report.outcome = "rate_limited"
            report.retry_in = exc.retry_after
            self.registry.apply(account.account_id, SourceRateLimited(self.clock() + exc.retry_after))
            log.warning("source_rate_limited", retry_after=exc.retry_after)
            return report
        except SourceUnavailable as exc:
            failures = self.registry.get(account.account_id).failures + 1
            delay = self.backoff.delay(failures)
            report.outcome = "unavailable"
            report.retry_in = delay
            self.registry.apply(account.account_id, SourceFailed(self.clock() + delay))
            log.warning("source_unavailable", failures=failures, retry_in=delay, error=str(exc))
            return report
        except SourceMalformed as exc:
            report.outcome = "malformed"
            self.registry.apply(account.account_id, PollMalformed())
            log.warning("source_malformed", error=str(exc), inserted=report.created)
            return report
        except StoreUnavailable as exc:
            escalations = self.registry.get(account.account_id).escalations + 1
            delay = self.backoff.ceiling(escalations)
            report.outcome = "store_escalated"
            report.retry_in = delay
            self.registry.apply(account.account_id, StoreEscalated(self.clock() + delay))
            log.error("store_escalated", escalations=escalations, retry_in=delay, error=str(exc))
            if not self.healthy():
                self.logger.error("relay_unhealthy", unhealthy_after=self.config.unhealthy_after)
            return report
        except Exception as exc:  # noqa: BLE001
            failures = self.registry.get(account.account_id).failures + 1
            delay = self.backoff.delay(failures)
            report.outcome = "error"
            report.retry_in = delay
            self.registry.apply(account.account_id, SourceFailed(self.clock() + delay))
            log.exception("cycle_failed", error=str(exc))
            return report

        if report.outcome == "interrupted":
            self.registry.apply(account.account_id, PollInterrupted())
        else:
            self.registry.apply(account.account_id, PollSucceeded())
        log.info(
            "cycle_finished",
            fetched=report.fetched,
            created=report.created,
            duplicates=report.duplicates,
            outcome=report.outcome,
        )
        return report

    def healthy(self) -> bool:
        return self.registry.healthy(self.config.unhealthy_after)

    def view_history(self, account_id: int, limit: int = 20, after_id: int | None = None) -> list[Notification]:
        return self.store.notifications_for(account_id, after_id=after_id, limit=limit)

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stop ticking, let in-flight cycles finish within ``timeout``, drop subscriptions."""

        self._stopping.set()
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
        grace = self.config.shutdown_timeout_seconds if timeout is None else timeout
        finished = self.pool.shutdown(grace)
        self.hub.close()
        self.source.close()
        self.logger.info("poll_scheduler_stopped", drained=finished)
        return finished

    # ------------------------------------------------------------------
    def _insert_with_retry(
        self, candidate: NotificationCandidate, log: structlog.BoundLogger
    ) -> InsertOutcome:
        attempt = 0
        while True:
            try:
                return self.store.insert_if_new(candidate.account_id, candidate.text)
            except StoreUnavailable as exc:
                attempt += 1
                if attempt >= self.config.store_retry_budget:
                    raise
                delay = self.backoff.delay(attempt)
                log.warning("store_retry", attempt=attempt, retry_in=delay, error=str(exc))
                if self._stopping.wait(delay):
                    raise

    def _publish(self, account_id: int, notification: Notification, log: structlog.BoundLogger) -> bool:
        try:
            delivered = self.hub.publish(account_id, notification)
        except Exception as exc:  # noqa: BLE001
            log.warning("publish_failed", notification_id=notification.id, error=str(exc))
            return False
        log.debug("published", notification_id=notification.id, subscribers=delivered)
        return True


__all__ = ["CycleReport", "PollScheduler"]
