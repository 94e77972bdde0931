from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier, Event, Timer

import pytest

from so_relay.errors import RateLimited, SourceMalformed, SourceUnavailable, StoreUnavailable
from so_relay.orchestrator import PollScheduler
from so_relay.scheduler import Phase
from so_relay.scheduler.state import SourceFailed


class FailingStore:
    """Store whose writes always fail, as if the database were locked."""

    def __init__(self) -> None:
        self.attempts = 0

    def insert_if_new(self, account_id: int, text: str):
        self.attempts += 1
        raise StoreUnavailable("database is locked")

    def notifications_for(self, account_id: int, after_id=None, limit: int = 50):
        return []


class StubCadence:
    def __init__(self) -> None:
        self.scheduled = None
        self.started = False
        self.stopped = False

    def schedule_tick(self, config, callback) -> None:
        self.scheduled = callback

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = False) -> None:
        self.stopped = True


class GatedSource:
    """Yields one item, then blocks until released before yielding the next."""

    def __init__(self, first, second) -> None:
        self.items = (first, second)
        self.reached = Event()
        self.gate = Event()
        self.closed = False

    def fetch(self, query):
        yield self.items[0]
        self.reached.set()
        self.gate.wait(5)
        yield self.items[1]

    def close(self) -> None:
        self.closed = True


class SignallingFailingStore(FailingStore):
    def __init__(self) -> None:
        super().__init__()
        self.first_attempt = Event()

    def insert_if_new(self, account_id: int, text: str):
        self.first_attempt.set()
        return super().insert_if_new(account_id, text)


class FixedBackoff:
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    def delay(self, failures: int) -> float:
        return self.seconds

    def ceiling(self, failures: int) -> float:
        return self.seconds


@pytest.fixture
def make_relay(relay_config, accounts, scripted_source, store, hub, pool, fake_clock):
    def _factory(**overrides) -> PollScheduler:
        parts = dict(
            config=relay_config,
            accounts=accounts,
            source=scripted_source,
            store=store,
            hub=hub,
            pool=pool,
            clock=fake_clock,
        )
        parts.update(overrides)
        return PollScheduler(**parts)

    return _factory


def test_new_items_are_stored_then_published_in_order(
    make_relay, accounts, scripted_source, store, hub, make_item
) -> None:
    accounts.register(1, "token-1")
    scripted_source.queue("token-1", [make_item("first"), make_item("second")])
    subscription = hub.subscribe(1)
    relay = make_relay()

    (report,) = relay.run_once(timeout=5)

    assert (report.outcome, report.fetched, report.created, report.published) == ("ok", 2, 2, 2)
    received = [subscription.get(timeout=1).notification.text for _ in range(2)]
    assert received == ["first", "second"]

    (again,) = relay.run_once(timeout=5)
    assert (again.created, again.duplicates, again.published) == (0, 2, 0)
    assert subscription.get(timeout=0.05) is None
    assert store.count(1) == 2


def test_duplicate_text_within_one_fetch_is_published_once(
    make_relay, accounts, scripted_source, hub, make_item
) -> None:
    accounts.register(1, "token-1")
    scripted_source.queue("token-1", [make_item("same"), make_item("<i>same</i>")])
    subscription = hub.subscribe(1)

    (report,) = make_relay().run_once(timeout=5)

    assert (report.created, report.duplicates, report.published) == (1, 1, 1)
    assert subscription.get(timeout=1).notification.text == "same"
    assert subscription.get(timeout=0.05) is None


def test_rate_limited_account_waits_out_retry_after(
    make_relay, accounts, scripted_source, fake_clock, make_item
) -> None:
    accounts.register(1, "token-1")
    scripted_source.queue("token-1", RateLimited(30), [make_item("after the wait")])
    relay = make_relay()

    (limited,) = relay.run_once(timeout=5)
    assert limited.outcome == "rate_limited"
    assert limited.retry_in == 30
    assert relay.registry.get(1).phase is Phase.BACKOFF

    fake_clock.advance(20)
    assert relay.run_once(timeout=5) == []
    assert scripted_source.calls == ["token-1"]

    fake_clock.advance(10)
    (resumed,) = relay.run_once(timeout=5)
    assert (resumed.outcome, resumed.created) == ("ok", 1)
    assert relay.registry.get(1).phase is Phase.IDLE


def test_unavailable_source_backs_off_and_recovers(
    make_relay, accounts, scripted_source, fake_clock, make_item
) -> None:
    accounts.register(1, "token-1")
    scripted_source.queue("token-1", SourceUnavailable("503"), SourceUnavailable("503"), [make_item("up")])
    relay = make_relay()

    (first,) = relay.run_once(timeout=5)
    assert first.outcome == "unavailable"
    assert 0 <= first.retry_in <= relay.backoff.ceiling(1)
    assert relay.registry.get(1).failures == 1

    fake_clock.advance(1)
    relay.run_once(timeout=5)
    assert relay.registry.get(1).failures == 2

    fake_clock.advance(1)
    (recovered,) = relay.run_once(timeout=5)
    assert recovered.outcome == "ok"
    assert relay.registry.get(1).failures == 0


def test_malformed_payload_returns_account_to_idle(
    make_relay, accounts, scripted_source, store
) -> None:
    accounts.register(1, "token-1")
    scripted_source.queue("token-1", SourceMalformed("bad json"))
    relay = make_relay()

    (report,) = relay.run_once(timeout=5)

    assert (report.outcome, report.created) == ("malformed", 0)
    assert relay.registry.get(1).phase is Phase.IDLE
    assert store.count(1) == 0


def test_store_failures_escalate_and_mark_relay_unhealthy(
    make_relay, accounts, scripted_source, fake_clock, make_item, relay_config
) -> None:
    accounts.register(1, "token-1")
    scripted_source.queue("token-1", [make_item("cannot be stored")])
    failing = FailingStore()
    relay = make_relay(store=failing)

    (report,) = relay.run_once(timeout=5)
    assert report.outcome == "store_escalated"
    assert failing.attempts == relay_config.store_retry_budget
    assert relay.healthy()

    fake_clock.advance(1)
    relay.run_once(timeout=5)
    assert relay.registry.get(1).escalations == 2
    assert not relay.healthy()


def test_concurrent_cycles_publish_a_notification_once(
    make_relay, scripted_source, hub, make_account, make_item, store
) -> None:
    scripted_source.queue("token-1", [make_item("race")])
    subscription = hub.subscribe(1)
    relay = make_relay()
    account = make_account(1)
    barrier = Barrier(4)

    def cycle(_: int):
        barrier.wait()
        return relay.run_cycle(account)

    with ThreadPoolExecutor(max_workers=4) as executor:
        reports = list(executor.map(cycle, range(4)))

    assert sum(report.published for report in reports) == 1
    assert subscription.pending == 1
    assert store.count(1) == 1


def test_rejected_registrations_are_not_polled(make_relay, accounts, scripted_source) -> None:
    accounts.register(1, "token-1")
    accounts._conn.execute(
        "INSERT INTO registrations(account_id, access_token, query_kind) VALUES (2, 'x', 'bogus')"
    )
    accounts._conn.commit()

    reports = make_relay().run_once(timeout=5)

    assert [report.account_id for report in reports] == [1]
    assert scripted_source.calls == ["token-1"]


def test_start_requires_cadence_driver(make_relay) -> None:
    with pytest.raises(RuntimeError):
        make_relay().start()


def test_start_registers_tick(make_relay) -> None:
    cadence = StubCadence()
    relay = make_relay(scheduler=cadence)
    relay.start()
    assert cadence.started
    assert cadence.scheduled == relay.tick


def test_shutdown_stops_everything(make_relay, accounts, scripted_source, hub) -> None:
    accounts.register(1, "token-1")
    cadence = StubCadence()
    subscription = hub.subscribe(1)
    relay = make_relay(scheduler=cadence)

    assert relay.shutdown(timeout=1) is True

    assert cadence.stopped
    assert scripted_source.closed
    assert subscription.closed
    assert relay.tick() == []


def test_view_history_reads_store(make_relay, store) -> None:
    for n in range(3):
        store.insert_if_new(4, f"n{n}")
    relay = make_relay()
    assert [row.text for row in relay.view_history(4, limit=2)] == ["n0", "n1"]


def test_shutdown_interrupts_running_cycle_between_items(
    make_relay, accounts, store, make_item
) -> None:
    accounts.register(1, "token-1")
    source = GatedSource(make_item("before shutdown"), make_item("after shutdown"))
    relay = make_relay(source=source)
    relay.registry.apply(1, SourceFailed(until=0.0))
    relay.registry.apply(1, SourceFailed(until=0.0))

    (future,) = relay.tick()
    assert source.reached.wait(5)
    release = Timer(0.1, source.gate.set)
    release.start()
    assert relay.shutdown(timeout=5) is True
    release.join()

    report = future.result(timeout=5)
    assert report.outcome == "interrupted"
    assert (report.fetched, report.created) == (1, 1)
    assert [row.text for row in store.notifications_for(1)] == ["before shutdown"]
    state = relay.registry.get(1)
    assert state.phase is Phase.IDLE
    assert state.failures == 2
    assert source.closed


def test_shutdown_cuts_store_retry_wait_short(make_relay, accounts, scripted_source, make_item) -> None:
    accounts.register(1, "token-1")
    scripted_source.queue("token-1", [make_item("never stored")])
    failing = SignallingFailingStore()
    relay = make_relay(store=failing, backoff=FixedBackoff(30.0))

    (future,) = relay.tick()
    assert failing.first_attempt.wait(5)
    started = time.monotonic()
    relay.shutdown(timeout=5)
    report = future.result(timeout=5)

    assert time.monotonic() - started < 5
    assert report.outcome == "store_escalated"
    assert failing.attempts == 1
