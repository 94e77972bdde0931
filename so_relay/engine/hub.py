"""Fan-out of freshly stored notifications to live subscribers."""

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass
from threading import Condition, Lock, Thread
from typing import Callable, Dict

import structlog

from ..errors import SubscriberSlow
from .dedup import Notification

_subscription_ids = itertools.count(1)


@dataclass(frozen=True, slots=True)
class Delivery:
    """What a subscriber receives.

    ``resync_required`` is set on the first delivery after the subscriber's
    queue overflowed; the consumer should re-read the store before trusting
    the live stream again.
    """

    notification: Notification
    resync_required: bool = False


Sink = Callable[[Delivery], None]


class Subscription:
    """A live connection's bounded mailbox for one account."""

    def __init__(self, hub: "FanoutHub", account_id: int, depth: int) -> None:
        self.id = next(_subscription_ids)
        self.account_id = account_id
        self.depth = depth
        self.degraded = False
        self.dropped = 0
        self._hub = hub
        self._queue: deque[Notification] = deque()
        self._cond = Condition(Lock())
        self._closed = False
        self._resync_pending = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def offer(self, notification: Notification) -> SubscriberSlow | None:
        """Enqueue without blocking; evict the oldest entry when full."""

        with self._cond:
            if self._closed:
                return None
            overflow = None
            if len(self._queue) >= self.depth:
                self._queue.popleft()
                self.dropped += 1
                self.degraded = True
                self._resync_pending = True
                overflow = SubscriberSlow(self.account_id, self.dropped)
            self._queue.append(notification)
            self._cond.notify()
        return overflow

    def get(self, timeout: float | None = None) -> Delivery | None:
        """Next delivery, or ``None`` on timeout or once the subscription is closed."""

        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._closed, timeout=timeout):
                return None
            if self._closed:
                return None
            notification = self._queue.popleft()
            resync = self._resync_pending
            self._resync_pending = False
        return Delivery(notification, resync_required=resync)

    def close(self) -> None:
        """Tear down; safe to call repeatedly and from any thread."""

        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()
        self._hub._forget(self)


class FanoutHub:
    """Registry of live subscriptions keyed by account id.

    ``publish`` never blocks on a subscriber: each one has its own bounded
    queue and slow consumers lose their oldest pending deliveries.
    """

    def __init__(self, queue_depth: int = 32, logger: structlog.BoundLogger | None = None) -> None:
        if queue_depth < 1:
            raise ValueError("queue_depth must be >= 1")
        self.queue_depth = queue_depth
        self.logger = logger or structlog.get_logger("so_relay.hub")
        self._subscriptions: Dict[int, Dict[int, Subscription]] = {}
        self._lock = Lock()
        self._closed = False

    def subscribe(self, account_id: int, sink: Sink | None = None) -> Subscription:
        subscription = Subscription(self, account_id, self.queue_depth)
        with self._lock:
            if self._closed:
                raise RuntimeError("Hub is shut down")
            self._subscriptions.setdefault(account_id, {})[subscription.id] = subscription
        self.logger.debug("subscribed", account_id=account_id, subscription=subscription.id)
        if sink is not None:
            pump = Thread(
                target=self._pump,
                args=(subscription, sink),
                name=f"hub-{account_id}-{subscription.id}",
                daemon=True,
            )
            pump.start()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    def publish(self, account_id: int, notification: Notification) -> int:
        with self._lock:
            targets = list(self._subscriptions.get(account_id, {}).values())
        for subscription in targets:
            overflow = subscription.offer(notification)
            if overflow is not None:
                self.logger.warning(
                    "subscriber_slow",
                    account_id=account_id,
                    subscription=subscription.id,
                    dropped=overflow.dropped,
                )
        return len(targets)

    def subscriber_count(self, account_id: int | None = None) -> int:
        with self._lock:
            if account_id is not None:
                return len(self._subscriptions.get(account_id, {}))
            return sum(len(subs) for subs in self._subscriptions.values())

    def close(self) -> None:
        """Drop every subscription; pending deliveries are discarded."""

        with self._lock:
            self._closed = True
            subscriptions = [sub for subs in self._subscriptions.values() for sub in subs.values()]
        for subscription in subscriptions:
            subscription.close()
        self.logger.info("hub_closed", subscriptions=len(subscriptions))

    # ------------------------------------------------------------------
    def _forget(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.account_id)
            if subs is None:
                return
            subs.pop(subscription.id, None)
            if not subs:
                del self._subscriptions[subscription.account_id]

    def _pump(self, subscription: Subscription, sink: Sink) -> None:
        while True:
            delivery = subscription.get()
            if delivery is None:
                return
            try:
                sink(delivery)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "sink_failed",
                    account_id=subscription.account_id,
                    subscription=subscription.id,
                    error=str(exc),
                )
                subscription.close()
                return


__all__ = ["Delivery", "FanoutHub", "Sink", "Subscription"]
