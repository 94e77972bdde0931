"""Engine components orchestrating fetch → build → dedup → fan-out."""

from .accounts import AccountDirectory
from .backoff import BackoffPolicy
from .builder import NotificationCandidate, build
from .dedup import AlreadyExists, Created, Notification, NotificationStore
from .hub import Delivery, FanoutHub, Subscription
from .source import RateTracker, RawItem, StackExchangeClient
from .thread_pool import PollWorkerPool

__all__ = [
    "AccountDirectory",
    "AlreadyExists",
    "BackoffPolicy",
    "Created",
    "Delivery",
    "FanoutHub",
    "Notification",
    "NotificationCandidate",
    "NotificationStore",
    "PollWorkerPool",
    "RateTracker",
    "RawItem",
    "StackExchangeClient",
    "Subscription",
    "build",
]
