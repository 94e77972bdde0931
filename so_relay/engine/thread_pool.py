"""Bounded worker pool running at most one cycle per account at a time."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock
from typing import Callable, Hashable, Set


class PollWorkerPool:
    """Shared executor plus an in-flight set keyed by account."""

    def __init__(self, workers: int = 8) -> None:
        self.workers = workers
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="relay")
        self._in_flight: Set[Hashable] = set()
        self._futures: Set[Future] = set()
        self._lock = Lock()
        self._accepting = True

    def submit_exclusive(self, key: Hashable, fn: Callable[[], object]) -> Future | None:
        """Run ``fn`` unless work for ``key`` is already queued or running."""

        with self._lock:
            if not self._accepting or key in self._in_flight:
                return None
            self._in_flight.add(key)
            try:
                future = self._executor.submit(fn)
            except RuntimeError:
                self._in_flight.discard(key)
                return None
            self._futures.add(future)
        future.add_done_callback(lambda done: self._release(key, done))
        return future

    def is_busy(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._in_flight

    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._lock:
            pending = set(self._futures)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stop accepting work and wait up to ``timeout`` for running cycles.

        Queued cycles that have not started are cancelled.
        """

        with self._lock:
            self._accepting = False
        self._executor.shutdown(wait=False, cancel_futures=True)
        return self.wait_idle(timeout)

    def _release(self, key: Hashable, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(key)
            self._futures.discard(future)


__all__ = ["PollWorkerPool"]
