"""Keyed work queue shared by the watch threads and the reconcile workers.

A key is queued at most once. While a worker holds a key, re-adding it only
marks it dirty; it is handed out again after :meth:`WorkQueue.done`, so two
workers never process the same Ingress at once.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from typing import Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)

BASE_DELAY = 1.0
MAX_DELAY = 300.0


class ShutDown(Exception):
    """Raised by :meth:`WorkQueue.get` once the queue is shut down."""


class WorkQueue(Generic[K]):
    """De-duplicating FIFO with delayed adds and per-key exponential backoff.

    Parameters
    ----------
    base_delay, max_delay:
        Backoff bounds for :meth:`add_rate_limited`, in seconds.
    """

    def __init__(self, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: list[K] = []
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._delayed: list[tuple[float, int, K]] = []
        self._waiting: dict[K, float] = {}
        self._seq = itertools.count()
        self._failures: dict[K, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def num_waiting(self) -> int:
        """Number of keys waiting on a delayed add."""
        with self._cond:
            return len(self._waiting)

    # -- producers --------------------------------------------------------------

    def add(self, key: K) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: K, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = time.monotonic() + delay
            waiting = self._waiting.get(key)
            # One pending delayed add per key; the earliest ready time wins
            if waiting is not None and waiting <= ready_at:
                return
            self._waiting[key] = ready_at
            heapq.heappush(self._delayed, (ready_at, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: K) -> float:
        """Queue ``key`` after its backoff delay and return that delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        """Reset the backoff of ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    # -- consumers --------------------------------------------------------------

    def get(self, timeout: float | None = None) -> K | None:
        """Block until a key is ready and mark it as processing.

        Returns ``None`` when ``timeout`` elapses first and raises
        :class:`ShutDown` once the queue is shut down.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    raise ShutDown()
                self._promote_delayed_locked()
                if self._queue:
                    key = self._queue.pop(0)
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key

                waits = []
                if self._delayed:
                    waits.append(self._delayed[0][0] - time.monotonic())
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    waits.append(remaining)
                self._cond.wait(max(min(waits), 0) if waits else None)

    def done(self, key: K) -> None:
        """Release ``key``; it is re-queued if it was added while processing."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and key not in self._queue:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # -- internals --------------------------------------------------------------

    def _add_locked(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_delayed_locked(self) -> None:
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._delayed)
            # Superseded by an earlier add_after for the same key
            if self._waiting.get(key) != ready_at:
                continue
            del self._waiting[key]
            self._add_locked(key)
