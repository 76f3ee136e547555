from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Protocol

from syncer.src.metrics import METRICS


class BackoffStrategy(Protocol):
    def delay(self, failures: int) -> float:
        """Return the delay in seconds before retry number ``failures + 1``."""
        ...


@dataclass(frozen=True)
class FixedBackoff:
    """Always wait the same interval between retries."""

    interval: float

    def delay(self, failures: int) -> float:
        return self.interval


@dataclass(frozen=True)
class ExponentialBackoff:
    """``base * 2**failures`` seconds, never more than ``cap``."""

    base: float
    cap: float

    def delay(self, failures: int) -> float:
        # Exponent bounded to keep the float finite for long-failing keys.
        return min(self.cap, self.base * (2 ** min(failures, 62)))


def build_backoff(kind: str, base: float, cap: float) -> BackoffStrategy:
    if kind == "fixed":
        return FixedBackoff(interval=base)
    if kind == "exponential":
        return ExponentialBackoff(base=base, cap=cap)
    raise ValueError(f"unknown backoff strategy: {kind!r}")


class DelayedWorkQueue:
    """Deduplicating, delay-capable work queue shared by reconciler workers.

    A key is in at most one of two places at a time: waiting in the FIFO, or
    held by exactly one worker between :meth:`get` and :meth:`done`. Adding a
    key that is already waiting is a no-op. Adding a key while a worker holds
    it marks it dirty, and :meth:`done` puts it straight back in the FIFO so
    the change observed mid-processing is not lost.

    Key internal state:
        ``_queue``
            FIFO of keys eligible for :meth:`get`.
        ``_dirty``
            Keys that need processing (waiting in ``_queue`` or re-added while
            processing).
        ``_processing``
            Keys currently held by a worker.
        ``_delayed``
            Maps a key to the ``(due_at, seq)`` of its most recent
            :meth:`add_after` request. Older heap entries for the same key are
            skipped when they surface.
        ``_failures``
            Retry counters per key, consumed by the backoff strategy and
            cleared by :meth:`forget`.
    """

    def __init__(
        self,
        backoff: BackoffStrategy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backoff = backoff or ExponentialBackoff(base=0.25, cap=300.0)
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: dict[Hashable, tuple[float, int]] = {}
        self._heap: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _enqueue_locked(self, key: Hashable) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def _promote_due_locked(self, now: float) -> None:
        while self._heap and self._heap[0][0] <= now:
            due_at, seq, key = heapq.heappop(self._heap)
            if self._delayed.get(key) != (due_at, seq):
                continue
            del self._delayed[key]
            self._enqueue_locked(key)

    def _next_wait_locked(self, now: float) -> float | None:
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - now)

    def add(self, key: Hashable) -> None:
        """Make ``key`` eligible immediately, superseding any pending delay."""
        with self._cond:
            if self._shutting_down:
                return
            self._delayed.pop(key, None)
            self._enqueue_locked(key)

    def _add_after_locked(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self._delayed.pop(key, None)
            self._enqueue_locked(key)
            return
        entry = (self._clock() + delay, next(self._seq))
        self._delayed[key] = entry
        heapq.heappush(self._heap, (entry[0], entry[1], key))
        # Waiters recompute their timeout against the new earliest deadline.
        self._cond.notify_all()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Make ``key`` eligible after ``delay`` seconds.

        The most recent request for a key wins: a later call replaces the
        earlier schedule whether it fires sooner or later.
        """
        with self._cond:
            if self._shutting_down:
                return
            self._add_after_locked(key, delay)

    def add_rate_limited(self, key: Hashable) -> float:
        """Schedule ``key`` after its backoff delay and bump its retry counter.

        Returns the delay that was applied.
        """
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
            delay = self.backoff.delay(failures)
            if not self._shutting_down:
                self._add_after_locked(key, delay)
            return delay

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        """Clear the retry counter for ``key`` after a successful reconcile."""
        with self._cond:
            self._failures.pop(key, None)

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until a key is eligible and hand it to the caller exclusively.

        Returns ``(key, False)``, or ``(None, True)`` once the queue is shut
        down.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                now = self._clock()
                self._promote_due_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    METRICS.queue_depth.set(len(self._queue))
                    return key, False
                self._cond.wait(timeout=self._next_wait_locked(now))

    def done(self, key: Hashable) -> None:
        """Release ``key``; re-queue it if it was added while being processed."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        """Wake every blocked :meth:`get` and refuse further work."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # Read-only introspection for tests and debugging; the controller never
    # branches on these.
    def is_processing(self, key: Hashable) -> bool:
        """Whether ``key`` has been handed out by :meth:`get` and not yet marked done."""
        with self._cond:
            return key in self._processing

    def pending_delayed(self) -> int:
        """Number of keys waiting for a delayed schedule to fire."""
        with self._cond:
            return len(self._delayed)
