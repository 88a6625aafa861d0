from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from mysql_operator.src.metrics import METRICS

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0


class RetryQueue:
    """Deduplicating work queue with per-key exponential backoff.

    A key is in at most one of three places at any instant:

    ``_queue`` / ``_dirty``
        Keys waiting to be handed out by :meth:`get`.  ``_dirty`` mirrors
        the queue for O(1) dedup and also marks keys that were re-added
        while being processed.
    ``_processing``
        Keys handed to a worker and not yet passed to :meth:`done`.  A key
        added while processing only lands in ``_dirty``; :meth:`done` moves
        it back to the queue exactly once.  This is what keeps a single key
        from being reconciled by two workers at the same time.
    ``_waiting``
        Keys scheduled by :meth:`add_after` / :meth:`add_rate_limited`,
        mapped to the monotonic time they become eligible.  :meth:`get`
        promotes due entries and sleeps until the nearest deadline.

    ``_failures`` counts consecutive rate-limited re-adds per key and is
    reset by :meth:`forget`.  All state is guarded by one condition variable.
    """

    def __init__(
        self,
        name: str,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

        self.name = name
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._shutting_down = False
        METRICS.queue_depth.labels(queue=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        METRICS.queue_adds_total.labels(queue=self.name).inc()
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def add(self, key: str) -> None:
        """Queue *key* unless it is already pending.

        A key currently being processed is only marked dirty and is
        re-delivered once after :meth:`done`.
        """
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        """Queue *key* once *delay_seconds* have elapsed.

        An earlier pending deadline for the same key wins.
        """
        with self._cond:
            if self._shutting_down:
                return
            if delay_seconds <= 0:
                self._add_locked(key)
                return
            ready_at = self.clock() + delay_seconds
            existing = self._waiting.get(key)
            if existing is None or ready_at < existing:
                self._waiting[key] = ready_at
                # Wake sleepers so they recompute their deadline.
                self._cond.notify_all()

    def _next_delay_locked(self, key: str) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        # Exponent is clamped so huge failure counts do not overflow floats.
        return min(self.base_delay_seconds * (2 ** min(failures, 64)), self.max_delay_seconds)

    def add_rate_limited(self, key: str) -> float:
        """Re-queue *key* after its backoff delay and return that delay.

        The delay doubles with every call for the same key (starting at the
        base delay) and never exceeds the configured ceiling.
        """
        with self._cond:
            delay = self._next_delay_locked(key)
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff counter for *key*."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due waiting keys into the queue; return seconds to the next deadline."""
        if not self._waiting:
            return None
        now = self.clock()
        nearest: float | None = None
        for key, ready_at in list(self._waiting.items()):
            if ready_at <= now:
                del self._waiting[key]
                self._add_locked(key)
            elif nearest is None or ready_at < nearest:
                nearest = ready_at
        if nearest is None:
            return None
        return max(0.0, nearest - now)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available.

        Returns ``(key, False)`` for work, or ``(None, True)`` once
        :meth:`shut_down` has been called and the queue has drained.
        """
        with self._cond:
            while True:
                wait_for = None if self._shutting_down else self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    self._update_depth()
                    return key, False
                if self._shutting_down:
                    return None, True
                self._cond.wait(timeout=wait_for)

    def done(self, key: str) -> None:
        """Mark *key* as no longer processing, re-queueing it if it went dirty."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys and wake every blocked :meth:`get`.

        Delayed keys are discarded; keys already queued still drain.
        """
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            dropped = len(self._waiting)
            self._waiting.clear()
            self._cond.notify_all()
        if dropped:
            self.logger.info("Queue %s shut down; discarded %d delayed key(s)", self.name, dropped)
