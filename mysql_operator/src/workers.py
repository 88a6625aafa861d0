from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from mysql_operator.src.metrics import METRICS
from mysql_operator.src.reconciler import ReconcileCancelled
from mysql_operator.src.workqueue import RetryQueue

ProcessFn = Callable[[str, threading.Event], None]


class WorkerPool:
    """Fixed number of threads draining a :class:`RetryQueue`.

    Per-key mutual exclusion comes entirely from the queue; workers share no
    other state.  A worker survives every outcome of ``process_fn`` and only
    exits when the queue reports shutdown.
    """

    def __init__(
        self,
        name: str,
        queue: RetryQueue,
        process_fn: ProcessFn,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.queue = queue
        self.process_fn = process_fn
        self.logger = logger or logging.getLogger(__name__)
        self._threads: list[threading.Thread] = []

    def start(self, count: int, stop_event: threading.Event) -> None:
        if count < 1:
            raise ValueError("worker count must be >= 1")
        for index in range(count):
            thread = threading.Thread(
                target=self._work,
                args=(stop_event,),
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        self.logger.info("Started %d %s worker(s)", count, self.name)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every worker to exit; return True if all did."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)
        return not any(thread.is_alive() for thread in self._threads)

    def _work(self, stop_event: threading.Event) -> None:
        while True:
            key, shutting_down = self.queue.get()
            if shutting_down:
                break
            if key is not None:
                self._process(key, stop_event)
        self.logger.debug("Worker %s exited", threading.current_thread().name)

    def _process(self, key: str, stop_event: threading.Event) -> None:
        started = time.monotonic()
        result = "success"
        try:
            self.process_fn(key, stop_event)
        except ReconcileCancelled:
            result = "cancelled"
            self.logger.info("Reconcile of %s cancelled by shutdown", key)
        except Exception:
            result = "error"
            self.logger.exception("Reconcile of %s failed; re-queueing with backoff", key)
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
            METRICS.reconcile_total.labels(controller=self.name, result=result).inc()

        if result == "success":
            self.queue.forget(key)
            self.queue.done(key)
            return

        self.queue.done(key)
        delay = self.queue.add_rate_limited(key)
        if result == "error":
            self.logger.warning(
                "Retrying %s in %.3fs (attempt %d)",
                key,
                delay,
                self.queue.num_requeues(key),
            )
