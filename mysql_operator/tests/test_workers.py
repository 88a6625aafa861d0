from __future__ import annotations

import threading
import time
from collections import Counter

import pytest

from mysql_operator.src.reconciler import ReconcileCancelled, SyncError
from mysql_operator.src.workers import WorkerPool
from mysql_operator.src.workqueue import RetryQueue

from mysql_operator.tests.fakes import wait_for


def _queue() -> RetryQueue:
    return RetryQueue(name="workers-test", base_delay_seconds=0.01, max_delay_seconds=0.05)


def test_same_key_is_never_processed_concurrently() -> None:
    queue = _queue()
    lock = threading.Lock()
    active: Counter[str] = Counter()
    overlaps: list[str] = []
    processed: Counter[str] = Counter()

    def process(key: str, stop_event: threading.Event) -> None:
        with lock:
            active[key] += 1
            if active[key] > 1:
                overlaps.append(key)
        time.sleep(0.005)
        with lock:
            active[key] -= 1
            processed[key] += 1

    pool = WorkerPool("test", queue, process)
    stop = threading.Event()
    pool.start(4, stop)

    for _ in range(20):
        for key in ("default/a", "default/b"):
            queue.add(key)
        time.sleep(0.002)

    assert wait_for(lambda: len(queue) == 0 and sum(active.values()) == 0)
    queue.shut_down()
    assert pool.join(timeout=2)

    assert overlaps == []
    assert processed["default/a"] >= 1
    assert processed["default/b"] >= 1


def test_failures_are_retried_with_backoff_until_success() -> None:
    queue = _queue()
    attempts: list[float] = []

    def process(key: str, stop_event: threading.Event) -> None:
        attempts.append(time.monotonic())
        if len(attempts) < 3:
            raise SyncError("StatefulSet", key, "not yet")

    pool = WorkerPool("test", queue, process)
    pool.start(1, threading.Event())
    queue.add("default/a")

    assert wait_for(lambda: len(attempts) == 3)
    assert wait_for(lambda: queue.num_requeues("default/a") == 0)
    queue.shut_down()
    assert pool.join(timeout=2)

    assert attempts[1] - attempts[0] >= 0.009
    assert attempts[2] - attempts[1] >= 0.019


def test_unexpected_exceptions_do_not_kill_the_worker() -> None:
    queue = _queue()
    seen: list[str] = []

    def process(key: str, stop_event: threading.Event) -> None:
        seen.append(key)
        if key == "default/bad":
            raise KeyError("boom")

    pool = WorkerPool("test", queue, process)
    pool.start(1, threading.Event())
    queue.add("default/bad")
    queue.add("default/good")

    assert wait_for(lambda: "default/good" in seen)
    queue.shut_down()
    assert pool.join(timeout=2)


def test_cancelled_reconcile_is_requeued() -> None:
    queue = _queue()

    def process(key: str, stop_event: threading.Event) -> None:
        raise ReconcileCancelled("stopping")

    pool = WorkerPool("test", queue, process)
    pool.start(1, threading.Event())
    queue.add("default/a")

    assert wait_for(lambda: queue.num_requeues("default/a") >= 1)
    queue.shut_down()
    assert pool.join(timeout=2)


def test_workers_exit_on_queue_shutdown() -> None:
    queue = _queue()
    pool = WorkerPool("test", queue, lambda key, stop_event: None)
    pool.start(3, threading.Event())

    queue.shut_down()

    assert pool.join(timeout=2)


def test_worker_count_must_be_positive() -> None:
    pool = WorkerPool("test", _queue(), lambda key, stop_event: None)

    with pytest.raises(ValueError):
        pool.start(0, threading.Event())
