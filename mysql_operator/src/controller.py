from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from mysql_operator.src.bootstrap import BootstrapManager
from mysql_operator.src.cache import ResourceCache, wait_for_cache_sync
from mysql_operator.src.conditions import ConditionTracker
from mysql_operator.src.config import ControllerConfig
from mysql_operator.src.enqueue import EventEnqueuer
from mysql_operator.src.reconciler import ClusterReconciler
from mysql_operator.src.state import (
    CLUSTER_KIND,
    KIND_CONFIG_MAP,
    KIND_POD_DISRUPTION_BUDGET,
    KIND_SECRET,
    KIND_SERVICE,
    KIND_STATEFUL_SET,
    MANAGED_BY_SELECTOR,
    StateComputer,
)
from mysql_operator.src.workers import WorkerPool
from mysql_operator.src.workqueue import RetryQueue

CLUSTER_CONTROLLER_NAME = "mysqlcluster"

_DEPENDENT_KINDS = (KIND_STATEFUL_SET, KIND_SERVICE, KIND_CONFIG_MAP, KIND_POD_DISRUPTION_BUDGET)


class CacheSyncError(RuntimeError):
    """The stop signal fired before the informer caches finished syncing."""


@dataclass
class Informer:
    """A cache paired with the feed that fills it."""

    cache: ResourceCache
    feed: Any


class Controller:
    """Top-level lifecycle for one reconcile loop.

    ``start`` runs the whole life of the controller on the calling thread:

    1. Ensure the CRD exists (unless no bootstrap manager was given).
    2. Start one feed thread per informer and wait until every cache has
       synced.  If the stop signal fires first, :class:`CacheSyncError`
       is raised and no worker is started.
    3. Start the worker pool and mark the controller ready.
    4. Block until the stop signal fires, then close queue intake, let
       in-flight work finish and join every worker before returning.
    """

    def __init__(
        self,
        name: str,
        queue: RetryQueue,
        informers: list[Informer],
        process_fn: Callable[[str, threading.Event], None],
        bootstrap: BootstrapManager | None = None,
        cache_sync_poll_seconds: float = 0.1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.queue = queue
        self.informers = informers
        self.bootstrap = bootstrap
        self.cache_sync_poll_seconds = cache_sync_poll_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.pool = WorkerPool(name=name, queue=queue, process_fn=process_fn, logger=self.logger)
        self.ready = threading.Event()
        self._feed_threads: list[threading.Thread] = []

    def start(self, workers: int, stop_event: threading.Event) -> None:
        self.logger.info("Starting controller %s", self.name)
        if self.bootstrap is not None:
            self.bootstrap.stop_event = stop_event
            self.bootstrap.ensure()

        for informer in self.informers:
            thread = threading.Thread(
                target=informer.feed.run,
                args=(informer.cache, stop_event),
                name=f"{self.name}-feed-{informer.cache.kind}",
                daemon=True,
            )
            self._feed_threads.append(thread)
            thread.start()

        try:
            if not wait_for_cache_sync(
                stop_event,
                [informer.cache for informer in self.informers],
                poll_seconds=self.cache_sync_poll_seconds,
            ):
                raise CacheSyncError(f"{self.name}: stopped before caches synced")
            self.logger.info("Caches for %s synced", self.name)

            self.pool.start(workers, stop_event)
            self.ready.set()
            stop_event.wait()
            self.logger.info("Shutting down controller %s", self.name)
        finally:
            self.ready.clear()
            self.queue.shut_down()
            for informer in self.informers:
                informer.feed.request_stop()

        self.logger.debug("Waiting for %s workers to exit", self.name)
        self.pool.join()
        self.logger.info("Controller %s stopped", self.name)


@dataclass(frozen=True)
class ControllerContext:
    """Everything a controller factory needs, built once at startup and passed down.

    ``store`` must offer the :class:`~mysql_operator.src.kube.ObjectStore`
    methods including ``feed(kind, namespace, label_selector)``.
    """

    config: ControllerConfig
    store: Any
    apiextensions_api: Any = None
    state_computer: StateComputer = field(default_factory=StateComputer)
    condition_tracker: ConditionTracker = field(default_factory=ConditionTracker)


ControllerFactory = Callable[[ControllerContext], Controller]


def new_cluster_controller(context: ControllerContext) -> Controller:
    """Wire the ``MysqlCluster`` controller: caches, enqueuer, queue, reconciler."""
    cfg = context.config
    queue = RetryQueue(
        name=CLUSTER_CONTROLLER_NAME,
        base_delay_seconds=cfg.queue_base_delay_seconds,
        max_delay_seconds=cfg.queue_max_delay_seconds,
    )
    cluster_cache = ResourceCache(CLUSTER_KIND)
    enqueuer = EventEnqueuer(queue=queue, cluster_cache=cluster_cache)
    cluster_cache.add_handler(enqueuer.on_cluster_event)

    informers = [Informer(cache=cluster_cache, feed=context.store.feed(CLUSTER_KIND, cfg.namespace))]
    for kind in _DEPENDENT_KINDS:
        cache = ResourceCache(kind)
        cache.add_handler(enqueuer.on_dependent_event)
        informers.append(
            Informer(cache=cache, feed=context.store.feed(kind, cfg.namespace, MANAGED_BY_SELECTOR))
        )
    secret_cache = ResourceCache(KIND_SECRET)
    secret_cache.add_handler(enqueuer.on_secret_event)
    informers.append(Informer(cache=secret_cache, feed=context.store.feed(KIND_SECRET, cfg.namespace)))

    reconciler = ClusterReconciler(
        store=context.store,
        cluster_cache=cluster_cache,
        state_computer=context.state_computer,
        condition_tracker=context.condition_tracker,
    )

    bootstrap = None
    if not cfg.skip_crd_bootstrap:
        if context.apiextensions_api is None:
            raise ValueError("apiextensions_api is required unless CRD bootstrap is skipped")
        bootstrap = BootstrapManager(
            apiextensions_api=context.apiextensions_api,
            attempts=cfg.crd_ready_attempts,
            interval_seconds=cfg.crd_ready_interval_seconds,
        )

    return Controller(
        name=CLUSTER_CONTROLLER_NAME,
        queue=queue,
        informers=informers,
        process_fn=reconciler.process_key,
        bootstrap=bootstrap,
    )


def default_factories() -> dict[str, ControllerFactory]:
    """Return a fresh map of every controller this process knows how to run."""
    return {CLUSTER_CONTROLLER_NAME: new_cluster_controller}


def build_controllers(
    context: ControllerContext,
    factories: Mapping[str, ControllerFactory] | None = None,
) -> dict[str, Controller]:
    """Instantiate each factory exactly once against *context*."""
    selected = factories if factories is not None else default_factories()
    return {name: factory(context) for name, factory in selected.items()}


def run_controllers(
    controllers: Mapping[str, Controller],
    workers: int,
    stop_event: threading.Event,
    logger: logging.Logger | None = None,
) -> bool:
    """Run every controller on its own thread until *stop_event* fires.

    A controller that fails to start raises the stop event so the process
    shuts down as a whole.  Returns True when every controller exited
    cleanly.
    """
    log = logger or logging.getLogger(__name__)
    failures: list[str] = []
    failures_lock = threading.Lock()

    def _run(name: str, controller: Controller) -> None:
        try:
            controller.start(workers, stop_event)
        except Exception:
            log.exception("Controller %s failed", name)
            with failures_lock:
                failures.append(name)
            stop_event.set()

    threads = [
        threading.Thread(target=_run, args=(name, controller), name=f"controller-{name}")
        for name, controller in controllers.items()
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return not failures
