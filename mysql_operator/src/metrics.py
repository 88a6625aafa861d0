from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics carry a ``queue`` label and reconcile metrics a
    ``controller`` label so several controllers can share one process.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "mysql_operator_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["queue"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "mysql_operator_workqueue_adds_total",
            "Total keys added to the work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "mysql_operator_workqueue_retries_total",
            "Total rate-limited re-adds after a failed reconcile",
            ["queue"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "mysql_operator_reconcile_total",
            "Total reconcile attempts by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "mysql_operator_reconcile_duration_seconds",
            "Seconds spent reconciling a single key",
            ["controller"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "mysql_operator_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "mysql_operator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    cache_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "mysql_operator_cache_objects",
            "Objects currently held in the local cache",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "mysql_operator",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
