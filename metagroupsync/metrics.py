"""Prometheus metrics collection and export.

This module provides Prometheus instrumentation for link reconciliation,
covering runs, the operations they perform, per-record errors and the
incremental (event-driven) path.

Metric Types:
    Counters (always increase):
        - reconcile_runs_total: Reconciliation runs by status
        - reconcile_operations_total: Operations performed by name
        - reconcile_errors_total: Per-record failures by stage
        - lost_links_handled_total: Lost links handled by disposition
        - incremental_syncs_total: Single-user syncs by outcome

    Gauges (can go up or down):
        - links_total: Links by lifecycle status
        - last_successful_run_timestamp: Completion time of the last good run

    Histograms (track distributions):
        - reconcile_duration_seconds: Duration of reconciliation runs

Usage:
    ```python
    from metagroupsync.metrics import record_report

    report = engine.reconcile(course_id=20)
    record_report(report, status="success")
    ```
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

if TYPE_CHECKING:
    from metagroupsync.models import ReconcileReport

from metagroupsync.logging import logger

# Custom registry for explicit metric control
registry = CollectorRegistry()

# Reconciliation runs range from milliseconds (one small course) to minutes
RUN_DURATION_BUCKETS = (
    0.05,   # 50ms
    0.1,    # 100ms
    0.5,    # 500ms
    1.0,    # 1s
    5.0,    # 5s
    15.0,   # 15s
    60.0,   # 1m
    300.0,  # 5m
    900.0,  # 15m
)


# ========== COUNTER METRICS ==========

reconcile_runs_total = Counter(
    "reconcile_runs_total",
    "Total number of reconciliation runs",
    labelnames=["status"],
    registry=registry,
)
"""Counter for reconciliation runs.

Labels:
    status: Run status ("success", "error", "disabled")
"""

reconcile_operations_total = Counter(
    "reconcile_operations_total",
    "Total number of operations performed by reconciliation",
    labelnames=["operation"],
    registry=registry,
)
"""Counter for operations (enrolled, suspended, roles_assigned, ...)."""

reconcile_errors_total = Counter(
    "reconcile_errors_total",
    "Total number of per-record failures caught during reconciliation",
    labelnames=["stage"],
    registry=registry,
)

lost_links_handled_total = Counter(
    "lost_links_handled_total",
    "Total number of lost links handled",
    labelnames=["action"],
    registry=registry,
)

incremental_syncs_total = Counter(
    "incremental_syncs_total",
    "Total number of single-user incremental syncs",
    labelnames=["outcome"],
    registry=registry,
)
"""Counter for incremental syncs.

Labels:
    outcome: "synced", "skipped_reentrant", "disabled" or "error"
"""


# ========== GAUGE METRICS ==========

links_total = Gauge(
    "links_total",
    "Current number of links",
    labelnames=["status"],
    registry=registry,
)

last_successful_run_timestamp = Gauge(
    "last_successful_run_timestamp",
    "Unix timestamp of the last successful reconciliation run",
    registry=registry,
)


# ========== HISTOGRAM METRICS ==========

reconcile_duration_seconds = Histogram(
    "reconcile_duration_seconds",
    "Duration of reconciliation runs in seconds",
    buckets=RUN_DURATION_BUCKETS,
    registry=registry,
)


# ========== HELPER FUNCTIONS ==========


def record_report(report: ReconcileReport, status: str = "success") -> None:
    """Fold a finished run's report into the metrics.

    Args:
        report: Report produced by the run
        status: Run status label
    """
    reconcile_runs_total.labels(status=status).inc()
    reconcile_duration_seconds.observe(report.duration_seconds)
    for operation, count in report.operations.items():
        if count:
            reconcile_operations_total.labels(operation=operation).inc(count)
    if status == "success":
        last_successful_run_timestamp.set(time.time())


def set_link_counts(counts: dict[str, int]) -> None:
    """Set the links_total gauge from a status -> count mapping."""
    for status, count in counts.items():
        links_total.labels(status=status).set(count)


def generate_metrics_output() -> bytes:
    """Generate Prometheus text exposition format output.

    Returns:
        Bytes containing all metrics in Prometheus format

    Example:
        ```python
        from metagroupsync.metrics import generate_metrics_output

        print(generate_metrics_output().decode("utf-8"))
        ```
    """
    return generate_latest(registry)


def reset_metrics() -> None:
    """Reset all metrics to initial state.

    WARNING: This is primarily for testing. In production, metrics should
    never be reset as it breaks Prometheus's ability to calculate rates.
    """
    logger.warning("⚠️ Resetting all Prometheus metrics (should only be used in tests)")
    for collector in list(registry._collector_to_names.keys()):
        if hasattr(collector, "_metrics"):
            collector._metrics.clear()
        elif hasattr(collector, "_value"):
            collector._value.set(0)


__all__ = [
    "registry",
    "reconcile_runs_total",
    "reconcile_operations_total",
    "reconcile_errors_total",
    "lost_links_handled_total",
    "incremental_syncs_total",
    "links_total",
    "last_successful_run_timestamp",
    "reconcile_duration_seconds",
    "record_report",
    "set_link_counts",
    "generate_metrics_output",
    "reset_metrics",
]
