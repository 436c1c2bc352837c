"""
Metrics publishing to Prometheus

Usage:
    from opsutils.metrics import MetricsPublisher, TaskRunMetrics

    publisher = MetricsPublisher(port=9091)
    publisher.start()

    run_metrics = TaskRunMetrics()
    run_metrics.record_run("postmark-bounce-sync", trigger="cron", status="succeeded", duration=4.2)
"""

import logging
from collections.abc import Callable
from typing import TypeVar

from prometheus_client import REGISTRY, CollectorRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_or_create_metric(
    metric_factory: Callable[[], T],
    metric_name: str,
    registry: CollectorRegistry = REGISTRY,
) -> T:
    """
    Create a metric, or return the one already registered under ``metric_name``.

    Lets several scheduler instances (tests, a rebuilt singleton) share
    the process-wide registry without "Duplicated timeseries" errors.

    Args:
        metric_factory: Callable that creates the metric (e.g., lambda: Counter(...))
        metric_name: Name of the metric for lookup if already registered
        registry: Prometheus registry to use (default: global REGISTRY)

    Returns:
        The metric instance (either newly created or existing)
    """
    try:
        return metric_factory()
    except ValueError:
        existing = registry._names_to_collectors.get(metric_name)
        if existing is not None:
            return existing
        raise


from .publisher import MetricsPublisher  # noqa: E402
from .task_runs import TaskRunMetrics  # noqa: E402

__all__ = [
    "MetricsPublisher",
    "TaskRunMetrics",
    "get_or_create_metric",
]
