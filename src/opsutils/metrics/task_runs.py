"""
Metrics for reconciliation task runs.

Tracks run outcomes, durations, in-flight runs, joined requests and the
number of corrections applied, labelled by task id.
"""

import logging
import time

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from . import get_or_create_metric

logger = logging.getLogger(__name__)


class TaskRunMetrics:
    """
    Metrics for reconciliation task runs

    Safe to construct more than once against the same registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize task run metrics

        Args:
            registry: Custom Prometheus registry (default: global REGISTRY)
        """
        self.registry = registry or REGISTRY

        self.runs_total = get_or_create_metric(
            lambda: Counter(
                "reconciliation_task_runs_total",
                "Total number of reconciliation task runs",
                ["task_id", "trigger", "status"],
                registry=self.registry,
            ),
            "reconciliation_task_runs",
            self.registry,
        )

        self.run_duration_seconds = get_or_create_metric(
            lambda: Histogram(
                "reconciliation_task_run_duration_seconds",
                "Duration of reconciliation task runs in seconds",
                ["task_id"],
                buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600, 1800),
                registry=self.registry,
            ),
            "reconciliation_task_run_duration_seconds",
            self.registry,
        )

        self.last_run_timestamp = get_or_create_metric(
            lambda: Gauge(
                "reconciliation_task_last_run_timestamp",
                "Unix timestamp of the last finished run",
                ["task_id", "status"],
                registry=self.registry,
            ),
            "reconciliation_task_last_run_timestamp",
            self.registry,
        )

        self.in_flight = get_or_create_metric(
            lambda: Gauge(
                "reconciliation_task_runs_in_flight",
                "Runs currently executing",
                ["task_id"],
                registry=self.registry,
            ),
            "reconciliation_task_runs_in_flight",
            self.registry,
        )

        self.joined_total = get_or_create_metric(
            lambda: Counter(
                "reconciliation_task_joined_requests_total",
                "Execution requests satisfied by a run already in flight",
                ["task_id", "trigger"],
                registry=self.registry,
            ),
            "reconciliation_task_joined_requests",
            self.registry,
        )

        self.corrections_total = get_or_create_metric(
            lambda: Counter(
                "reconciliation_task_corrections_total",
                "Corrective writes applied by reconciliation tasks",
                ["task_id"],
                registry=self.registry,
            ),
            "reconciliation_task_corrections",
            self.registry,
        )

    def run_started(self, task_id: str) -> None:
        self.in_flight.labels(task_id=task_id).inc()

    def record_run(
        self,
        task_id: str,
        trigger: str,
        status: str,
        duration: float,
        corrected: int = 0,
    ) -> None:
        """
        Record a finished run

        Args:
            task_id: Task that ran
            trigger: startup, cron or manual
            status: succeeded or failed
            duration: Duration in seconds
            corrected: Number of corrective writes applied
        """
        self.in_flight.labels(task_id=task_id).dec()
        self.runs_total.labels(task_id=task_id, trigger=trigger, status=status).inc()
        self.run_duration_seconds.labels(task_id=task_id).observe(duration)
        self.last_run_timestamp.labels(task_id=task_id, status=status).set(time.time())

        if corrected:
            self.corrections_total.labels(task_id=task_id).inc(corrected)

        logger.debug(
            f"Recorded task run: task={task_id}, trigger={trigger}, "
            f"status={status}, duration={duration:.2f}s, corrected={corrected}"
        )

    def record_joined(self, task_id: str, trigger: str) -> None:
        self.joined_total.labels(task_id=task_id, trigger=trigger).inc()
