"""
Single-attempt task execution.

TaskRunner turns one reconcile() call into a persisted TaskRun: the run
is stored as running before the task starts and finalized afterwards,
with metrics and a trace span around it. The runner never raises for a
task failure; the scheduler decides what the caller sees.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from opsutils.logging import ContextLogger
from opsutils.metrics import TaskRunMetrics
from opsutils.tracing import trace_operation

from .models import Summary, TaskRun, Trigger
from .store import RunStore
from .task import ReconcileContext, ReconciliationTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunAttempt:
    """A finalized run plus the exception reconcile() raised, if any."""

    run: TaskRun
    exception: Exception | None = None


def describe_exception(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class TaskRunner:
    """
    Executes reconcile() once and records the outcome

    Args:
        store: Run-history store
        metrics: Task run metrics (default: metrics on the global registry)
    """

    def __init__(self, store: RunStore, metrics: TaskRunMetrics | None = None):
        self.store = store
        self.metrics = metrics or TaskRunMetrics()

    def run(
        self,
        task: ReconciliationTask,
        trigger: Trigger | str,
        triggered_by: str,
        options: dict | None = None,
    ) -> RunAttempt:
        run = TaskRun.begin(task.task_id, trigger, triggered_by)
        log = ContextLogger(
            __name__,
            task_id=run.task_id,
            run_id=run.run_id,
            trigger=run.trigger.value,
        )

        self._persist(self.store.create, run, log)
        self.metrics.run_started(run.task_id)
        log.info(f"Starting reconciliation task '{run.task_id}' ({run.trigger.value} by {run.triggered_by})")

        window_end = datetime.now(UTC)
        context = ReconcileContext(
            run_id=run.run_id,
            task_id=run.task_id,
            trigger=run.trigger,
            triggered_by=run.triggered_by,
            window_start=window_end - timedelta(hours=task.window_hours),
            window_end=window_end,
            options=dict(options or {}),
            logger=ContextLogger(f"reconciler.tasks.{run.task_id}", task_id=run.task_id, run_id=run.run_id),
        )

        start_time = time.monotonic()
        exception = None
        summary = Summary()
        try:
            with trace_operation(
                "reconciliation.task_run",
                task_id=run.task_id,
                run_id=run.run_id,
                trigger=run.trigger.value,
            ) as span:
                summary = task.reconcile(context) or Summary()
                span.set_attribute("reconciliation.scanned", summary.scanned)
                span.set_attribute("reconciliation.corrected", summary.corrected)
        except Exception as e:
            exception = e
            finished = run.fail(describe_exception(e))
            log.exception(f"Reconciliation task '{run.task_id}' failed: {describe_exception(e)}")
        else:
            if summary.has_errors:
                finished = run.fail("; ".join(summary.errors), summary.to_dict())
                log.warning(
                    f"Reconciliation task '{run.task_id}' finished with {len(summary.errors)} error(s)",
                    corrected=summary.corrected,
                )
            else:
                finished = run.succeed(summary.to_dict())
                log.info(
                    f"Reconciliation task '{run.task_id}' succeeded: scanned={summary.scanned}, "
                    f"corrected={summary.corrected}, skipped={summary.skipped}"
                )

        duration = time.monotonic() - start_time
        self._persist(self.store.finalize, finished, log)
        self.metrics.record_run(
            run.task_id,
            trigger=run.trigger.value,
            status=finished.status.value,
            duration=duration,
            corrected=summary.corrected,
        )
        return RunAttempt(run=finished, exception=exception)

    @staticmethod
    def _persist(operation: Callable[[TaskRun], None], run: TaskRun, log: ContextLogger) -> None:
        # Store failures are logged, never raised
        try:
            operation(run)
        except Exception as e:
            log.error(
                f"Failed to persist run {run.run_id} ({run.status.value}): {describe_exception(e)}",
                exc_info=True,
            )
