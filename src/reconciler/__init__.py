"""
Reconciliation scheduler

Periodically re-checks local records against external systems of record
(e.g. an email-delivery provider) and corrects drift caused by missed
webhook deliveries.

Main components:
- registry: Process catalog of reconciliation tasks
- scheduler: Singleton that arms recurring jobs and runs tasks with
  at most one in-flight run per task
- runner: Executes one attempt and records it as a TaskRun
- store: Run-history persistence (memory, JSON files, PostgreSQL)
- lifecycle: One-shot process initialization (bootstrap/shutdown)
- tasks: Built-in tasks (Postmark bounce sync)

Usage:
    from reconciler import bootstrap

    result = bootstrap()
    result.scheduler.execute_task("postmark-bounce-sync", "manual", "admin@example.com")
"""

from .lifecycle import BootstrapResult, bootstrap, shutdown
from .errors import (
    DuplicateTaskError,
    ExecutionError,
    InvalidRunTransition,
    NotFoundError,
    ReconciliationError,
    RunStoreError,
)
from .models import SYSTEM_ACTOR, Discrepancy, ExecutionOutcome, RunStatus, Summary, TaskRun, Trigger
from .registry import TaskRegistry
from .schedule import Schedule
from .scheduler import ReconciliationScheduler
from .task import ReconcileContext, ReconciliationTask, TaskDefinition

__version__ = "1.0.0"

__all__ = [
    "bootstrap",
    "shutdown",
    "BootstrapResult",
    "ReconciliationScheduler",
    "TaskRegistry",
    "ReconciliationTask",
    "ReconcileContext",
    "TaskDefinition",
    "Schedule",
    "TaskRun",
    "Trigger",
    "RunStatus",
    "Summary",
    "Discrepancy",
    "ExecutionOutcome",
    "SYSTEM_ACTOR",
    "ReconciliationError",
    "DuplicateTaskError",
    "NotFoundError",
    "ExecutionError",
    "InvalidRunTransition",
    "RunStoreError",
]
