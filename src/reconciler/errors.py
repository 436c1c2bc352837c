"""
Exception hierarchy for the reconciliation scheduler.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import TaskRun


class ReconciliationError(Exception):
    """Base class for reconciliation scheduler errors."""


class DuplicateTaskError(ReconciliationError):
    """Raised when a task id is registered twice. The first registration stays active."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Reconciliation task '{task_id}' is already registered")


class NotFoundError(ReconciliationError, LookupError):
    """Raised for an unknown task id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Reconciliation task '{task_id}' is not registered")


class ExecutionError(ReconciliationError):
    """
    A reconcile call failed.

    Raised to callers of manually triggered runs; cron and startup runs
    record the failure on the TaskRun instead.

    Attributes:
        task_id: Task whose run failed
        cause: Original exception raised by reconcile(), if any
        run: The finalized TaskRun with status=failed
    """

    def __init__(
        self,
        task_id: str,
        message: str,
        cause: BaseException | None = None,
        run: "TaskRun | None" = None,
    ):
        self.task_id = task_id
        self.message = message
        self.cause = cause
        self.run = run
        super().__init__(f"Reconciliation failed for '{task_id}': {message}")


class InvalidRunTransition(ReconciliationError):
    """Raised when a terminal TaskRun would be modified."""


class RunStoreError(ReconciliationError):
    """Raised by run-history stores on persistence failures."""
