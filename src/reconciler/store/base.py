"""
Run-history store interface.

The runner writes a TaskRun twice: once when it starts (status=running,
so a crash mid-run stays visible) and once when it reaches a terminal
status. Records are never deleted here.
"""

from abc import ABC, abstractmethod

from ..errors import InvalidRunTransition
from ..models import RunStatus, TaskRun


class RunStore(ABC):
    """Persistence for TaskRun records."""

    @abstractmethod
    def create(self, run: TaskRun) -> None:
        """Persist a newly started run."""

    @abstractmethod
    def finalize(self, run: TaskRun) -> None:
        """
        Persist the terminal state of a run

        Raises:
            InvalidRunTransition: If the stored run is already terminal
        """

    @abstractmethod
    def get(self, run_id: str) -> TaskRun | None:
        """Fetch a single run by id."""

    @abstractmethod
    def list_runs(self, task_id: str | None = None, limit: int = 50) -> list[TaskRun]:
        """Runs ordered newest first, optionally for one task."""

    def latest(self, task_id: str) -> TaskRun | None:
        runs = self.list_runs(task_id=task_id, limit=1)
        return runs[0] if runs else None

    def running(self, task_id: str | None = None) -> list[TaskRun]:
        """Runs still marked running (in flight, or orphaned by a crash)."""
        return [
            run for run in self.list_runs(task_id=task_id, limit=1000)
            if run.status is RunStatus.RUNNING
        ]

    @staticmethod
    def check_finalizable(stored: TaskRun | None, run: TaskRun) -> None:
        """Shared precondition for finalize()."""
        if not run.is_terminal:
            raise InvalidRunTransition(f"Run {run.run_id} is not terminal")
        if stored is not None and stored.is_terminal:
            raise InvalidRunTransition(
                f"Run {run.run_id} of '{run.task_id}' was already finalized "
                f"as {stored.status.value}"
            )
