"""
Reconciliation task contract.

Each integration (e.g. an email-delivery provider) subclasses
ReconciliationTask and implements reconcile(). Implementations must be
idempotent: the scheduler runs them at least once per tick, and the next
tick is the retry after a partial failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opsutils.logging import ContextLogger

from .models import SYSTEM_ACTOR, Summary, Trigger
from .schedule import Schedule

DEFAULT_WINDOW_HOURS = 72


@dataclass(frozen=True)
class TaskDefinition:
    """Registration-time description of a task. Immutable for the process lifetime."""

    task_id: str
    display_name: str
    schedule: Schedule
    enabled: bool = True
    description: str = ""
    window_hours: int = DEFAULT_WINDOW_HOURS


@dataclass(frozen=True)
class ReconcileContext:
    """Everything a reconcile() call gets from the runner."""

    run_id: str
    task_id: str
    trigger: Trigger
    window_start: datetime
    window_end: datetime
    triggered_by: str = SYSTEM_ACTOR
    options: dict[str, Any] = field(default_factory=dict)
    logger: ContextLogger | None = None

    @property
    def log(self) -> ContextLogger:
        if self.logger is not None:
            return self.logger
        return ContextLogger(f"reconciler.tasks.{self.task_id}", task_id=self.task_id, run_id=self.run_id)


class ReconciliationTask(ABC):
    """
    Base class for reconciliation tasks

    Subclasses set ``task_id``, ``display_name`` and usually
    ``default_schedule``; any of schedule, enabled and window can be
    overridden per instance from configuration.
    """

    task_id: str = ""
    display_name: str = ""
    description: str = ""
    default_schedule: Schedule = Schedule.cron("0 */6 * * *")
    default_window_hours: int = DEFAULT_WINDOW_HOURS

    def __init__(
        self,
        schedule: Schedule | None = None,
        enabled: bool = True,
        window_hours: int | None = None,
    ):
        if not self.task_id:
            raise ValueError(f"{type(self).__name__} must define task_id")
        self._definition = TaskDefinition(
            task_id=self.task_id,
            display_name=self.display_name or self.task_id,
            description=self.description,
            schedule=schedule or self.default_schedule,
            enabled=enabled,
            window_hours=window_hours if window_hours is not None else self.default_window_hours,
        )

    @property
    def definition(self) -> TaskDefinition:
        return self._definition

    @property
    def schedule(self) -> Schedule:
        return self._definition.schedule

    @property
    def enabled(self) -> bool:
        return self._definition.enabled

    @property
    def window_hours(self) -> int:
        return self._definition.window_hours

    @abstractmethod
    def reconcile(self, context: ReconcileContext) -> Summary:
        """
        Diff a recent window of external state against local state and correct drift

        Must be safe to call again right after a failed or partial call
        without double-applying corrections.

        Args:
            context: Run identity, trigger and the time window to inspect

        Returns:
            Summary with scanned/corrected/skipped counts
        """

    def validate_config(self) -> list[str]:
        """Return configuration problems, empty when the task can run."""
        return []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.task_id!r} schedule={self.schedule}>"
