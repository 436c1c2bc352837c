"""
Data model for reconciliation task runs.

TaskRun objects are immutable: state changes produce a new object via
succeed() or fail(), and a terminal run refuses further transitions.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import InvalidRunTransition

SYSTEM_ACTOR = "system"

# Discrepancy samples kept in a persisted summary
MAX_DISCREPANCY_SAMPLES = 50


class Trigger(str, Enum):
    """Why a task execution started."""

    STARTUP = "startup"
    CRON = "cron"
    MANUAL = "manual"

    @classmethod
    def coerce(cls, value: "Trigger | str") -> "Trigger":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise ValueError(f"Invalid trigger '{value}' (expected one of: {allowed})") from None


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


@dataclass(frozen=True)
class Discrepancy:
    """One local record whose state disagrees with the external system."""

    record_id: str
    field_name: str
    expected: Any  # value reported by the external system
    observed: Any  # value stored locally before correction
    action: str  # backfill, update_status

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "field": self.field_name,
            "expected": self.expected,
            "observed": self.observed,
            "action": self.action,
        }


@dataclass
class Summary:
    """
    Counts reported by a reconcile() call.

    ``errors`` collects non-fatal step failures; a summary carrying
    errors finalizes its run as failed while keeping the counts.
    """

    scanned: int = 0
    corrected: int = 0
    skipped: int = 0
    backfilled: int = 0
    errors: list[str] = field(default_factory=list)
    discrepancies: list[Discrepancy] = field(default_factory=list)

    def record(self, discrepancy: Discrepancy) -> None:
        """Count a corrective write."""
        self.discrepancies.append(discrepancy)
        if discrepancy.action == "backfill":
            self.backfilled += 1
        self.corrected += 1

    def merge(self, other: "Summary") -> "Summary":
        return Summary(
            scanned=self.scanned + other.scanned,
            corrected=self.corrected + other.corrected,
            skipped=self.skipped + other.skipped,
            backfilled=self.backfilled + other.backfilled,
            errors=self.errors + other.errors,
            discrepancies=self.discrepancies + other.discrepancies,
        )

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "corrected": self.corrected,
            "skipped": self.skipped,
            "backfilled": self.backfilled,
            "errors": list(self.errors),
            "discrepancies": [
                d.to_dict() for d in self.discrepancies[:MAX_DISCREPANCY_SAMPLES]
            ],
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class TaskRun:
    """One recorded execution attempt of a task."""

    task_id: str
    trigger: Trigger
    triggered_by: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def begin(cls, task_id: str, trigger: Trigger | str, triggered_by: str) -> "TaskRun":
        return cls(
            task_id=task_id,
            trigger=Trigger.coerce(trigger),
            triggered_by=triggered_by or SYSTEM_ACTOR,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def _finish(self, status: RunStatus, summary: dict[str, Any], error: str | None) -> "TaskRun":
        if self.is_terminal:
            raise InvalidRunTransition(
                f"Run {self.run_id} of '{self.task_id}' is already {self.status.value}"
            )
        return replace(
            self,
            status=status,
            finished_at=_utcnow(),
            summary=summary,
            error=error,
        )

    def succeed(self, summary: dict[str, Any] | None = None) -> "TaskRun":
        return self._finish(RunStatus.SUCCEEDED, summary or {}, None)

    def fail(self, error: str, summary: dict[str, Any] | None = None) -> "TaskRun":
        return self._finish(RunStatus.FAILED, summary or {}, error or "unknown error")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "trigger": self.trigger.value,
            "triggered_by": self.triggered_by,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status.value,
            "summary": self.summary,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRun":
        return cls(
            run_id=data["run_id"],
            task_id=data["task_id"],
            trigger=Trigger(data["trigger"]),
            triggered_by=data["triggered_by"],
            started_at=_parse_datetime(data["started_at"]),
            finished_at=_parse_datetime(data.get("finished_at")),
            status=RunStatus(data["status"]),
            summary=data.get("summary") or {},
            error=data.get("error"),
        )


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    Result of an execute_task() call.

    ``joined`` is True when the request was satisfied by a run that was
    already in flight instead of starting a new one.
    """

    run: TaskRun
    joined: bool = False

    @property
    def succeeded(self) -> bool:
        return self.run.status is RunStatus.SUCCEEDED
