"""In-memory run store, the default for tests and single-process deployments."""

import threading

from ..models import TaskRun
from .base import RunStore


class InMemoryRunStore(RunStore):
    def __init__(self):
        self._runs: dict[str, TaskRun] = {}
        self._lock = threading.Lock()

    def create(self, run: TaskRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run

    def finalize(self, run: TaskRun) -> None:
        with self._lock:
            self.check_finalizable(self._runs.get(run.run_id), run)
            self._runs[run.run_id] = run

    def get(self, run_id: str) -> TaskRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self, task_id: str | None = None, limit: int = 50) -> list[TaskRun]:
        with self._lock:
            runs = [
                run for run in self._runs.values()
                if task_id is None or run.task_id == task_id
            ]
        runs.sort(key=lambda run: run.started_at, reverse=True)
        return runs[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
