"""
File-backed run store.

Keeps one JSON document per run under ``state_dir/<task_id>/<run_id>.json``,
rewritten in place when the run is finalized.
"""

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path

from ..errors import RunStoreError
from ..models import TaskRun
from .base import RunStore

logger = logging.getLogger(__name__)


class JsonFileRunStore(RunStore):
    """
    Run history as JSON files

    Suitable for a single host; the directory can be inspected or shipped
    with ordinary tools.
    """

    def __init__(self, state_dir: str = "./reconciliation_state/runs"):
        """
        Args:
            state_dir: Directory to store run files
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized run store with state dir: {self.state_dir}")

    def create(self, run: TaskRun) -> None:
        with self._lock:
            self._write(run)

    def finalize(self, run: TaskRun) -> None:
        with self._lock:
            self.check_finalizable(self._read(self._run_file(run.task_id, run.run_id)), run)
            self._write(run)

    def get(self, run_id: str) -> TaskRun | None:
        for run_file in self.state_dir.glob(f"*/{run_id}.json"):
            return self._read(run_file)
        return None

    def list_runs(self, task_id: str | None = None, limit: int = 50) -> list[TaskRun]:
        pattern = f"{self._safe_name(task_id)}/*.json" if task_id else "*/*.json"
        runs = []
        for run_file in self.state_dir.glob(pattern):
            run = self._read(run_file)
            if run is not None:
                runs.append(run)
        runs.sort(key=lambda run: run.started_at, reverse=True)
        return runs[:limit]

    def _write(self, run: TaskRun) -> None:
        target = self._run_file(run.task_id, run.run_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Write to a temp file and rename so readers never see half a document
            fd, tmp_path = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(run.to_dict(), f, indent=2)
            os.replace(tmp_path, target)
        except OSError as e:
            raise RunStoreError(f"Failed to write run {run.run_id}: {e}") from e

    def _read(self, run_file: Path) -> TaskRun | None:
        if not run_file.exists():
            return None
        try:
            with open(run_file) as f:
                return TaskRun.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Skipping unreadable run file {run_file}: {e}")
            return None

    def _run_file(self, task_id: str, run_id: str) -> Path:
        return self.state_dir / self._safe_name(task_id) / f"{run_id}.json"

    @staticmethod
    def _safe_name(task_id: str) -> str:
        return re.sub(r'[/\\:*?"<>|]', '_', task_id)
