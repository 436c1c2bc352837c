"""
Process-wide catalog of reconciliation tasks.

Registration normally happens during bootstrap, but the scheduler reads
the catalog from timer and worker threads, so every operation holds the
registry lock.
"""

import logging
import threading
from collections.abc import Iterator

from .errors import DuplicateTaskError, NotFoundError
from .task import ReconciliationTask

logger = logging.getLogger(__name__)


class TaskRegistry:
    """
    Task implementations keyed by task id

    Iteration and get_all() follow registration order, which fixes the
    order of the startup pass.
    """

    def __init__(self):
        self._tasks: dict[str, ReconciliationTask] = {}
        self._lock = threading.Lock()

    def register(self, task: ReconciliationTask) -> None:
        """
        Add a task under its id

        Raises:
            DuplicateTaskError: If the id is already registered; the
                existing registration is left untouched
        """
        with self._lock:
            if task.task_id in self._tasks:
                raise DuplicateTaskError(task.task_id)
            self._tasks[task.task_id] = task
        logger.info(f"Registered reconciliation task '{task.task_id}' ({task.schedule})")

    def get(self, task_id: str) -> ReconciliationTask:
        """
        Raises:
            NotFoundError: If no task is registered under task_id
        """
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    def get_all(self) -> list[ReconciliationTask]:
        with self._lock:
            return list(self._tasks.values())

    def has(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def unregister(self, task_id: str) -> bool:
        with self._lock:
            removed = self._tasks.pop(task_id, None) is not None
        if removed:
            logger.info(f"Unregistered reconciliation task '{task_id}'")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._tasks.clear()

    def __contains__(self, task_id: object) -> bool:
        return self.has(task_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __iter__(self) -> Iterator[ReconciliationTask]:
        return iter(self.get_all())
