"""
APScheduler-based reconciliation scheduler.

This module provides the ReconciliationScheduler class, which arms one
recurring job per enabled task and is the single entry point for running
a task (timer ticks, the startup pass and manual triggers alike).

At most one run per task id is in flight at a time: a request that
arrives while a run is executing waits for that run and receives its
TaskRun instead of starting a second one.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

from opsutils.metrics import TaskRunMetrics

from .errors import ExecutionError
from .models import SYSTEM_ACTOR, ExecutionOutcome, RunStatus, Trigger
from .process_state import process_state
from .registry import TaskRegistry
from .runner import RunAttempt, TaskRunner
from .store import InMemoryRunStore, RunStore
from .task import ReconciliationTask

logger = logging.getLogger(__name__)

_state = process_state()


class ReconciliationScheduler:
    """
    Scheduler for reconciliation tasks

    Usually obtained through get_instance(); direct construction is
    meant for tests and embedding.

    Args:
        registry: Task catalog (default: a new empty registry)
        runner: Executes single attempts (default: built from run_store)
        run_store: Run history used when no runner is given (default: in-memory)
        backend: APScheduler scheduler (default: BackgroundScheduler, rebuilt
            after each stop(); an injected backend cannot be restarted)
        timezone: Timezone for cron schedules
        startup_workers: Worker threads for submit_task()
        metrics: Task run metrics used when no runner is given
    """

    def __init__(
        self,
        registry: TaskRegistry | None = None,
        runner: TaskRunner | None = None,
        run_store: RunStore | None = None,
        backend: BaseScheduler | None = None,
        timezone: str = "UTC",
        startup_workers: int = 4,
        metrics: TaskRunMetrics | None = None,
    ):
        self.registry = registry if registry is not None else TaskRegistry()
        self.runner = runner or TaskRunner(
            run_store if run_store is not None else InMemoryRunStore(),
            metrics=metrics,
        )
        self.timezone = timezone
        self._owns_backend = backend is None
        self.scheduler = backend if backend is not None else self._new_backend()

        self._executor = ThreadPoolExecutor(
            max_workers=startup_workers,
            thread_name_prefix="reconciler",
        )
        self._in_flight: dict[str, Future] = {}
        self._in_flight_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._running = False

    # ------------------------------------------------------------------
    # Singleton
    # ------------------------------------------------------------------

    @classmethod
    def get_instance(cls, **kwargs: Any) -> "ReconciliationScheduler":
        """
        Return the process-wide scheduler, creating it on first call

        Keyword arguments are passed to the constructor on the first call
        only and ignored afterwards. The instance is kept in the process
        state holder, so a reload of this module still finds it.
        """
        instance = _state.scheduler
        if instance is None:
            with _state.scheduler_lock:
                if _state.scheduler is None:
                    _state.scheduler = cls(**kwargs)
                    logger.info("Created reconciliation scheduler instance")
                instance = _state.scheduler
        return instance

    @classmethod
    def has_instance(cls) -> bool:
        return _state.scheduler is not None

    @classmethod
    def reset_instance(cls) -> None:
        """Stop and discard the process-wide scheduler."""
        with _state.scheduler_lock:
            instance, _state.scheduler = _state.scheduler, None
        if instance is not None:
            instance.stop()
            instance._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def store(self) -> RunStore:
        return self.runner.store

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Arm one job per enabled task and start the backend

        Calling start() on a running scheduler does nothing.
        """
        with self._lifecycle_lock:
            if self._running:
                logger.info("Reconciliation scheduler already running, ignoring start()")
                return

            logger.info("Starting reconciliation scheduler...")
            armed = 0
            for task in self.registry.get_all():
                if not task.enabled:
                    logger.info(f"Task '{task.task_id}' is disabled, not scheduling")
                    continue
                try:
                    self._arm(task)
                    armed += 1
                except Exception as e:
                    logger.error(f"Failed to schedule task '{task.task_id}': {e}", exc_info=True)

            self.scheduler.start()
            self._running = True
            logger.info(f"Scheduled {armed} job(s)")

    def stop(self) -> None:
        """
        Remove all jobs and shut the backend down

        Runs already executing are left to finish. An APScheduler backend
        cannot be started again once shut down, so an owned backend is
        replaced with a fresh one and start() works after stop().
        """
        with self._lifecycle_lock:
            if not self._running:
                return
            self.scheduler.remove_all_jobs()
            self.scheduler.shutdown(wait=False)
            if self._owns_backend:
                self.scheduler = self._new_backend()
            self._running = False
            logger.info("Reconciliation scheduler stopped")

    # ------------------------------------------------------------------
    # Job management
    # ------------------------------------------------------------------

    def _new_backend(self) -> BackgroundScheduler:
        return BackgroundScheduler(timezone=self.timezone)

    def _arm(self, task: ReconciliationTask) -> None:
        self.scheduler.add_job(
            self._run_scheduled_task,
            trigger=task.schedule.to_trigger(self.timezone),
            args=[task.task_id],
            id=task.task_id,
            name=task.display_name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"Scheduled task '{task.task_id}' {task.schedule}")

    def schedule_task(self, task_id: str) -> bool:
        """
        Arm (or re-arm) the job for one registered task

        Returns:
            False if the task is disabled

        Raises:
            NotFoundError: If task_id is not registered
        """
        task = self.registry.get(task_id)
        if not task.enabled:
            logger.warning(f"Task '{task_id}' is disabled, not scheduling")
            return False
        self._arm(task)
        return True

    def stop_task(self, task_id: str) -> bool:
        """Remove the job for one task; returns False if it was not scheduled."""
        try:
            self.scheduler.remove_job(task_id)
        except JobLookupError:
            return False
        logger.info(f"Removed job '{task_id}'")
        return True

    def restart_task(self, task_id: str) -> bool:
        self.stop_task(task_id)
        return self.schedule_task(task_id)

    def is_task_scheduled(self, task_id: str) -> bool:
        return self.scheduler.get_job(task_id) is not None

    def get_task_schedule(self, task_id: str) -> dict[str, Any] | None:
        job = self.scheduler.get_job(task_id)
        return _job_info(job) if job is not None else None

    def list_jobs(self) -> list[dict[str, Any]]:
        """
        List all scheduled jobs

        Returns:
            List of job information dictionaries
        """
        return [_job_info(job) for job in self.scheduler.get_jobs()]

    def get_status(self) -> dict[str, Any]:
        with self._in_flight_lock:
            in_flight = sorted(self._in_flight)

        tasks = []
        for task in self.registry.get_all():
            job = self.scheduler.get_job(task.task_id)
            next_run_time = getattr(job, "next_run_time", None) if job else None
            tasks.append({
                "task_id": task.task_id,
                "display_name": task.definition.display_name,
                "enabled": task.enabled,
                "schedule": str(task.schedule),
                "scheduled": job is not None,
                "next_run_time": next_run_time.isoformat() if next_run_time else None,
                "in_flight": task.task_id in in_flight,
            })

        return {
            "running": self._running,
            "timezone": self.timezone,
            "in_flight": in_flight,
            "tasks": tasks,
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_task(
        self,
        task_id: str,
        trigger: Trigger | str,
        triggered_by: str = SYSTEM_ACTOR,
    ) -> ExecutionOutcome:
        """
        Run a task now, or join the run already in flight for it

        Args:
            task_id: Registered task id
            trigger: startup, cron or manual
            triggered_by: User id, or "system"

        Returns:
            ExecutionOutcome with the finalized TaskRun; ``joined`` is True
            when another caller's run was reused

        Raises:
            NotFoundError: If task_id is not registered
            ValueError: If trigger is not a known trigger
            ExecutionError: If a manually triggered run failed
        """
        trigger = Trigger.coerce(trigger)
        task = self.registry.get(task_id)

        with self._in_flight_lock:
            future = self._in_flight.get(task_id)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[task_id] = future

        if not owner:
            logger.info(
                f"Task '{task_id}' already running, joining existing run "
                f"({trigger.value} by {triggered_by})"
            )
            self.runner.metrics.record_joined(task_id, trigger.value)
            attempt = future.result()
            return self._outcome(attempt, trigger, joined=True)

        try:
            attempt = self.runner.run(task, trigger, triggered_by)
        except BaseException as e:
            self._release(task_id)
            future.set_exception(e)
            raise

        self._release(task_id)
        future.set_result(attempt)
        return self._outcome(attempt, trigger, joined=False)

    def submit_task(
        self,
        task_id: str,
        trigger: Trigger | str,
        triggered_by: str = SYSTEM_ACTOR,
    ) -> Future:
        """
        Run execute_task() on the worker pool

        The task id and trigger are checked before submitting, so lookup
        errors are raised here rather than through the future.
        """
        trigger = Trigger.coerce(trigger)
        self.registry.get(task_id)
        return self._executor.submit(self.execute_task, task_id, trigger, triggered_by)

    def _release(self, task_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.pop(task_id, None)

    @staticmethod
    def _outcome(attempt: RunAttempt, trigger: Trigger, joined: bool) -> ExecutionOutcome:
        run = attempt.run
        if trigger is Trigger.MANUAL and run.status is RunStatus.FAILED:
            raise ExecutionError(
                run.task_id,
                run.error or "reconciliation failed",
                cause=attempt.exception,
                run=run,
            )
        return ExecutionOutcome(run=run, joined=joined)

    def _run_scheduled_task(self, task_id: str) -> None:
        """Job callback for timer ticks. Never raises."""
        try:
            outcome = self.execute_task(task_id, Trigger.CRON, SYSTEM_ACTOR)
        except Exception as e:
            logger.error(f"Scheduled run of '{task_id}' raised: {e}", exc_info=True)
            return

        logger.debug(
            f"Scheduled run of '{task_id}' finished: {outcome.run.status.value}"
            f"{' (joined)' if outcome.joined else ''}"
        )


def _job_info(job) -> dict[str, Any]:
    next_run_time = getattr(job, "next_run_time", None)
    return {
        "id": job.id,
        "name": job.name,
        "next_run_time": next_run_time.isoformat() if next_run_time else None,
        "trigger": str(job.trigger),
    }
