"""
Process lifecycle for the reconciliation scheduler.

bootstrap() registers tasks, starts the scheduler singleton and fires the
startup pass, once per process. Later calls (a development reload
re-running the hosting module, a second entry point) get the first
result back instead of registering and starting again. The guard lives
in the process state holder, so reloading this module does not reset it.
"""

import logging
from collections.abc import Iterable
from concurrent.futures import Future
from dataclasses import dataclass, field, replace

from .config import ReconcilerSettings
from .errors import DuplicateTaskError
from .models import SYSTEM_ACTOR, Trigger
from .process_state import process_state
from .registry import TaskRegistry
from .scheduler import ReconciliationScheduler
from .store import RunStore, build_run_store
from .task import ReconciliationTask

logger = logging.getLogger(__name__)

_state = process_state()


@dataclass(frozen=True)
class BootstrapResult:
    scheduler: ReconciliationScheduler
    registered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    startup_runs: dict[str, Future] = field(default_factory=dict)
    already_initialized: bool = False


def bootstrap(
    tasks: Iterable[ReconciliationTask] | None = None,
    *,
    settings: ReconcilerSettings | None = None,
    run_store: RunStore | None = None,
    registry: TaskRegistry | None = None,
) -> BootstrapResult:
    """
    Initialize reconciliation for this process

    Args:
        tasks: Tasks to register (default: the built-in tasks configured
            from ``settings``)
        settings: Settings (default: read from the environment)
        run_store: Run history (default: built from ``settings``); only
            used when the scheduler singleton does not exist yet
        registry: Registry for a newly created singleton

    Returns:
        BootstrapResult; ``already_initialized`` is True on every call
        after the first
    """
    with _state.bootstrap_lock:
        if _state.bootstrap_result is not None:
            logger.info("Reconciliation already initialized, skipping bootstrap")
            return replace(_state.bootstrap_result, already_initialized=True)

        settings = settings or ReconcilerSettings.from_env()
        if tasks is None:
            from .tasks import build_default_tasks
            tasks = build_default_tasks(settings)

        if run_store is None and not ReconciliationScheduler.has_instance():
            run_store = build_run_store(settings)

        scheduler = ReconciliationScheduler.get_instance(
            registry=registry,
            run_store=run_store,
            timezone=settings.timezone,
            startup_workers=settings.startup_workers,
        )

        registered, skipped = _register_tasks(scheduler.registry, tasks)
        scheduler.start()

        startup_runs = {}
        if settings.startup_pass:
            startup_runs = _startup_pass(scheduler)
        else:
            logger.info("Startup pass disabled")

        result = BootstrapResult(
            scheduler=scheduler,
            registered=registered,
            skipped=skipped,
            startup_runs=startup_runs,
        )
        _state.bootstrap_result = result
        logger.info(
            f"Reconciliation initialized: {len(registered)} task(s) registered, "
            f"{len(skipped)} skipped"
        )
        return result


def shutdown() -> None:
    """Stop the scheduler singleton and allow bootstrap() to run again."""
    with _state.bootstrap_lock:
        _state.bootstrap_result = None
        ReconciliationScheduler.reset_instance()


def is_initialized() -> bool:
    return _state.bootstrap_result is not None


def _register_tasks(
    registry: TaskRegistry,
    tasks: Iterable[ReconciliationTask],
) -> tuple[list[str], list[str]]:
    registered, skipped = [], []
    for task in tasks:
        try:
            registry.register(task)
        except DuplicateTaskError as e:
            logger.error(f"Skipping task registration: {e}")
            skipped.append(task.task_id)
            continue

        registered.append(task.task_id)
        for problem in task.validate_config():
            logger.warning(f"Task '{task.task_id}' configuration problem: {problem}")

    return registered, skipped


def _startup_pass(scheduler: ReconciliationScheduler) -> dict[str, Future]:
    startup_runs = {}
    for task in scheduler.registry.get_all():
        try:
            future = scheduler.submit_task(task.task_id, Trigger.STARTUP, SYSTEM_ACTOR)
        except Exception as e:
            logger.error(f"Failed to submit startup run for '{task.task_id}': {e}", exc_info=True)
            continue

        future.add_done_callback(_startup_callback(task.task_id))
        startup_runs[task.task_id] = future

    return startup_runs


def _startup_callback(task_id: str):
    def log_result(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(f"Startup run for '{task_id}' raised: {exc}")
            return
        outcome = future.result()
        if not outcome.succeeded:
            logger.warning(f"Startup run for '{task_id}' failed: {outcome.run.error}")

    return log_result
