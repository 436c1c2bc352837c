"""
CLI command implementations.

This module contains the implementation of the CLI commands:
- run: Bootstrap the scheduler and block until interrupted
- trigger: One manual run of a task
- tasks: List registered tasks
- history: Show recent runs from the run store
"""

import argparse
import json
import logging
import sys
import threading

from opsutils.logging import shutdown_logging
from opsutils.metrics import MetricsPublisher
from opsutils.tracing import initialize_tracing, shutdown_tracing

from ..lifecycle import bootstrap, shutdown
from ..config import ReconcilerSettings
from ..errors import ExecutionError, NotFoundError
from ..models import TaskRun
from ..registry import TaskRegistry
from ..scheduler import ReconciliationScheduler
from ..store import build_run_store
from ..tasks import build_default_tasks

logger = logging.getLogger(__name__)


def _wait_until_interrupted() -> None:
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped by user")


def cmd_run(args: argparse.Namespace) -> None:
    """
    Start reconciliation for this process and block until Ctrl+C

    Args:
        args: Parsed command-line arguments
    """
    settings = ReconcilerSettings.from_env()

    if settings.metrics_port:
        MetricsPublisher(port=settings.metrics_port).start()
    if settings.otlp_endpoint:
        initialize_tracing(otlp_endpoint=settings.otlp_endpoint)

    try:
        result = bootstrap(settings=settings)
    except Exception as e:
        logger.error(f"Failed to start reconciliation: {e}")
        sys.exit(1)

    logger.info(f"Reconciliation running with {len(result.registered)} task(s) (press Ctrl+C to stop)")
    for job in result.scheduler.list_jobs():
        logger.info(f"  {job['id']}: next run at {job['next_run_time']}")

    try:
        _wait_until_interrupted()
    finally:
        shutdown()
        shutdown_tracing()
        shutdown_logging()


def cmd_trigger(args: argparse.Namespace) -> None:
    """
    Run one task immediately with trigger=manual

    Exits 1 if the run fails or the task is unknown.
    """
    settings = ReconcilerSettings.from_env()

    registry = TaskRegistry()
    for task in build_default_tasks(settings):
        registry.register(task)

    scheduler = ReconciliationScheduler(
        registry=registry,
        run_store=build_run_store(settings),
        timezone=settings.timezone,
    )

    try:
        outcome = scheduler.execute_task(args.task_id, "manual", args.user)
    except NotFoundError as e:
        logger.error(str(e))
        logger.error(f"Registered tasks: {', '.join(t.task_id for t in registry)}")
        sys.exit(1)
    except ExecutionError as e:
        logger.error(str(e))
        if e.run is not None:
            print(format_run_console(e.run))
        sys.exit(1)

    print(format_run_console(outcome.run))


def cmd_tasks(args: argparse.Namespace) -> None:
    """List the built-in tasks with their effective configuration."""
    settings = ReconcilerSettings.from_env()

    print(f"{'TASK':<28} {'ENABLED':<8} {'SCHEDULE':<22} WINDOW")
    for task in build_default_tasks(settings):
        print(
            f"{task.task_id:<28} {'yes' if task.enabled else 'no':<8} "
            f"{str(task.schedule):<22} {task.window_hours}h"
        )


def cmd_history(args: argparse.Namespace) -> None:
    """
    Print recent runs from the configured run store

    Args:
        args: Parsed command-line arguments
    """
    settings = ReconcilerSettings.from_env()

    try:
        runs = build_run_store(settings).list_runs(task_id=args.task, limit=args.limit)
    except Exception as e:
        logger.error(f"Failed to read run history: {e}")
        sys.exit(1)

    if args.format == "json":
        print(json.dumps([run.to_dict() for run in runs], indent=2))
        return

    if not runs:
        print("No runs recorded")
        return

    for run in runs:
        print(format_run_console(run))


def format_run_console(run: TaskRun) -> str:
    duration = run.duration_seconds
    lines = [
        f"{run.started_at.isoformat()}  {run.task_id}  {run.status.value.upper()}  "
        f"({run.trigger.value} by {run.triggered_by}"
        f"{f', {duration:.2f}s' if duration is not None else ''})",
        f"  run_id: {run.run_id}",
    ]

    counts = {
        key: run.summary[key]
        for key in ("scanned", "corrected", "backfilled", "skipped")
        if key in run.summary
    }
    if counts:
        lines.append("  " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    if run.error:
        lines.append(f"  error: {run.error}")

    return "\n".join(lines)
