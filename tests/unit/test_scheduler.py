"""
Unit tests for the reconciliation scheduler

Tests verify:
- Singleton access (get_instance/reset_instance), including across a
  module reload
- Job arming on start(), idempotent start, stop, restart after stop
- Per-task job management
- execute_task join semantics: one in-flight run per task id
- Failure containment per trigger
- Timer callbacks never raise

Timer tests use a real BackgroundScheduler. Ticks are fired either by
calling the armed job's function directly or by moving the job's next run
time to now, which goes through the backend's own executor.
"""

import threading
import time
from concurrent.futures import Future
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED

from reconciler import scheduler as scheduler_module
from reconciler.errors import ExecutionError, NotFoundError
from reconciler.models import RunStatus, Summary, Trigger
from reconciler.schedule import Schedule
from reconciler.scheduler import ReconciliationScheduler

TASK_ID = "postmark-bounce-sync"


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _fire_now(backend, job_id, timeout=5.0):
    """Move a job's next run time to now and wait until the backend has run it"""
    executed = threading.Event()

    def listener(event):
        if event.job_id == job_id:
            executed.set()

    backend.add_listener(listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
    try:
        backend.modify_job(job_id, next_run_time=datetime.now(timezone.utc))
        return executed.wait(timeout)
    finally:
        backend.remove_listener(listener)


# ============================================================================
# Singleton
# ============================================================================

class TestSchedulerSingleton:
    """Test get_instance/reset_instance"""

    def test_get_instance_returns_same_object(self):
        first = ReconciliationScheduler.get_instance()
        second = ReconciliationScheduler.get_instance()

        assert first is second

    def test_kwargs_only_used_on_first_call(self, registry):
        first = ReconciliationScheduler.get_instance(registry=registry, timezone="Europe/Berlin")
        second = ReconciliationScheduler.get_instance(timezone="UTC")

        assert second is first
        assert second.registry is registry
        assert second.timezone == "Europe/Berlin"

    def test_concurrent_get_instance_builds_one(self):
        barrier = threading.Barrier(8)
        instances = []

        def get():
            barrier.wait()
            instances.append(ReconciliationScheduler.get_instance())

        threads = [threading.Thread(target=get) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(instance) for instance in instances}) == 1

    def test_reset_instance_stops_and_discards(self):
        first = ReconciliationScheduler.get_instance()
        first.start()

        ReconciliationScheduler.reset_instance()

        assert not first.is_running
        assert ReconciliationScheduler.get_instance() is not first

    def test_has_instance(self):
        assert not ReconciliationScheduler.has_instance()

        ReconciliationScheduler.get_instance()

        assert ReconciliationScheduler.has_instance()

    def test_instance_survives_module_reload(self, reload_module):
        first = ReconciliationScheduler.get_instance()

        reloaded = reload_module(scheduler_module)

        assert reloaded.ReconciliationScheduler is not ReconciliationScheduler
        assert reloaded.ReconciliationScheduler.has_instance()
        assert reloaded.ReconciliationScheduler.get_instance() is first

    def test_reset_after_reload_discards_shared_instance(self, reload_module):
        first = ReconciliationScheduler.get_instance()
        reloaded = reload_module(scheduler_module)

        reloaded.ReconciliationScheduler.reset_instance()

        assert not ReconciliationScheduler.has_instance()
        assert ReconciliationScheduler.get_instance() is not first


# ============================================================================
# Lifecycle and job arming
# ============================================================================

class TestSchedulerLifecycle:
    """Test start/stop with a real BackgroundScheduler"""

    def test_start_arms_one_job_per_enabled_task(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory("a"))
        registry.register(stub_task_factory("b", enabled=False))
        registry.register(stub_task_factory("c", schedule=Schedule.cron("0 */6 * * *")))

        scheduler.start()

        assert scheduler.is_running
        assert sorted(job["id"] for job in scheduler.list_jobs()) == ["a", "c"]

    def test_armed_job_options(self, registry, runner, stub_task_factory):
        backend = Mock()
        scheduler = ReconciliationScheduler(registry=registry, runner=runner, backend=backend)
        registry.register(stub_task_factory(TASK_ID))

        scheduler.start()

        kwargs = backend.add_job.call_args[1]
        assert backend.add_job.call_args[0][0] == scheduler._run_scheduled_task
        assert kwargs["args"] == [TASK_ID]
        assert kwargs["id"] == TASK_ID
        assert kwargs["replace_existing"] is True
        assert kwargs["coalesce"] is True
        assert kwargs["max_instances"] == 1
        backend.start.assert_called_once()

    def test_start_twice_does_not_duplicate_jobs(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID))

        scheduler.start()
        scheduler.start()

        assert len(scheduler.scheduler.get_jobs()) == 1

    def test_failure_arming_one_task_does_not_block_others(self, scheduler, registry, stub_task_factory):
        broken = stub_task_factory("broken")
        broken._definition = replace(
            broken.definition,
            schedule=Mock(to_trigger=Mock(side_effect=ValueError("bad trigger"))),
        )
        registry.register(broken)
        registry.register(stub_task_factory("healthy"))

        scheduler.start()

        assert [job["id"] for job in scheduler.list_jobs()] == ["healthy"]

    def test_stop_removes_jobs_and_is_idempotent(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID))
        scheduler.start()

        scheduler.stop()
        scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.list_jobs() == []

    def test_ticks_fire_after_stop_and_start(self, scheduler, registry, run_store, stub_task_factory):
        task = stub_task_factory(TASK_ID)
        registry.register(task)
        scheduler.start()
        scheduler.stop()

        scheduler.start()

        assert scheduler.is_running
        assert scheduler.is_task_scheduled(TASK_ID)
        assert _fire_now(scheduler.scheduler, TASK_ID)
        runs = run_store.list_runs(task_id=TASK_ID)
        assert len(runs) == 1
        assert runs[0].trigger is Trigger.CRON
        assert len(task.calls) == 1

    def test_injected_backend_is_kept_across_stop(self, registry, runner):
        backend = Mock()
        scheduler = ReconciliationScheduler(registry=registry, runner=runner, backend=backend)
        scheduler.start()

        scheduler.stop()

        assert scheduler.scheduler is backend
        backend.shutdown.assert_called_once_with(wait=False)

    def test_start_twice_runs_once_per_tick(self, scheduler, registry, run_store, stub_task_factory):
        task = stub_task_factory(TASK_ID)
        registry.register(task)

        scheduler.start()
        scheduler.start()
        for _ in range(3):
            assert _fire_now(scheduler.scheduler, TASK_ID)

        assert len(scheduler.list_jobs()) == 1
        assert len(task.calls) == 3
        runs = run_store.list_runs(task_id=TASK_ID)
        assert len(runs) == 3
        assert {run.trigger for run in runs} == {Trigger.CRON}

    def test_five_minute_task_first_tick_and_startup_ordering(self, scheduler, registry, run_store, stub_task_factory):
        """A 5-minute task is armed for ~300s out; a fired tick records a cron run"""
        task = stub_task_factory(TASK_ID, schedule=Schedule.every(minutes=5))
        registry.register(task)

        scheduler.start()

        jobs = scheduler.scheduler.get_jobs()
        assert len(jobs) == 1
        seconds_until = (jobs[0].next_run_time - datetime.now(timezone.utc)).total_seconds()
        assert 290 <= seconds_until <= 301
        assert run_store.list_runs() == []

        job = jobs[0]
        job.func(*job.args, **job.kwargs)

        runs = run_store.list_runs(task_id=TASK_ID)
        assert len(runs) == 1
        assert runs[0].trigger is Trigger.CRON
        assert runs[0].triggered_by == "system"
        assert runs[0].status is RunStatus.SUCCEEDED


# ============================================================================
# Per-task job management
# ============================================================================

class TestTaskJobManagement:
    """Test schedule_task/stop_task/restart_task"""

    def test_schedule_and_stop_task(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID))

        assert scheduler.schedule_task(TASK_ID) is True
        assert scheduler.is_task_scheduled(TASK_ID)
        assert scheduler.get_task_schedule(TASK_ID)["id"] == TASK_ID

        assert scheduler.stop_task(TASK_ID) is True
        assert scheduler.stop_task(TASK_ID) is False
        assert not scheduler.is_task_scheduled(TASK_ID)
        assert scheduler.get_task_schedule(TASK_ID) is None

    def test_schedule_disabled_task_refused(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID, enabled=False))

        assert scheduler.schedule_task(TASK_ID) is False
        assert not scheduler.is_task_scheduled(TASK_ID)

    def test_schedule_unknown_task(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.schedule_task("missing")

    def test_restart_task_keeps_single_job(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID))
        scheduler.start()

        assert scheduler.restart_task(TASK_ID) is True
        assert len(scheduler.list_jobs()) == 1

    def test_get_status(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID))
        registry.register(stub_task_factory("off", enabled=False))
        scheduler.start()

        status = scheduler.get_status()

        assert status["running"] is True
        assert status["in_flight"] == []
        by_id = {t["task_id"]: t for t in status["tasks"]}
        assert by_id[TASK_ID]["scheduled"] is True
        assert by_id[TASK_ID]["next_run_time"] is not None
        assert by_id[TASK_ID]["schedule"] == "every 5m"
        assert by_id["off"]["scheduled"] is False


# ============================================================================
# execute_task
# ============================================================================

class TestExecuteTask:
    """Test execute_task outcomes"""

    def test_successful_run(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID, result=Summary(scanned=3)))

        outcome = scheduler.execute_task(TASK_ID, "manual", "alice")

        assert outcome.succeeded
        assert outcome.joined is False
        assert outcome.run.trigger is Trigger.MANUAL
        assert outcome.run.triggered_by == "alice"

    def test_unknown_task_raises_not_found(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.execute_task("missing", "cron")

    def test_invalid_trigger_rejected(self, scheduler, registry, stub_task_factory):
        task = stub_task_factory(TASK_ID)
        registry.register(task)

        with pytest.raises(ValueError):
            scheduler.execute_task(TASK_ID, "webhook")

        assert task.calls == []

    @pytest.mark.parametrize("trigger", ["cron", "startup"])
    def test_failure_contained_for_automatic_triggers(self, scheduler, registry, stub_task_factory, trigger):
        registry.register(stub_task_factory(TASK_ID, result=RuntimeError("API down")))

        outcome = scheduler.execute_task(TASK_ID, trigger)

        assert outcome.run.status is RunStatus.FAILED
        assert "API down" in outcome.run.error

    def test_manual_failure_raises_execution_error(self, scheduler, registry, run_store, stub_task_factory):
        cause = RuntimeError("API down")
        registry.register(stub_task_factory(TASK_ID, result=cause))

        with pytest.raises(ExecutionError) as exc_info:
            scheduler.execute_task(TASK_ID, "manual", "alice")

        error = exc_info.value
        assert error.task_id == TASK_ID
        assert error.cause is cause
        assert error.run.status is RunStatus.FAILED
        assert "API down" in str(error)
        assert run_store.get(error.run.run_id).status is RunStatus.FAILED

    def test_sequential_calls_start_new_runs(self, scheduler, registry, stub_task_factory):
        task = stub_task_factory(TASK_ID)
        registry.register(task)

        first = scheduler.execute_task(TASK_ID, "cron")
        second = scheduler.execute_task(TASK_ID, "cron")

        assert len(task.calls) == 2
        assert first.run.run_id != second.run.run_id
        assert not second.joined


class TestJoinSemantics:
    """Test that concurrent requests for one task share a single run"""

    def test_second_caller_joins_in_flight_run(self, scheduler, registry, stub_task_factory, metrics_registry):
        task = stub_task_factory(TASK_ID, result=Summary(scanned=7))
        task.release = threading.Event()
        registry.register(task)
        results = {}

        first = threading.Thread(
            target=lambda: results.setdefault("first", scheduler.execute_task(TASK_ID, "cron"))
        )
        first.start()
        assert task.started.wait(5)

        second = threading.Thread(
            target=lambda: results.setdefault("second", scheduler.execute_task(TASK_ID, "manual", "alice"))
        )
        second.start()
        assert _wait_for(lambda: metrics_registry.get_sample_value(
            "reconciliation_task_joined_requests_total",
            {"task_id": TASK_ID, "trigger": "manual"},
        ) == 1)
        assert scheduler.get_status()["in_flight"] == [TASK_ID]

        task.release.set()
        first.join(5)
        second.join(5)

        assert len(task.calls) == 1
        assert results["first"].run is results["second"].run
        assert results["first"].joined is False
        assert results["second"].joined is True
        assert scheduler.get_status()["in_flight"] == []

    def test_different_tasks_run_concurrently(self, scheduler, registry, stub_task_factory):
        slow = stub_task_factory("slow")
        slow.release = threading.Event()
        fast = stub_task_factory("fast")
        registry.register(slow)
        registry.register(fast)

        thread = threading.Thread(target=scheduler.execute_task, args=("slow", "cron"))
        thread.start()
        assert slow.started.wait(5)

        outcome = scheduler.execute_task("fast", "cron")
        slow.release.set()
        thread.join(5)

        assert outcome.joined is False
        assert len(fast.calls) == 1

    def test_joined_manual_caller_sees_failure(self, scheduler, registry, stub_task_factory, metrics_registry):
        task = stub_task_factory(TASK_ID, result=RuntimeError("API down"))
        task.release = threading.Event()
        registry.register(task)
        errors = []

        def manual():
            try:
                scheduler.execute_task(TASK_ID, "manual", "alice")
            except ExecutionError as e:
                errors.append(e)

        owner = threading.Thread(target=scheduler.execute_task, args=(TASK_ID, "cron"))
        owner.start()
        assert task.started.wait(5)
        joiner = threading.Thread(target=manual)
        joiner.start()
        assert _wait_for(lambda: metrics_registry.get_sample_value(
            "reconciliation_task_joined_requests_total",
            {"task_id": TASK_ID, "trigger": "manual"},
        ) == 1)

        task.release.set()
        owner.join(5)
        joiner.join(5)

        assert len(errors) == 1
        assert errors[0].run.status is RunStatus.FAILED

    def test_in_flight_entry_cleared_when_runner_raises(self, registry, stub_task_factory):
        runner = Mock()
        runner.run.side_effect = KeyboardInterrupt()
        scheduler = ReconciliationScheduler(registry=registry, runner=runner)
        registry.register(stub_task_factory(TASK_ID))

        with pytest.raises(KeyboardInterrupt):
            scheduler.execute_task(TASK_ID, "cron")

        assert scheduler.get_status()["in_flight"] == []


# ============================================================================
# submit_task and timer callback
# ============================================================================

class TestSubmitAndTimerCallback:
    """Test asynchronous submission and the job callback"""

    def test_submit_task_returns_future(self, scheduler, registry, stub_task_factory):
        registry.register(stub_task_factory(TASK_ID))

        future = scheduler.submit_task(TASK_ID, "startup")

        assert isinstance(future, Future)
        outcome = future.result(timeout=5)
        assert outcome.run.trigger is Trigger.STARTUP

    def test_submit_unknown_task_raises_immediately(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.submit_task("missing", "startup")

    def test_scheduled_callback_never_raises(self, scheduler):
        with patch.object(scheduler, "execute_task", side_effect=RuntimeError("boom")):
            scheduler._run_scheduled_task(TASK_ID)

    def test_scheduled_callback_uses_cron_trigger(self, scheduler):
        with patch.object(scheduler, "execute_task") as mock_execute:
            scheduler._run_scheduled_task(TASK_ID)

        mock_execute.assert_called_once_with(TASK_ID, Trigger.CRON, "system")
