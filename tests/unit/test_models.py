"""
Unit tests for the run data model

Tests verify:
- Trigger coercion
- TaskRun transitions and terminal-state protection
- Summary counting, merging and serialization
- TaskRun dict round trip for persistence
"""

import pytest

from reconciler.errors import InvalidRunTransition
from reconciler.models import (
    MAX_DISCREPANCY_SAMPLES,
    SYSTEM_ACTOR,
    Discrepancy,
    ExecutionOutcome,
    RunStatus,
    Summary,
    TaskRun,
    Trigger,
)


class TestTrigger:
    """Test Trigger coercion"""

    @pytest.mark.parametrize("value,expected", [
        ("startup", Trigger.STARTUP),
        ("CRON", Trigger.CRON),
        (" manual ", Trigger.MANUAL),
        (Trigger.MANUAL, Trigger.MANUAL),
    ])
    def test_coerce_accepts_known_values(self, value, expected):
        assert Trigger.coerce(value) is expected

    def test_coerce_rejects_unknown_value(self):
        with pytest.raises(ValueError, match="Invalid trigger 'webhook'"):
            Trigger.coerce("webhook")


class TestTaskRunTransitions:
    """Test TaskRun lifecycle"""

    def test_begin_creates_running_run(self):
        run = TaskRun.begin("postmark-bounce-sync", "cron", SYSTEM_ACTOR)

        assert run.status is RunStatus.RUNNING
        assert run.trigger is Trigger.CRON
        assert run.triggered_by == "system"
        assert run.finished_at is None
        assert run.error is None
        assert len(run.run_id) == 32

    def test_begin_defaults_empty_actor_to_system(self):
        run = TaskRun.begin("t", "manual", "")

        assert run.triggered_by == SYSTEM_ACTOR

    def test_run_ids_are_unique(self):
        ids = {TaskRun.begin("t", "cron", "system").run_id for _ in range(100)}

        assert len(ids) == 100

    def test_succeed_returns_new_terminal_run(self):
        run = TaskRun.begin("t", "cron", "system")

        finished = run.succeed({"scanned": 3})

        assert finished is not run
        assert run.status is RunStatus.RUNNING
        assert finished.status is RunStatus.SUCCEEDED
        assert finished.summary == {"scanned": 3}
        assert finished.error is None
        assert finished.finished_at >= finished.started_at
        assert finished.duration_seconds >= 0

    def test_fail_sets_error(self):
        finished = TaskRun.begin("t", "cron", "system").fail("API down")

        assert finished.status is RunStatus.FAILED
        assert finished.error == "API down"

    def test_fail_with_empty_message_still_sets_error(self):
        finished = TaskRun.begin("t", "cron", "system").fail("")

        assert finished.error

    @pytest.mark.parametrize("finish", [
        lambda run: run.succeed(),
        lambda run: run.fail("again"),
    ])
    def test_terminal_run_cannot_transition(self, finish):
        done = TaskRun.begin("t", "cron", "system").succeed()

        with pytest.raises(InvalidRunTransition):
            finish(done)

    def test_running_run_has_no_duration(self):
        assert TaskRun.begin("t", "cron", "system").duration_seconds is None


class TestTaskRunSerialization:
    """Test to_dict/from_dict"""

    def test_round_trip_finished_run(self):
        run = TaskRun.begin("t", "manual", "alice").fail("boom", {"scanned": 2})

        restored = TaskRun.from_dict(run.to_dict())

        assert restored == run

    def test_to_dict_uses_plain_values(self):
        data = TaskRun.begin("t", "startup", "system").to_dict()

        assert data["trigger"] == "startup"
        assert data["status"] == "running"
        assert data["finished_at"] is None


class TestSummary:
    """Test Summary counting"""

    def test_record_backfill_counts_both(self):
        summary = Summary()

        summary.record(Discrepancy("m-1", "record", "sent", None, "backfill"))

        assert summary.corrected == 1
        assert summary.backfilled == 1

    def test_record_status_update(self):
        summary = Summary()

        summary.record(Discrepancy("m-1", "status", "bounced", "sent", "update_status"))

        assert summary.corrected == 1
        assert summary.backfilled == 0

    def test_merge_adds_counts(self):
        a = Summary(scanned=2, corrected=1, errors=["x"])
        b = Summary(scanned=3, skipped=1, errors=["y"])

        merged = a.merge(b)

        assert merged.scanned == 5
        assert merged.corrected == 1
        assert merged.skipped == 1
        assert merged.errors == ["x", "y"]
        assert a.errors == ["x"]

    def test_to_dict_caps_discrepancy_samples(self):
        summary = Summary()
        for i in range(MAX_DISCREPANCY_SAMPLES + 10):
            summary.record(Discrepancy(f"m-{i}", "status", "bounced", "sent", "update_status"))

        data = summary.to_dict()

        assert data["corrected"] == MAX_DISCREPANCY_SAMPLES + 10
        assert len(data["discrepancies"]) == MAX_DISCREPANCY_SAMPLES
        assert data["discrepancies"][0]["field"] == "status"

    def test_has_errors(self):
        assert not Summary().has_errors
        assert Summary(errors=["step failed"]).has_errors


class TestExecutionOutcome:
    def test_succeeded_reflects_run_status(self):
        run = TaskRun.begin("t", "cron", "system")

        assert ExecutionOutcome(run.succeed()).succeeded is True
        assert ExecutionOutcome(run.fail("x")).succeeded is False
        assert ExecutionOutcome(run.succeed()).joined is False
