"""
Unit tests for run-history stores

Tests verify:
- In-memory and JSON file stores share the create/finalize/list contract
- Terminal runs cannot be finalized twice
- JSON store survives unreadable files
- PostgreSQL store issues the expected statements (mocked connection)
"""

import json
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from reconciler.config import ReconcilerSettings
from reconciler.errors import InvalidRunTransition, RunStoreError
from reconciler.models import RunStatus, TaskRun
from reconciler.store import (
    InMemoryRunStore,
    JsonFileRunStore,
    PostgresRunStore,
    build_run_store,
)


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRunStore()
    return JsonFileRunStore(str(tmp_path / "runs"))


def _run(task_id="postmark-bounce-sync", trigger="cron", offset_seconds=0):
    run = TaskRun.begin(task_id, trigger, "system")
    if offset_seconds:
        run = replace(run, started_at=run.started_at + timedelta(seconds=offset_seconds))
    return run


class TestRunStoreContract:
    """Behaviour shared by the in-memory and JSON stores"""

    def test_create_then_get(self, store):
        run = _run()

        store.create(run)

        assert store.get(run.run_id) == run

    def test_get_unknown_returns_none(self, store):
        assert store.get("does-not-exist") is None

    def test_finalize_replaces_running_copy(self, store):
        run = _run()
        store.create(run)

        finished = run.succeed({"scanned": 4})
        store.finalize(finished)

        stored = store.get(run.run_id)
        assert stored.status is RunStatus.SUCCEEDED
        assert stored.summary == {"scanned": 4}

    def test_finalize_twice_rejected(self, store):
        run = _run()
        store.create(run)
        store.finalize(run.succeed())

        with pytest.raises(InvalidRunTransition):
            store.finalize(run.fail("late"))

        assert store.get(run.run_id).status is RunStatus.SUCCEEDED

    def test_finalize_running_run_rejected(self, store):
        run = _run()
        store.create(run)

        with pytest.raises(InvalidRunTransition):
            store.finalize(run)

    def test_list_runs_newest_first_and_filtered(self, store):
        older = _run(offset_seconds=-60)
        newer = _run()
        other = _run(task_id="other-task", offset_seconds=-30)
        for run in (older, newer, other):
            store.create(run)

        assert [r.run_id for r in store.list_runs()] == [newer.run_id, other.run_id, older.run_id]
        assert [r.run_id for r in store.list_runs(task_id="postmark-bounce-sync")] == [
            newer.run_id,
            older.run_id,
        ]
        assert len(store.list_runs(limit=1)) == 1

    def test_latest_and_running(self, store):
        done = _run(offset_seconds=-60)
        store.create(done)
        store.finalize(done.fail("boom"))
        in_flight = _run()
        store.create(in_flight)

        assert store.latest("postmark-bounce-sync").run_id == in_flight.run_id
        assert [r.run_id for r in store.running()] == [in_flight.run_id]
        assert store.latest("unknown") is None


class TestJsonFileRunStore:
    """JSON-specific behaviour"""

    def test_files_laid_out_per_task(self, tmp_path):
        store = JsonFileRunStore(str(tmp_path))
        run = _run(task_id="postmark/bounce")

        store.create(run)

        run_file = tmp_path / "postmark_bounce" / f"{run.run_id}.json"
        assert run_file.exists()
        assert json.loads(run_file.read_text())["status"] == "running"

    def test_unreadable_file_skipped(self, tmp_path):
        store = JsonFileRunStore(str(tmp_path))
        good = _run()
        store.create(good)
        (tmp_path / "postmark-bounce-sync" / "broken.json").write_text("{not json")

        assert [r.run_id for r in store.list_runs()] == [good.run_id]

    def test_write_failure_raises_store_error(self, tmp_path):
        store = JsonFileRunStore(str(tmp_path))

        with patch("reconciler.store.json_file.tempfile.mkstemp", side_effect=OSError("disk full")):
            with pytest.raises(RunStoreError, match="disk full"):
                store.create(_run())


class TestPostgresRunStore:
    """PostgreSQL store with a mocked psycopg2 connection"""

    @pytest.fixture
    def cursor(self):
        return MagicMock()

    @pytest.fixture
    def pg_store(self, cursor):
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        return PostgresRunStore(lambda: conn)

    def test_create_inserts_with_conflict_guard(self, pg_store, cursor):
        run = _run()

        pg_store.create(run)

        sql, params = cursor.execute.call_args[0]
        assert "INSERT INTO reconciliation_task_runs" in sql
        assert "ON CONFLICT (run_id) DO NOTHING" in sql
        assert params[0] == run.run_id
        assert params[2] == "cron"

    def test_finalize_only_updates_running_rows(self, pg_store, cursor):
        cursor.rowcount = 1
        run = _run()

        pg_store.finalize(run.succeed({"scanned": 1}))

        sql, params = cursor.execute.call_args[0]
        assert "WHERE run_id = %s AND status = 'running'" in sql
        assert params[0] == "succeeded"
        assert params[-1] == run.run_id

    def test_finalize_already_terminal_raises(self, pg_store, cursor):
        run = _run()
        stored = run.succeed()
        cursor.rowcount = 0
        cursor.fetchall.return_value = [{
            "run_id": stored.run_id,
            "task_id": stored.task_id,
            "trigger": "cron",
            "triggered_by": "system",
            "status": "succeeded",
            "started_at": stored.started_at,
            "finished_at": stored.finished_at,
            "summary": {},
            "error": None,
        }]

        with pytest.raises(InvalidRunTransition):
            pg_store.finalize(run.fail("late"))

    def test_list_runs_maps_rows(self, pg_store, cursor):
        run = _run()
        cursor.fetchall.return_value = [{
            "run_id": run.run_id,
            "task_id": run.task_id,
            "trigger": "manual",
            "triggered_by": "alice",
            "status": "running",
            "started_at": run.started_at,
            "finished_at": None,
            "summary": None,
            "error": None,
        }]

        runs = pg_store.list_runs(task_id=run.task_id, limit=5)

        assert runs[0].run_id == run.run_id
        assert runs[0].triggered_by == "alice"
        assert runs[0].summary == {}
        assert cursor.execute.call_args[0][1] == (run.task_id, 5)

    @patch("opsutils.retry.time.sleep")
    def test_transient_error_retried(self, mock_sleep, cursor):
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        connect = MagicMock(side_effect=[Exception("could not connect to server"), conn])
        store = PostgresRunStore(connect)

        store.create(_run())

        assert connect.call_count == 2
        cursor.execute.assert_called_once()


class TestBuildRunStore:
    """Test store selection from settings"""

    def test_memory_default(self):
        assert isinstance(build_run_store(ReconcilerSettings()), InMemoryRunStore)

    def test_json_backend(self, tmp_path):
        settings = ReconcilerSettings(run_store="json", state_dir=str(tmp_path))

        store = build_run_store(settings)

        assert isinstance(store, JsonFileRunStore)
        assert store.state_dir == tmp_path

    @patch("reconciler.store.PostgresRunStore.ensure_schema")
    def test_postgres_backend_ensures_schema(self, mock_ensure):
        settings = ReconcilerSettings(run_store="postgres", postgres={
            "host": "localhost", "port": 5432, "database": "app",
            "username": "postgres", "password": "secret",
        })

        assert isinstance(build_run_store(settings), PostgresRunStore)
        mock_ensure.assert_called_once()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_run_store(ReconcilerSettings(run_store="redis"))
