"""
PostgreSQL run store.

Runs live in ``reconciliation_task_runs``. finalize() only touches rows
that are still ``running``, so a terminal row can never be rewritten.
"""

import logging
from collections.abc import Callable
from typing import Any

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from opsutils.retry import retry_database_operation

from ..errors import RunStoreError
from ..models import RunStatus, TaskRun, Trigger
from .base import RunStore

logger = logging.getLogger(__name__)

TABLE_NAME = "reconciliation_task_runs"

CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    run_id        TEXT PRIMARY KEY,
    task_id       TEXT NOT NULL,
    trigger       TEXT NOT NULL,
    triggered_by  TEXT NOT NULL,
    status        TEXT NOT NULL,
    started_at    TIMESTAMPTZ NOT NULL,
    finished_at   TIMESTAMPTZ,
    summary       JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    error         TEXT
);
CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_task_started
    ON {TABLE_NAME} (task_id, started_at DESC);
"""

INSERT_SQL = f"""
INSERT INTO {TABLE_NAME}
    (run_id, task_id, trigger, triggered_by, status, started_at, finished_at, summary, error)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (run_id) DO NOTHING
"""

FINALIZE_SQL = f"""
UPDATE {TABLE_NAME}
SET status = %s, finished_at = %s, summary = %s, error = %s
WHERE run_id = %s AND status = 'running'
"""

SELECT_COLUMNS = (
    "run_id, task_id, trigger, triggered_by, status, started_at, finished_at, summary, error"
)


class PostgresRunStore(RunStore):
    """
    Run history in PostgreSQL

    Args:
        connect: Zero-argument callable returning a new psycopg2 connection
    """

    def __init__(self, connect: Callable[[], Any]):
        self._connect = connect

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "PostgresRunStore":
        """Build a store from a host/port/database/username/password mapping."""
        return cls(lambda: psycopg2.connect(
            host=config["host"],
            port=config.get("port", 5432),
            database=config["database"],
            user=config["username"],
            password=config["password"],
        ))

    def _execute(self, sql: str, params: tuple | None = None, fetch: bool = False) -> Any:
        conn = self._connect()
        try:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute(sql, params)
                    if fetch:
                        return cursor.fetchall()
                    return cursor.rowcount
        finally:
            conn.close()

    @retry_database_operation(max_retries=3)
    def ensure_schema(self) -> None:
        self._execute(CREATE_TABLE_SQL)
        logger.info(f"Ensured run history table {TABLE_NAME}")

    @retry_database_operation(max_retries=3)
    def create(self, run: TaskRun) -> None:
        self._execute(INSERT_SQL, (
            run.run_id,
            run.task_id,
            run.trigger.value,
            run.triggered_by,
            run.status.value,
            run.started_at,
            run.finished_at,
            Json(run.summary),
            run.error,
        ))

    @retry_database_operation(max_retries=3)
    def finalize(self, run: TaskRun) -> None:
        self.check_finalizable(None, run)
        updated = self._execute(FINALIZE_SQL, (
            run.status.value,
            run.finished_at,
            Json(run.summary),
            run.error,
            run.run_id,
        ))
        if updated == 0:
            self.check_finalizable(self.get(run.run_id), run)
            raise RunStoreError(f"Run {run.run_id} not found in {TABLE_NAME}")

    def get(self, run_id: str) -> TaskRun | None:
        rows = self._execute(
            f"SELECT {SELECT_COLUMNS} FROM {TABLE_NAME} WHERE run_id = %s",
            (run_id,),
            fetch=True,
        )
        return _row_to_run(rows[0]) if rows else None

    def list_runs(self, task_id: str | None = None, limit: int = 50) -> list[TaskRun]:
        if task_id is None:
            rows = self._execute(
                f"SELECT {SELECT_COLUMNS} FROM {TABLE_NAME} ORDER BY started_at DESC LIMIT %s",
                (limit,),
                fetch=True,
            )
        else:
            rows = self._execute(
                f"SELECT {SELECT_COLUMNS} FROM {TABLE_NAME} "
                f"WHERE task_id = %s ORDER BY started_at DESC LIMIT %s",
                (task_id, limit),
                fetch=True,
            )
        return [_row_to_run(row) for row in rows]


def _row_to_run(row: dict[str, Any]) -> TaskRun:
    return TaskRun(
        run_id=row["run_id"],
        task_id=row["task_id"],
        trigger=Trigger(row["trigger"]),
        triggered_by=row["triggered_by"],
        status=RunStatus(row["status"]),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        summary=row["summary"] or {},
        error=row["error"],
    )
