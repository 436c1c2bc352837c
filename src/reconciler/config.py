"""
Environment-driven settings for the reconciliation scheduler.

General settings:
    RECONCILIATION_TIMEZONE          Timezone for cron schedules (default: UTC)
    RECONCILIATION_STARTUP_PASS      Run every task once at boot (default: true)
    RECONCILIATION_STARTUP_WORKERS   Worker threads for submitted runs (default: 4)
    RECONCILIATION_RUN_STORE         memory | json | postgres (default: memory)
    RECONCILIATION_STATE_DIR         Directory for the json run store

Per-task overrides, with the task id upper-cased and ``-`` replaced by ``_``:
    RECONCILIATION_<TASK_ID>_ENABLED
    RECONCILIATION_<TASK_ID>_SCHEDULE       e.g. "5m", "6h" or "0 */6 * * *"
    RECONCILIATION_<TASK_ID>_WINDOW_HOURS
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .schedule import Schedule

logger = logging.getLogger(__name__)

ENV_PREFIX = "RECONCILIATION_"
RUN_STORE_BACKENDS = ("memory", "json", "postgres")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def task_env_key(task_id: str, suffix: str) -> str:
    """RECONCILIATION_<TASK_ID>_<SUFFIX> for a task id like ``postmark-bounce-sync``."""
    return f"{ENV_PREFIX}{task_id.upper().replace('-', '_')}_{suffix}"


@dataclass(frozen=True)
class TaskSettings:
    """Per-task overrides; ``None`` keeps the task's own default."""

    enabled: bool = True
    schedule: Schedule | None = None
    window_hours: int | None = None


@dataclass
class ReconcilerSettings:
    timezone: str = "UTC"
    startup_pass: bool = True
    startup_workers: int = 4
    run_store: str = "memory"
    state_dir: str = "./reconciliation_state/runs"
    postmark_api_token: str | None = None
    postgres: dict[str, Any] = field(default_factory=dict)
    metrics_port: int | None = None
    otlp_endpoint: str | None = None
    environ: Mapping[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ReconcilerSettings":
        """
        Build settings from environment variables

        Raises:
            ValueError: On malformed values or an unknown run store backend
        """
        env = dict(os.environ if environ is None else environ)

        run_store = env.get(f"{ENV_PREFIX}RUN_STORE", "memory").strip().lower()
        if run_store not in RUN_STORE_BACKENDS:
            raise ValueError(
                f"Invalid {ENV_PREFIX}RUN_STORE '{run_store}' "
                f"(expected one of: {', '.join(RUN_STORE_BACKENDS)})"
            )

        startup_workers = int(env.get(f"{ENV_PREFIX}STARTUP_WORKERS", "4"))
        if startup_workers < 1:
            raise ValueError(f"{ENV_PREFIX}STARTUP_WORKERS must be at least 1")

        metrics_port = env.get("METRICS_PORT")

        return cls(
            timezone=env.get(f"{ENV_PREFIX}TIMEZONE", "UTC"),
            startup_pass=parse_bool(env.get(f"{ENV_PREFIX}STARTUP_PASS"), True),
            startup_workers=startup_workers,
            run_store=run_store,
            state_dir=env.get(f"{ENV_PREFIX}STATE_DIR", "./reconciliation_state/runs"),
            postmark_api_token=env.get("POSTMARK_API_TOKEN") or None,
            postgres={
                "host": env.get("POSTGRES_HOST", "localhost"),
                "port": int(env.get("POSTGRES_PORT", "5432")),
                "database": env.get("POSTGRES_DB", "app"),
                "username": env.get("POSTGRES_USER", "postgres"),
                "password": env.get("POSTGRES_PASSWORD"),
            },
            metrics_port=int(metrics_port) if metrics_port else None,
            otlp_endpoint=env.get("OTLP_ENDPOINT") or None,
            environ=env,
        )

    def task_settings(self, task_id: str) -> TaskSettings:
        """
        Overrides for one task

        Raises:
            ValueError: If a schedule or window override cannot be parsed
        """
        enabled = parse_bool(self.environ.get(task_env_key(task_id, "ENABLED")), True)

        schedule = None
        schedule_text = self.environ.get(task_env_key(task_id, "SCHEDULE"))
        if schedule_text:
            schedule = Schedule.parse(schedule_text)

        window_hours = None
        window_text = self.environ.get(task_env_key(task_id, "WINDOW_HOURS"))
        if window_text:
            window_hours = int(window_text)
            if window_hours <= 0:
                raise ValueError(f"{task_env_key(task_id, 'WINDOW_HOURS')} must be positive")

        return TaskSettings(enabled=enabled, schedule=schedule, window_hours=window_hours)
