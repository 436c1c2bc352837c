"""
Built-in reconciliation tasks

Usage:
    from reconciler.tasks import build_default_tasks

    tasks = build_default_tasks(ReconcilerSettings.from_env())
"""

import logging

from ..config import ReconcilerSettings
from ..task import ReconciliationTask
from .email_store import EmailEvent, EmailRecord, EmailStateStore, InMemoryEmailStore, PostgresEmailStore
from .postmark import PostmarkBounceSyncTask
from .postmark_client import PostmarkAPIError, PostmarkClient, PostmarkRateLimitError

logger = logging.getLogger(__name__)


def build_email_store(settings: ReconcilerSettings) -> EmailStateStore:
    if settings.postgres.get("password"):
        store = PostgresEmailStore.from_config(settings.postgres)
        store.ensure_schema()
        return store
    logger.warning("POSTGRES_PASSWORD not set, Postmark reconciliation uses an in-memory email store")
    return InMemoryEmailStore()


def build_default_tasks(settings: ReconcilerSettings) -> list[ReconciliationTask]:
    """
    Instantiate the built-in tasks with per-task overrides from ``settings``

    Raises:
        ValueError: If an override cannot be parsed
    """
    overrides = settings.task_settings(PostmarkBounceSyncTask.task_id)
    return [
        PostmarkBounceSyncTask(
            store=build_email_store(settings),
            api_token=settings.postmark_api_token,
            schedule=overrides.schedule,
            enabled=overrides.enabled,
            window_hours=overrides.window_hours,
        ),
    ]


__all__ = [
    "PostmarkBounceSyncTask",
    "PostmarkClient",
    "PostmarkAPIError",
    "PostmarkRateLimitError",
    "EmailRecord",
    "EmailEvent",
    "EmailStateStore",
    "InMemoryEmailStore",
    "PostgresEmailStore",
    "build_default_tasks",
    "build_email_store",
]
