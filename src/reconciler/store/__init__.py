"""
Run-history stores

Usage:
    from reconciler.store import build_run_store

    store = build_run_store(settings)
    store.list_runs(task_id="postmark-bounce-sync", limit=10)
"""

from typing import TYPE_CHECKING

from .base import RunStore
from .json_file import JsonFileRunStore
from .memory import InMemoryRunStore
from .postgres import PostgresRunStore

if TYPE_CHECKING:
    from ..config import ReconcilerSettings


def build_run_store(settings: "ReconcilerSettings") -> RunStore:
    """
    Create the run store selected by ``settings.run_store``

    Raises:
        ValueError: For an unknown backend
    """
    if settings.run_store == "memory":
        return InMemoryRunStore()
    if settings.run_store == "json":
        return JsonFileRunStore(settings.state_dir)
    if settings.run_store == "postgres":
        store = PostgresRunStore.from_config(settings.postgres)
        store.ensure_schema()
        return store
    raise ValueError(f"Unknown run store backend: {settings.run_store}")


__all__ = [
    "RunStore",
    "InMemoryRunStore",
    "JsonFileRunStore",
    "PostgresRunStore",
    "build_run_store",
]
