"""
Pytest configuration and fixtures for reconciliation scheduler tests.
Provides shared tasks, stores and an isolated metrics registry.
"""

import importlib
import os
import threading
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from opsutils.metrics import TaskRunMetrics
from reconciler import lifecycle
from reconciler.models import Summary
from reconciler.registry import TaskRegistry
from reconciler.runner import TaskRunner
from reconciler.schedule import Schedule
from reconciler.scheduler import ReconciliationScheduler
from reconciler.store import InMemoryRunStore
from reconciler.task import ReconciliationTask


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Get project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture(autouse=True)
def set_test_env_vars(monkeypatch) -> None:
    """Keep tests independent of the developer's environment."""
    for key in list(os.environ):
        if key.startswith("RECONCILIATION_") or key.startswith("POSTGRES_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("POSTMARK_API_TOKEN", raising=False)
    monkeypatch.delenv("METRICS_PORT", raising=False)
    monkeypatch.delenv("OTLP_ENDPOINT", raising=False)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Each test starts without a scheduler singleton or bootstrap result."""
    lifecycle.shutdown()
    yield
    lifecycle.shutdown()


@pytest.fixture
def reload_module():
    """Reload modules the way a development reloader does, restoring them afterwards."""
    saved = []

    def reload(module):
        saved.append((module, dict(vars(module))))
        return importlib.reload(module)

    yield reload
    for module, namespace in reversed(saved):
        vars(module).update(namespace)


class StubTask(ReconciliationTask):
    """Task whose reconcile() behaviour is driven by the test."""

    task_id = "stub-task"
    display_name = "Stub task"
    default_schedule = Schedule.every(minutes=5)

    def __init__(self, task_id: str | None = None, result=None, **kwargs):
        if task_id is not None:
            self.task_id = task_id
        super().__init__(**kwargs)
        self.result = result if result is not None else Summary(scanned=1)
        self.calls = []
        self.started = threading.Event()
        self.release = None

    def reconcile(self, context):
        self.calls.append(context)
        self.started.set()
        if self.release is not None:
            self.release.wait(timeout=5)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


@pytest.fixture
def stub_task_factory():
    return StubTask


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def task_metrics(metrics_registry) -> TaskRunMetrics:
    return TaskRunMetrics(registry=metrics_registry)


@pytest.fixture
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture
def runner(run_store, task_metrics) -> TaskRunner:
    return TaskRunner(run_store, metrics=task_metrics)


@pytest.fixture
def scheduler(registry, runner):
    scheduler = ReconciliationScheduler(registry=registry, runner=runner)
    yield scheduler
    scheduler.stop()
