"""
Shared operational utilities for the reconciliation scheduler

Provides:
- logging: structured/console logging setup and ContextLogger
- metrics: Prometheus task-run metrics and HTTP exporter
- tracing: OpenTelemetry span helpers
- retry: exponential backoff for external I/O
"""

__version__ = "1.0.0"
__all__ = ["logging", "metrics", "tracing", "retry"]
