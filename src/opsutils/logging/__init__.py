"""
Structured logging configuration for the reconciliation scheduler

Provides JSON-formatted logging, console output with colors, and a
context-carrying logger for per-run fields.

Usage:
    from opsutils.logging import setup_logging, ContextLogger

    # Setup logging (call once at process startup)
    setup_logging(level="INFO", log_file="/var/log/reconciler/app.log")

    log = ContextLogger(__name__, task_id="postmark-bounce-sync")
    log.info("Run finished", corrected=3)
"""

from .config import configure_from_env, setup_logging, shutdown_logging
from .formatters import ConsoleFormatter, JSONFormatter
from .handlers import ContextLogger

__all__ = [
    "setup_logging",
    "configure_from_env",
    "shutdown_logging",
    "JSONFormatter",
    "ConsoleFormatter",
    "ContextLogger",
]
