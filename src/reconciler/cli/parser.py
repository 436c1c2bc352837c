"""
Command-line argument parser configuration.

This module sets up the argument parser for the reconciler CLI tool,
defining all commands and their options.
"""

import argparse


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="reconciler",
        description="Background reconciliation of integration state (Postmark email delivery)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the scheduler and run every enabled task on its schedule
  reconciler run

  # Run one task now on behalf of a user
  reconciler trigger postmark-bounce-sync --user admin@example.com

  # Show registered tasks and their schedules
  reconciler tasks

  # Show the last 20 runs of a task as JSON
  reconciler history --task postmark-bounce-sync --limit 20 --format json

Configuration is read from the environment, e.g.:
  RECONCILIATION_RUN_STORE=json RECONCILIATION_POSTMARK_BOUNCE_SYNC_SCHEDULE=10m reconciler run
        """
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Logging level (default: LOG_LEVEL or INFO)'
    )
    parser.add_argument(
        '--log-json',
        action='store_true',
        help='Emit logs as JSON'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # ========== Run command ==========
    subparsers.add_parser('run', help='Start the scheduler and block until interrupted')

    # ========== Trigger command ==========
    trigger_parser = subparsers.add_parser('trigger', help='Run one task now (manual trigger)')
    trigger_parser.add_argument(
        'task_id',
        help='Task to run, e.g. postmark-bounce-sync'
    )
    trigger_parser.add_argument(
        '--user',
        default='cli',
        help='User recorded as triggered_by (default: cli)'
    )

    # ========== Tasks command ==========
    subparsers.add_parser('tasks', help='List registered tasks')

    # ========== History command ==========
    history_parser = subparsers.add_parser('history', help='Show recent task runs')
    history_parser.add_argument(
        '--task',
        help='Only show runs of this task'
    )
    history_parser.add_argument(
        '--limit',
        type=int,
        default=20,
        help='Number of runs to show (default: 20)'
    )
    history_parser.add_argument(
        '--format',
        choices=['console', 'json'],
        default='console',
        help='Output format (default: console)'
    )

    return parser
