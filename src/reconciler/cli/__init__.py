"""
Command-line interface for the reconciliation scheduler.

Available commands:
- run: Start the scheduler and block until interrupted
- trigger: Run one task now
- tasks: List registered tasks
- history: Show recent task runs
"""

import os
import sys

from opsutils.logging import setup_logging

from .commands import cmd_history, cmd_run, cmd_tasks, cmd_trigger
from .parser import create_parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the reconciler CLI"""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(
        level=args.log_level or os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
        json_format=args.log_json,
    )

    # Execute command
    if args.command == 'run':
        cmd_run(args)
    elif args.command == 'trigger':
        cmd_trigger(args)
    elif args.command == 'tasks':
        cmd_tasks(args)
    elif args.command == 'history':
        cmd_history(args)
    else:
        parser.print_help()
        sys.exit(1)


__all__ = [
    'main',
    'cmd_run',
    'cmd_trigger',
    'cmd_tasks',
    'cmd_history',
    'create_parser',
]


if __name__ == '__main__':
    main()
