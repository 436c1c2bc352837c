"""
Per-process state that survives re-import of reconciler modules.

Development reloaders re-execute module bodies (importlib.reload, or
dropping ``reconciler.*`` entries from sys.modules and importing again).
Anything that must exist once per process lives on a holder module
registered in sys.modules under a name outside the package, so a
re-executed module picks up the original instead of starting over.
"""

import sys
import threading
import types

HOLDER_NAME = "_reconciler_process_state"


def process_state() -> types.ModuleType:
    """
    Return the process-wide state holder, creating it on first call

    Attributes:
        scheduler: The ReconciliationScheduler singleton, or None
        scheduler_lock: Guards creation and reset of ``scheduler``
        bootstrap_result: The first BootstrapResult, or None
        bootstrap_lock: Guards ``bootstrap_result``
    """
    holder = sys.modules.get(HOLDER_NAME)
    if holder is None:
        candidate = types.ModuleType(HOLDER_NAME, "reconciler process state")
        candidate.scheduler = None
        candidate.scheduler_lock = threading.Lock()
        candidate.bootstrap_result = None
        candidate.bootstrap_lock = threading.Lock()
        # setdefault keeps the first holder when two threads race here
        holder = sys.modules.setdefault(HOLDER_NAME, candidate)
    return holder
