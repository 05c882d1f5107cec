"""
Crash recovery.

A row left in 'running' state by a crashed or killed process would look
in flight forever. At startup, before any timer is created, such rows
older than the staleness window are closed as failures.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from cronie.store import TaskStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Task was interrupted (app crash or restart)"
DEFAULT_STALE_AFTER = timedelta(hours=1)


def recover_interrupted_runs(
    store: TaskStore,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
    now: Optional[datetime] = None
) -> int:
    """
    Reconcile stale 'running' execution logs to 'failure'.

    Args:
        store: Task store
        stale_after: Age beyond which a running row is presumed orphaned
        now: Reference time (defaults to the current time)

    Returns:
        Number of rows reconciled
    """
    now = now or datetime.now()
    count = store.fail_stale_runs(now - stale_after, INTERRUPTED_MESSAGE, now=now)
    if count:
        logger.warning(f"Marked {count} interrupted run(s) as failed")
    else:
        logger.debug("No interrupted runs to recover")
    return count
