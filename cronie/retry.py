"""
Retry coordination around the execution engine.

Every attempt gets its own execution log row: begin_attempt() before
the attempt runs, finish_attempt() once it resolves. Only 'failure'
results are retried; 'success', 'timeout', 'skipped' and killed
sessions are terminal.
"""

import logging
import threading
import time
from typing import Callable, Dict

from cronie.executor import TaskExecutor
from cronie.models import ExecutionResult, LogStatus, Task
from cronie.store import TaskStore

logger = logging.getLogger(__name__)


def backoff_delay_ms(base_ms: int, attempt: int) -> int:
    """Linear backoff: wait base * (attempt + 1) before the next attempt."""
    return base_ms * (attempt + 1)


class RetryCoordinator:
    """
    Runs a task through the executor with its retry policy.

    Storage errors from begin_attempt/finish_attempt propagate to the
    caller; they are never swallowed here.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: TaskExecutor,
        exclusive_runs: bool = False,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the coordinator.

        Args:
            store: Store that attempts are logged to
            executor: Engine that runs each attempt
            exclusive_runs: If True, a run that finds the same task already
                            executing is recorded as 'skipped' instead
            sleep: Sleep function used for backoff (seconds)
        """
        self.store = store
        self.executor = executor
        self.exclusive_runs = exclusive_runs
        self._sleep = sleep
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _task_lock(self, task_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(task_id, threading.Lock())

    def run_with_retry(self, task: Task) -> ExecutionResult:
        """
        Execute a task, retrying failures up to task.retry_count times.

        Returns:
            The terminal attempt's result
        """
        if not self.exclusive_runs:
            return self._run_attempts(task)

        lock = self._task_lock(task.id)
        if not lock.acquire(blocking=False):
            reason = "Skipped: task is already running"
            logger.info(f"[{task.name}] {reason}")
            self.store.record_skipped(task.id, 0, reason)
            return ExecutionResult(status=LogStatus.SKIPPED, error_message=reason)
        try:
            return self._run_attempts(task)
        finally:
            lock.release()

    def _run_attempts(self, task: Task) -> ExecutionResult:
        attempt = 0
        while True:
            log_prefix = f"[{task.name}:{attempt}]"
            logger.info(f"{log_prefix} Attempt {attempt + 1}/{task.retry_count + 1}")

            log_id = self.store.begin_attempt(task.id, attempt)
            result = self.executor.execute(task, attempt)
            self.store.finish_attempt(log_id, result)

            if result.status is LogStatus.FAILURE and not result.retryable:
                logger.warning(f"{log_prefix} {result.error_message}; not retrying")
                return result

            if result.status is not LogStatus.FAILURE or attempt >= task.retry_count:
                if result.status is LogStatus.FAILURE and task.retry_count:
                    logger.error(f"{log_prefix} Failed after {attempt + 1} attempts")
                return result

            delay_ms = backoff_delay_ms(task.retry_delay_ms, attempt)
            logger.warning(
                f"{log_prefix} Failed: {result.error_message}; retrying in {delay_ms}ms"
            )
            self._sleep(delay_ms / 1000)
            attempt += 1
