# tests/test_retry.py

import threading
from typing import List

from cronie.executor import TaskExecutor
from cronie.models import ExecutionResult, LogFilter, LogStatus
from cronie.retry import RetryCoordinator, backoff_delay_ms


def _add(store, command: str, **fields):
    task_id = store.insert_task("job", "* * * * *", "shell", {'command': command}, **fields)
    return store.get_task(task_id)


def _attempts(store, task_id):
    logs = store.query_logs(LogFilter(task_id=task_id))
    return sorted(logs, key=lambda log: log.id)


def test_backoff_is_linear() -> None:
    assert [backoff_delay_ms(1000, attempt) for attempt in range(3)] == [1000, 2000, 3000]
    assert backoff_delay_ms(0, 5) == 0


def test_failure_is_retried_with_one_row_per_attempt(store, executor) -> None:
    sleeps: List[float] = []
    coordinator = RetryCoordinator(store, executor, sleep=sleeps.append)
    task = _add(store, "exit 1", retry_count=2, retry_delay_ms=1000)

    result = coordinator.run_with_retry(task)

    assert result.status is LogStatus.FAILURE
    logs = _attempts(store, task.id)
    assert [log.retry_attempt for log in logs] == [0, 1, 2]
    assert all(log.status is LogStatus.FAILURE for log in logs)
    assert all(log.exit_code == 1 for log in logs)
    assert sleeps == [1.0, 2.0]


def test_success_is_not_retried(store, executor) -> None:
    sleeps: List[float] = []
    coordinator = RetryCoordinator(store, executor, sleep=sleeps.append)
    task = _add(store, "echo ok", retry_count=3)

    result = coordinator.run_with_retry(task)

    assert result.status is LogStatus.SUCCESS
    assert [log.status for log in _attempts(store, task.id)] == [LogStatus.SUCCESS]
    assert sleeps == []


def test_timeout_is_not_retried(store, executor) -> None:
    sleeps: List[float] = []
    coordinator = RetryCoordinator(store, executor, sleep=sleeps.append)
    task = _add(store, "sleep 10", retry_count=3, timeout_ms=100)

    result = coordinator.run_with_retry(task)

    assert result.status is LogStatus.TIMEOUT
    assert [log.status for log in _attempts(store, task.id)] == [LogStatus.TIMEOUT]
    assert sleeps == []


def test_retry_stops_at_first_success(store, executor, tmp_path) -> None:
    coordinator = RetryCoordinator(store, executor, sleep=lambda seconds: None)
    marker = tmp_path / "marker"
    task = _add(store, f'if [ -f "{marker}" ]; then echo second; else touch "{marker}"; exit 1; fi', retry_count=5)

    result = coordinator.run_with_retry(task)

    assert result.status is LogStatus.SUCCESS
    logs = _attempts(store, task.id)
    assert [(log.retry_attempt, log.status) for log in logs] == [
        (0, LogStatus.FAILURE),
        (1, LogStatus.SUCCESS),
    ]
    assert logs[1].stdout == "second\n"


def test_no_rows_left_running(store, executor) -> None:
    coordinator = RetryCoordinator(store, executor, sleep=lambda seconds: None)
    task = _add(store, "exit 2", retry_count=1)
    coordinator.run_with_retry(task)

    assert store.count_logs(LogFilter(status='running')) == 0


class _BlockingExecutor(TaskExecutor):
    """Executor whose runs block until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def execute(self, task, attempt=0):
        self.entered.set()
        self.release.wait(10)
        return ExecutionResult(status=LogStatus.SUCCESS, exit_code=0)


def test_overlapping_runs_are_allowed_by_default(store) -> None:
    executor = _BlockingExecutor()
    coordinator = RetryCoordinator(store, executor)
    task = _add(store, "true")

    first = threading.Thread(target=coordinator.run_with_retry, args=(task,))
    first.start()
    assert executor.entered.wait(5)

    second = threading.Thread(target=coordinator.run_with_retry, args=(task,))
    second.start()
    executor.release.set()
    first.join(5)
    second.join(5)

    assert [log.status for log in _attempts(store, task.id)] == [LogStatus.SUCCESS, LogStatus.SUCCESS]


def test_exclusive_runs_skip_while_busy(store) -> None:
    executor = _BlockingExecutor()
    coordinator = RetryCoordinator(store, executor, exclusive_runs=True)
    task = _add(store, "true")

    first = threading.Thread(target=coordinator.run_with_retry, args=(task,))
    first.start()
    assert executor.entered.wait(5)

    skipped = coordinator.run_with_retry(task)
    executor.release.set()
    first.join(5)

    assert skipped.status is LogStatus.SKIPPED
    statuses = sorted(log.status.value for log in _attempts(store, task.id))
    assert statuses == ["skipped", "success"]

    # The lock is released once the first run finishes
    assert coordinator.run_with_retry(task).status is LogStatus.SUCCESS
