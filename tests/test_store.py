# tests/test_store.py

import sqlite3
from datetime import datetime, timedelta

import pytest
from sqlalchemy import inspect

from cronie.models import ExecutionResult, LogFilter, LogStatus, TaskConfigError, TaskType
from cronie.store import TaskStore


def _shell(store: TaskStore, name: str = "job", command: str = "echo hi", **fields) -> int:
    return store.insert_task(name, "*/5 * * * *", "shell", {'command': command}, **fields)


def test_insert_applies_defaults(store) -> None:
    task_id = _shell(store)
    task = store.get_task(task_id)

    assert task.name == "job"
    assert task.task_type is TaskType.SHELL
    assert task.config == {'command': 'echo hi'}
    assert task.enabled is True
    assert task.retry_count == 0
    assert task.retry_delay_ms == 1000
    assert task.timeout_ms == 30000
    assert task.tags == []
    assert task.created_at is not None
    assert task.updated_at == task.created_at


def test_insert_assigns_increasing_sort_order(store) -> None:
    first = store.get_task(_shell(store, "a"))
    second = store.get_task(_shell(store, "b"))
    assert second.sort_order == first.sort_order + 1


def test_insert_rejects_invalid_config(store) -> None:
    with pytest.raises(TaskConfigError):
        store.insert_task("bad", "* * * * *", "shell", {})
    with pytest.raises(TaskConfigError):
        store.insert_task("bad", "* * * * *", "http", {'url': 'ftp://example.com'})
    with pytest.raises(TaskConfigError):
        store.insert_task("bad", "* * * * *", "cobol", {'command': 'x'})
    with pytest.raises(TaskConfigError):
        _shell(store, retry_count=-1)
    with pytest.raises(TaskConfigError):
        _shell(store, colour="blue")

    assert store.count_tasks() == 0


@pytest.mark.parametrize("config", [
    {'command': 'echo a\x00b'},
    {'command': 'true', 'working_dir': '/tmp\x00'},
    {'command': 'true', 'env': {'A': 'x\x00y'}},
    {'command': 'true', 'env': {'A=B': 'x'}},
    {'command': 'true', 'env': {'': 'x'}},
])
def test_insert_rejects_values_the_shell_cannot_receive(store, config) -> None:
    with pytest.raises(TaskConfigError):
        store.insert_task("bad", "* * * * *", "shell", config)
    assert store.count_tasks() == 0


def test_invalid_cron_is_stored_as_given(store) -> None:
    task_id = store.insert_task("odd", "every tuesday", "shell", {'command': 'true'})
    assert store.get_task(task_id).cron_expression == "every tuesday"


def test_plugin_task_is_stored(store) -> None:
    task_id = store.insert_task("plug", "* * * * *", "plugin", {'name': 'whatever'})
    task = store.get_task(task_id)
    assert task.task_type is TaskType.PLUGIN
    assert task.config == {'name': 'whatever'}


def test_update_is_partial(store) -> None:
    task_id = _shell(store, tags=["a", "b"])

    assert store.update_task(task_id, cron_expression="0 * * * *", retry_count=2) is True

    task = store.get_task(task_id)
    assert task.cron_expression == "0 * * * *"
    assert task.retry_count == 2
    assert task.config == {'command': 'echo hi'}
    assert task.tags == ["a", "b"]


def test_update_config_is_validated_against_current_kind(store) -> None:
    task_id = _shell(store)
    with pytest.raises(TaskConfigError):
        store.update_task(task_id, config={'url': 'http://example.com'})

    store.update_task(task_id, task_type="http", config={'url': 'http://example.com', 'method': 'post'})
    task = store.get_task(task_id)
    assert task.task_type is TaskType.HTTP
    assert task.config == {'url': 'http://example.com', 'method': 'POST'}


def test_update_missing_task(store) -> None:
    assert store.update_task(999, name="x") is False


def test_toggle(store) -> None:
    task_id = _shell(store)
    assert store.toggle_task(task_id) is True
    assert store.get_task(task_id).enabled is False
    store.toggle_task(task_id)
    assert store.get_task(task_id).enabled is True
    assert store.toggle_task(999) is False


def test_reorder_and_list_order(store) -> None:
    a, b, c = (_shell(store, name) for name in ("a", "b", "c"))
    store.reorder_tasks([c, a, b])
    assert [task.name for task in store.list_tasks()] == ["c", "a", "b"]


def test_load_enabled_tasks(store) -> None:
    on = _shell(store, "on")
    _shell(store, "off", enabled=False)
    assert [task.id for task in store.load_enabled_tasks()] == [on]


def test_delete_removes_history(store) -> None:
    task_id = _shell(store)
    log_id = store.begin_attempt(task_id, 0)

    assert store.delete_task(task_id) is True
    assert store.get_task(task_id) is None
    assert store.get_log(log_id) is None
    assert store.delete_task(task_id) is False


def test_attempt_lifecycle(store) -> None:
    task_id = _shell(store)
    log_id = store.begin_attempt(task_id, 0)

    running = store.get_log(log_id)
    assert running.status is LogStatus.RUNNING
    assert running.end_time is None
    assert running.task_name == "job"

    result = ExecutionResult(status=LogStatus.FAILURE, duration_ms=12, exit_code=2,
                             stdout="out", stderr="err", error_message="Process exited with code 2")
    assert store.finish_attempt(log_id, result) is True

    log = store.get_log(log_id)
    assert log.status is LogStatus.FAILURE
    assert log.exit_code == 2
    assert log.stdout == "out"
    assert log.stderr == "err"
    assert log.duration_ms == 12
    assert log.end_time is not None

    # A closed row is never reopened or overwritten
    assert store.finish_attempt(log_id, ExecutionResult(status=LogStatus.SUCCESS)) is False
    assert store.get_log(log_id).status is LogStatus.FAILURE


def test_record_skipped(store) -> None:
    task_id = _shell(store)
    log = store.get_log(store.record_skipped(task_id, 0, "busy"))
    assert log.status is LogStatus.SKIPPED
    assert log.error_message == "busy"
    assert log.end_time is not None


def _finished(store, task_id, status, stdout="", error=None, start_time=None) -> int:
    log_id = store.begin_attempt(task_id, 0, start_time=start_time)
    store.finish_attempt(log_id, ExecutionResult(status=status, stdout=stdout, error_message=error))
    return log_id


def test_query_logs_filters_and_order(store) -> None:
    a = _shell(store, "a")
    b = _shell(store, "b")
    base = datetime.now() - timedelta(minutes=10)
    first = _finished(store, a, LogStatus.SUCCESS, stdout="all good", start_time=base)
    second = _finished(store, a, LogStatus.FAILURE, error="disk 100% full", start_time=base + timedelta(minutes=1))
    third = _finished(store, b, LogStatus.TIMEOUT, start_time=base + timedelta(minutes=2))

    assert [log.id for log in store.query_logs()] == [third, second, first]
    assert [log.id for log in store.query_logs(LogFilter(task_id=a))] == [second, first]
    assert [log.id for log in store.query_logs(LogFilter(status='timeout'))] == [third]
    assert [log.id for log in store.query_logs(LogFilter(search="good"))] == [first]
    assert [log.id for log in store.query_logs(LogFilter(search="100%"))] == [second]
    assert store.query_logs(LogFilter(search="%")) == store.query_logs(LogFilter(search="100%"))
    assert [log.id for log in store.query_logs(LogFilter(limit=1, offset=1))] == [second]
    assert [log.task_name for log in store.query_logs()] == ["b", "a", "a"]

    assert store.count_logs() == 3
    assert store.count_logs(LogFilter(task_id=a)) == 2
    assert store.count_logs(LogFilter(task_id=a, limit=1)) == 2


def test_log_stats(store) -> None:
    a = _shell(store, "a")
    b = _shell(store, "b")
    for status in (LogStatus.SUCCESS, LogStatus.FAILURE, LogStatus.FAILURE):
        _finished(store, a, status)
    _finished(store, b, LogStatus.FAILURE)
    _finished(store, b, LogStatus.TIMEOUT)

    stats = store.log_stats()
    assert stats.total == 5
    assert stats.success == 1
    assert stats.failure == 3
    assert stats.timeout == 1
    assert len(stats.recent) == 5
    assert [(t.name, t.failure_count) for t in stats.failing_tasks] == [("a", 2), ("b", 1)]
    assert stats.success_rate == pytest.approx(0.2)


def test_delete_and_clear_logs(store) -> None:
    a = _shell(store, "a")
    b = _shell(store, "b")
    log_id = _finished(store, a, LogStatus.SUCCESS)
    _finished(store, a, LogStatus.SUCCESS)
    _finished(store, b, LogStatus.SUCCESS)

    assert store.delete_log(log_id) is True
    assert store.delete_log(log_id) is False
    assert store.clear_logs(task_id=a) == 1
    assert store.count_logs() == 1
    assert store.clear_logs() == 1
    assert store.count_logs() == 0


def test_settings_upsert(store) -> None:
    assert store.get_setting("theme") is None
    store.set_setting("theme", "dark")
    store.set_setting("theme", "light")
    store.set_setting("tz", "UTC")
    assert store.get_setting("theme") == "light"
    assert store.all_settings() == {"theme": "light", "tz": "UTC"}


def test_data_survives_reopen(tmp_path) -> None:
    path = tmp_path / "reopen.db"
    first = TaskStore(path)
    task_id = _shell(first)
    first.close()

    second = TaskStore(path)
    assert second.get_task(task_id).name == "job"
    second.close()


def test_missing_columns_are_added(tmp_path) -> None:
    path = tmp_path / "old.db"
    conn = sqlite3.connect(str(path))
    conn.execute(
        "CREATE TABLE tasks ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, description TEXT NOT NULL DEFAULT '', "
        "cron_expression TEXT NOT NULL, task_type VARCHAR(16) NOT NULL, config TEXT NOT NULL DEFAULT '{}', "
        "enabled BOOLEAN NOT NULL DEFAULT 1, tags TEXT NOT NULL DEFAULT '', "
        "retry_count INTEGER NOT NULL DEFAULT 0, retry_delay_ms INTEGER NOT NULL DEFAULT 1000, "
        "timeout_ms INTEGER NOT NULL DEFAULT 30000, created_at DATETIME NOT NULL, updated_at DATETIME NOT NULL)"
    )
    conn.execute(
        "INSERT INTO tasks (name, cron_expression, task_type, config, created_at, updated_at) "
        "VALUES ('legacy', '* * * * *', 'shell', '{\"command\": \"true\"}', "
        "'2024-01-01 00:00:00.000000', '2024-01-01 00:00:00.000000')"
    )
    conn.commit()
    conn.close()

    store = TaskStore(path)
    columns = {c['name'] for c in inspect(store.engine).get_columns('tasks')}
    assert 'sort_order' in columns
    assert [task.name for task in store.list_tasks()] == ["legacy"]
    store.close()
