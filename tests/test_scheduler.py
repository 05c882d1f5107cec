# tests/test_scheduler.py

import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from cronie.models import ExecutionResult, LogStatus, Task
from cronie.scheduler import CronScheduler, _translate_day_of_week, build_trigger, is_valid_cron


class FakeCoordinator:
    def __init__(self, error: Exception = None):
        self.calls: List[Task] = []
        self.error = error
        self.fired = threading.Event()

    def run_with_retry(self, task: Task) -> ExecutionResult:
        self.calls.append(task)
        self.fired.set()
        if self.error:
            raise self.error
        return ExecutionResult(status=LogStatus.SUCCESS)


@pytest.fixture()
def coordinator() -> FakeCoordinator:
    return FakeCoordinator()


@pytest.fixture()
def scheduler(store, coordinator) -> CronScheduler:
    cron = CronScheduler(store, coordinator, max_workers=2)
    yield cron
    cron.shutdown(wait=False)


def _add(store, cron: str = "*/5 * * * *", **fields) -> Task:
    task_id = store.insert_task("job", cron, "shell", {'command': 'true'}, **fields)
    return store.get_task(task_id)


@pytest.mark.parametrize("field, expected", [
    ("*", "*"),
    ("0", "sun"),
    ("7", "sun"),
    ("1-5", "mon,tue,wed,thu,fri"),
    ("0,6", "sun,sat"),
    ("*/2", "sun,tue,thu,sat"),
    ("5-7", "fri,sat,sun"),
    ("mon-fri", "mon-fri"),
    ("SUN,3", "sun,wed"),
])
def test_day_of_week_translation(field, expected) -> None:
    assert _translate_day_of_week(field) == expected


@pytest.mark.parametrize("field", ["8", "5-2", "1/0", "1-9", "-1"])
def test_day_of_week_translation_rejects_garbage(field) -> None:
    with pytest.raises(ValueError):
        _translate_day_of_week(field)


def test_unknown_day_name_is_invalid() -> None:
    with pytest.raises(ValueError):
        build_trigger("0 0 * * funday")


def test_numeric_weekdays_follow_crontab() -> None:
    # 2030-01-06 is a Sunday
    now = datetime(2030, 1, 6, 12, 0, tzinfo=timezone.utc)

    monday = build_trigger("0 9 * * 1", timezone='UTC').get_next_fire_time(None, now)
    sunday = build_trigger("0 9 * * 0", timezone='UTC').get_next_fire_time(None, now)
    sunday_7 = build_trigger("0 9 * * 7", timezone='UTC').get_next_fire_time(None, now)

    assert monday.replace(tzinfo=None) == datetime(2030, 1, 7, 9, 0)
    assert sunday.replace(tzinfo=None) == datetime(2030, 1, 13, 9, 0)
    assert sunday_7 == sunday


@pytest.mark.parametrize("expression, valid", [
    ("*/5 * * * *", True),
    ("0 9 * * 1-5", True),
    ("30 2 1 * *", True),
    ("* * * *", False),
    ("* * * * * *", False),
    ("61 * * * *", False),
    ("not a cron at all", False),
    ("", False),
])
def test_is_valid_cron(expression, valid) -> None:
    assert is_valid_cron(expression) is valid


def test_enabled_task_is_scheduled(scheduler, store) -> None:
    task = _add(store)

    assert scheduler.schedule_task(task) is True
    assert scheduler.is_scheduled(task.id)
    assert scheduler.scheduled_task_ids() == [task.id]
    assert scheduler.next_fire_time(task.id) is not None


def test_disabled_task_is_not_scheduled(scheduler, store) -> None:
    task = _add(store, enabled=False)

    assert scheduler.schedule_task(task) is False
    assert not scheduler.is_scheduled(task.id)
    assert scheduler.next_fire_time(task.id) is None


def test_invalid_cron_is_not_scheduled(scheduler, store) -> None:
    task = _add(store, cron="every day at noon")

    assert scheduler.schedule_task(task) is False
    assert not scheduler.is_scheduled(task.id)


def test_reschedule_follows_store(scheduler, store) -> None:
    task = _add(store)
    scheduler.reschedule_task(task.id)
    assert scheduler.is_scheduled(task.id)

    store.update_task(task.id, enabled=False)
    assert scheduler.reschedule_task(task.id) is False
    assert not scheduler.is_scheduled(task.id)

    store.update_task(task.id, enabled=True, cron_expression="0 3 * * *")
    assert scheduler.reschedule_task(task.id) is True
    assert scheduler.next_fire_time(task.id).hour == 3

    store.update_task(task.id, cron_expression="bogus")
    assert scheduler.reschedule_task(task.id) is False
    assert not scheduler.is_scheduled(task.id)


def test_reschedule_deleted_task(scheduler, store) -> None:
    task = _add(store)
    scheduler.schedule_task(task)
    store.delete_task(task.id)

    assert scheduler.reschedule_task(task.id) is False
    assert not scheduler.is_scheduled(task.id)


def test_at_most_one_timer_per_task(scheduler, store) -> None:
    task = _add(store)
    scheduler.schedule_task(task)
    scheduler.schedule_task(task)
    scheduler.reschedule_task(task.id)

    assert scheduler.scheduled_task_ids() == [task.id]


def test_unschedule_is_idempotent(scheduler, store) -> None:
    task = _add(store)
    scheduler.schedule_task(task)

    assert scheduler.unschedule_task(task.id) is True
    assert scheduler.unschedule_task(task.id) is False
    assert scheduler.unschedule_task(12345) is False


def test_sync_rebuilds_from_store(scheduler, store) -> None:
    keep = _add(store)
    gone = _add(store)
    disabled = _add(store)
    for task in (keep, gone, disabled):
        scheduler.schedule_task(task)

    store.delete_task(gone.id)
    store.update_task(disabled.id, enabled=False)

    assert scheduler.sync() == 1
    assert scheduler.scheduled_task_ids() == [keep.id]


def test_fire_hands_task_to_coordinator(scheduler, store, coordinator) -> None:
    task = _add(store)

    assert scheduler._fire(task) == "success"
    assert coordinator.calls == [task]


def test_paused_ticks_are_dropped(scheduler, store, coordinator) -> None:
    task = _add(store)

    scheduler.pause()
    assert scheduler.paused
    assert scheduler._fire(task) is None
    assert coordinator.calls == []

    scheduler.resume()
    assert not scheduler.paused
    scheduler._fire(task)
    assert coordinator.calls == [task]


def test_fire_survives_coordinator_errors(store) -> None:
    cron = CronScheduler(store, FakeCoordinator(error=RuntimeError("database is locked")))
    assert cron._fire(_add(store)) is None


def test_start_loads_enabled_tasks_and_shutdown_clears(scheduler, store) -> None:
    on = _add(store)
    _add(store, enabled=False)
    _add(store, cron="nope")

    scheduler.start()
    assert scheduler.running
    assert scheduler.scheduled_task_ids() == [on.id]
    assert scheduler.get_jobs()[0]['next_run'] is not None

    scheduler.shutdown(wait=False)
    assert not scheduler.running
    assert scheduler.scheduled_task_ids() == []


def _fire_in(scheduler: CronScheduler, task_id: int, seconds: float = 0) -> None:
    """Move a live timer's next run so the clock fires it shortly."""
    scheduler._scheduler.modify_job(
        scheduler.job_id(task_id),
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=seconds)
    )


def test_clock_fires_only_enabled_tasks(scheduler, store, coordinator) -> None:
    task = _add(store)
    scheduler.start()

    _fire_in(scheduler, task.id)
    assert coordinator.fired.wait(5)
    assert [t.id for t in coordinator.calls] == [task.id]

    # Disabling cancels a tick that is already due soon
    coordinator.fired.clear()
    _fire_in(scheduler, task.id, seconds=0.5)
    store.update_task(task.id, enabled=False)
    scheduler.reschedule_task(task.id)
    assert not coordinator.fired.wait(1.5)
    assert len(coordinator.calls) == 1

    store.update_task(task.id, enabled=True)
    assert scheduler.reschedule_task(task.id) is True
    _fire_in(scheduler, task.id)
    assert coordinator.fired.wait(5)
    assert len(coordinator.calls) == 2


def test_clock_drops_ticks_while_paused(scheduler, store, coordinator) -> None:
    task = _add(store)
    scheduler.start()
    scheduler.pause()

    _fire_in(scheduler, task.id)
    assert not coordinator.fired.wait(1)
    assert coordinator.calls == []
    assert scheduler.is_scheduled(task.id)
