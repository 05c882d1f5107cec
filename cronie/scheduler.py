"""
Cron scheduler built on APScheduler.

Holds at most one job per task id, derived from the task's 5-field cron
expression. Fired jobs run on APScheduler's thread pool and hand the
task to the RetryCoordinator, so a slow task never blocks other timers.

Jobs live in memory only; they are rebuilt from the task table on start.
"""

import logging
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List

from apscheduler.events import (
    EVENT_JOB_ADDED,
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_MISSED,
    EVENT_JOB_REMOVED,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from cronie.models import Task
from cronie.retry import RetryCoordinator
from cronie.store import TaskStore

logger = logging.getLogger(__name__)

JOB_PREFIX = "task-"

# Crontab numbering: 0 (and 7) is Sunday
DOW_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _translate_day_of_week(field: str) -> str:
    """
    Convert a crontab day-of-week field to APScheduler syntax.

    APScheduler numbers weekdays from Monday, so numeric terms are
    expanded to day names. Named terms (mon-fri) pass through.
    """
    if field == '*':
        return field

    parts: List[str] = []
    for term in field.split(','):
        if not term or any(c.isalpha() for c in term):
            parts.append(term.lower())
            continue

        base, _, step_text = term.partition('/')
        step = int(step_text) if step_text else 1
        if base == '*':
            first, last = 0, 6
        elif '-' in base:
            first_text, _, last_text = base.partition('-')
            first, last = int(first_text), int(last_text)
        else:
            first = int(base)
            last = 6 if step_text else first

        if step <= 0 or not 0 <= first <= last <= 7:
            raise ValueError(f"Invalid day-of-week term: {term}")

        for day in range(first, last + 1, step):
            name = DOW_NAMES[day % 7]
            if name not in parts:
                parts.append(name)

    return ','.join(parts)


def build_trigger(cron_expression: str, timezone=None) -> CronTrigger:
    """
    Build an APScheduler trigger from a 5-field cron expression.

    Args:
        cron_expression: Cron expression (e.g., "*/5 * * * 1-5")
        timezone: Trigger timezone (scheduler local zone if None)

    Raises:
        ValueError: If the expression is not a valid 5-field cron expression
    """
    parts = cron_expression.split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron expression (expected 5 fields): {cron_expression}")

    minute, hour, day, month, day_of_week = parts
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_translate_day_of_week(day_of_week),
        timezone=timezone
    )


def is_valid_cron(cron_expression: str) -> bool:
    try:
        build_trigger(cron_expression)
    except (ValueError, TypeError):
        return False
    return True


class CronScheduler:
    """
    One timer per enabled task, plus a global pause flag.

    Per task id the state is either unscheduled or scheduled; every
    mutation of a task must end with reschedule_task(task_id).
    """

    def __init__(self, store: TaskStore, coordinator: RetryCoordinator, max_workers: int = 10):
        """
        Initialize the scheduler (not started).

        Args:
            store: Task store that timers are derived from
            coordinator: Retry coordinator that fired tasks are handed to
            max_workers: Maximum number of concurrently running fired tasks
        """
        self.store = store
        self.coordinator = coordinator
        self._paused = False
        self._lock = threading.RLock()

        executors = {
            'default': ThreadPoolExecutor(max_workers)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple missed runs into one
            'max_instances': 1,  # A timer never overlaps its own previous run
            'misfire_grace_time': 300  # 5 minutes grace period
        }

        self._scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults)
        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.debug(f"Job '{event.job_id}' finished (status: {event.retval})")

        def job_error_listener(event):
            logger.error(f"Job '{event.job_id}' raised exception: {event.exception}")

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time")

        def job_max_instances_listener(event):
            logger.warning(f"Job '{event.job_id}' is still running, skipping this tick")

        def job_added_listener(event):
            logger.debug(f"Job '{event.job_id}' added to scheduler")

        def job_removed_listener(event):
            logger.debug(f"Job '{event.job_id}' removed from scheduler")

        self._scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self._scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self._scheduler.add_listener(job_max_instances_listener, EVENT_JOB_MAX_INSTANCES)
        self._scheduler.add_listener(job_added_listener, EVENT_JOB_ADDED)
        self._scheduler.add_listener(job_removed_listener, EVENT_JOB_REMOVED)

    @staticmethod
    def job_id(task_id: int) -> str:
        return f"{JOB_PREFIX}{task_id}"

    # ---- lifecycle ----

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self):
        """Create timers for every enabled task and start the clock."""
        if self._scheduler.running:
            logger.warning("Scheduler is already running")
            return

        tasks = self.store.load_enabled_tasks()
        scheduled = sum(1 for task in tasks if self.schedule_task(task))
        self._scheduler.start()
        logger.info(f"Scheduler started with {scheduled} of {len(tasks)} enabled task(s)")

    def shutdown(self, wait: bool = True):
        """
        Cancel all timers and stop the clock.

        Args:
            wait: If True, wait for running tasks to complete
        """
        with self._lock:
            self._scheduler.remove_all_jobs()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    # ---- per-task timers ----

    def schedule_task(self, task: Task) -> bool:
        """
        Replace the task's timer with one bound to its current expression.

        A disabled task, or one whose cron expression does not parse,
        ends up with no timer.

        Returns:
            True if a timer now exists for the task
        """
        with self._lock:
            self.unschedule_task(task.id)

            if not task.enabled:
                return False

            try:
                trigger = build_trigger(task.cron_expression)
            except (ValueError, TypeError) as e:
                logger.warning(f"Task {task.id} ('{task.name}') not scheduled: {e}")
                return False

            self._scheduler.add_job(
                self._fire,
                trigger,
                args=[task],
                id=self.job_id(task.id),
                name=task.name,
                replace_existing=True
            )
            logger.info(f"Scheduled task {task.id} ('{task.name}') with '{task.cron_expression}'")
            return True

    def unschedule_task(self, task_id: int) -> bool:
        """Remove the task's timer if present. Idempotent."""
        with self._lock:
            try:
                self._scheduler.remove_job(self.job_id(task_id))
            except JobLookupError:
                return False
            logger.info(f"Unscheduled task {task_id}")
            return True

    def reschedule_task(self, task_id: int) -> bool:
        """
        Re-derive a task's timer from the store.

        Call after every create, update, delete or enable toggle.

        Returns:
            True if a timer now exists for the task
        """
        task = self.store.get_task(task_id)
        if task is None:
            self.unschedule_task(task_id)
            return False
        return self.schedule_task(task)

    def sync(self) -> int:
        """
        Rebuild every timer from the store (used on SIGHUP).

        Returns:
            Number of tasks scheduled
        """
        tasks = self.store.list_tasks()
        known = {task.id for task in tasks}
        with self._lock:
            for task_id in self.scheduled_task_ids():
                if task_id not in known:
                    self.unschedule_task(task_id)
            scheduled = sum(1 for task in tasks if self.schedule_task(task))
        logger.info(f"Synchronized timers: {scheduled} task(s) scheduled")
        return scheduled

    def is_scheduled(self, task_id: int) -> bool:
        return self._scheduler.get_job(self.job_id(task_id)) is not None

    def scheduled_task_ids(self) -> List[int]:
        return [
            int(job.id[len(JOB_PREFIX):])
            for job in self._scheduler.get_jobs()
            if job.id.startswith(JOB_PREFIX)
        ]

    def next_fire_time(self, task_id: int, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next time the task's timer will fire, or None if unscheduled."""
        job = self._scheduler.get_job(self.job_id(task_id))
        if job is None:
            return None
        now = now or datetime.now(job.trigger.timezone)
        if now.tzinfo is None:
            now = now.replace(tzinfo=job.trigger.timezone)
        return job.trigger.get_next_fire_time(None, now)

    def get_jobs(self) -> List[Dict[str, Any]]:
        """
        Get list of all timers.

        Returns:
            List of job information dictionaries
        """
        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })
        return jobs

    # ---- pause ----

    def pause(self):
        """Drop fired ticks until resume(). Running tasks are not affected."""
        self._paused = True
        logger.info("Scheduler paused")

    def resume(self):
        self._paused = False
        logger.info("Scheduler resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    # ---- firing ----

    def _fire(self, task: Task) -> Optional[str]:
        """Timer callback, runs on the APScheduler thread pool."""
        if self._paused:
            logger.info(f"Scheduler paused, dropping tick for task {task.id} ('{task.name}')")
            return None

        try:
            result = self.coordinator.run_with_retry(task)
        except Exception:
            logger.exception(f"Task {task.id} ('{task.name}') raised during scheduled run")
            return None
        return result.status.value
