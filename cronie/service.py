"""
Scheduler service facade.

Wires the engine together (store, executor, retry coordinator, cron
scheduler, live output bus) and exposes the operations used by the CLI:

- Task CRUD, each mutation followed by a timer rebuild
- Run-now through the retry coordinator
- Execution log queries, stats, export and cleanup
- Pause/resume/status and settings
- Live session listeners and kill-session

When started as a daemon, the service also owns a PID file and an info
file in the data directory, and reacts to signals:

    SIGINT/SIGTERM  stop
    SIGHUP          rebuild all timers from the store
    SIGUSR1         pause
    SIGUSR2         resume
"""

import atexit
import json
import logging
import os
import signal
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable, Tuple, Callable

from cronie.config import CronieConfig, get_data_dir
from cronie.events import EVENT_ALL, EventBus, Listener
from cronie.executor import TaskExecutor
from cronie.export import export_logs
from cronie.models import ExecutionLog, ExecutionResult, LogFilter, LogStats, Task
from cronie.recovery import recover_interrupted_runs
from cronie.retry import RetryCoordinator
from cronie.scheduler import CronScheduler
from cronie.sessions import SessionRegistry
from cronie.store import TaskStore

logger = logging.getLogger(__name__)

ENV_PID_FILE = "CRONIE_PID_FILE"


class TaskNotFoundError(LookupError):
    """Raised when an operation names a task id that does not exist."""

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


def _get_pid_file_path() -> Path:
    """Get the path to the scheduler PID file."""
    pid_path = os.environ.get(ENV_PID_FILE)
    if pid_path:
        return Path(pid_path).expanduser()
    return get_data_dir() / "scheduler.pid"


def _get_info_file_path() -> Path:
    """Get the path to the scheduler info file."""
    return _get_pid_file_path().with_name("scheduler_info.json")


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_scheduler_running() -> Tuple[bool, Optional[int]]:
    """
    Check if the scheduler daemon is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = _get_pid_file_path()

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return False, None

    if _is_process_running(pid):
        return True, pid

    # Stale PID file, clean it up
    logger.debug(f"Removing stale PID file {pid_file} (PID {pid})")
    pid_file.unlink(missing_ok=True)
    return False, None


def get_scheduler_info() -> Optional[Dict[str, Any]]:
    """
    Get information about the running scheduler daemon.

    Returns:
        Dict with scheduler info, or None if not running.
    """
    running, pid = is_scheduler_running()
    if not running:
        return None

    info = {'pid': pid, 'running': True, 'data_dir': str(get_data_dir())}
    info_file = _get_info_file_path()
    if info_file.exists():
        try:
            with open(info_file, 'r') as f:
                info.update(json.load(f))
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Could not read scheduler info file: {e}")
    info['running'] = True
    info['pid'] = pid
    return info


def signal_scheduler(signum: int) -> bool:
    """
    Send a signal to the running scheduler daemon.

    Returns:
        True if a daemon was found and signalled
    """
    running, pid = is_scheduler_running()
    if not running:
        return False
    os.kill(pid, signum)
    logger.debug(f"Sent signal {signum} to scheduler (PID: {pid})")
    return True


class CronieService:
    """
    Process-scoped scheduler engine.

    Construct once, start(), and stop() at teardown. All task mutations
    go through this object so timers always follow the store.
    """

    def __init__(
        self,
        config: Optional[CronieConfig] = None,
        config_path: Optional[str] = None,
        db_path: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the service (not started).

        Args:
            config: Loaded configuration (built from config_path/db_path if None)
            config_path: Path to configuration file
            db_path: Path to the SQLite database
            sleep: Sleep function used between retry attempts
        """
        self.config = config or CronieConfig(config_path, db_path)
        self.store = TaskStore(self.config.db_path)
        self.events = EventBus()
        self.sessions = SessionRegistry()
        self.executor = TaskExecutor(self.config.execution, self.sessions, self.events)
        self.coordinator = RetryCoordinator(
            self.store,
            self.executor,
            exclusive_runs=self.config.execution.exclusive_runs,
            sleep=sleep
        )
        self.scheduler = CronScheduler(
            self.store,
            self.coordinator,
            max_workers=self.config.execution.max_workers
        )
        self.started_at: Optional[datetime] = None
        self._daemon = False

        logger.debug(f"Service initialized with {self.config!r}")

    # ---- lifecycle ----

    def start(self, daemon: bool = False, paused: bool = False):
        """
        Recover interrupted runs, then start the timers.

        Args:
            daemon: Write the PID/info files and install signal handlers
            paused: Start with the pause flag set
        """
        if daemon:
            running, pid = is_scheduler_running()
            if running:
                raise RuntimeError(f"Scheduler is already running (PID: {pid})")

        stale_after = timedelta(minutes=self.config.recovery.stale_after_minutes)
        recover_interrupted_runs(self.store, stale_after)

        if paused:
            self.scheduler.pause()
        self.scheduler.start()
        self.started_at = datetime.now()

        if daemon:
            self._daemon = True
            self._setup_signal_handlers()
            self._write_pid_file()

        for job in self.scheduler.get_jobs():
            logger.info(f"  - {job['id']} ({job['name']}): next run at {job['next_run']}")

    def stop(self, wait: bool = True):
        """
        Cancel all timers and stop.

        Args:
            wait: If True, wait for running tasks to complete; otherwise
                  live shell sessions are terminated
        """
        if not wait:
            killed = self.sessions.kill_all()
            if killed:
                logger.info(f"Terminated {killed} live session(s)")
        self.scheduler.shutdown(wait=wait)
        if self._daemon:
            self._remove_pid_file()
            self._daemon = False

    def close(self):
        """Stop the service and release the database."""
        self.stop(wait=False)
        self.store.close()

    def _setup_signal_handlers(self):
        """Setup signal handlers for shutdown, re-sync and pause control."""

        def stop_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop()
            sys.exit(0)

        def sync_handler(signum, frame):
            logger.info("Received SIGHUP, reloading tasks from store")
            self.scheduler.sync()

        def pause_handler(signum, frame):
            self.pause()

        def resume_handler(signum, frame):
            self.resume()

        signal.signal(signal.SIGINT, stop_handler)
        signal.signal(signal.SIGTERM, stop_handler)
        signal.signal(signal.SIGHUP, sync_handler)
        signal.signal(signal.SIGUSR1, pause_handler)
        signal.signal(signal.SIGUSR2, resume_handler)

    def _write_pid_file(self):
        """Write the current process PID and scheduler info files."""
        pid_file = _get_pid_file_path()
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")

        self._write_info_file()

        # Register cleanup on exit
        atexit.register(self._remove_pid_file)

    def _write_info_file(self):
        info_file = _get_info_file_path()
        scheduler_info = {
            'pid': os.getpid(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'paused': self.scheduler.paused,
            'config_path': str(self.config.config_path),
            'db_path': str(self.store.db_path),
            'data_dir': str(get_data_dir()),
            'log_file': self.config.logging.file,
            'working_directory': os.getcwd(),
        }

        try:
            with open(info_file, 'w') as f:
                json.dump(scheduler_info, f, indent=2)
            logger.debug(f"Wrote scheduler info file: {info_file}")
        except OSError as e:
            logger.warning(f"Failed to write scheduler info file: {e}")

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (_get_pid_file_path(), _get_info_file_path()):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove {path}: {e}")

    # ---- tasks ----

    def _require_task(self, task_id: int) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def create_task(
        self,
        name: str,
        cron_expression: str,
        task_type: str,
        config: Optional[Dict[str, Any]] = None,
        **fields: Any
    ) -> Task:
        """
        Create a task and schedule it if enabled.

        Raises:
            TaskConfigError: If a field or the kind-specific config is invalid
        """
        task_id = self.store.insert_task(name, cron_expression, task_type, config, **fields)
        self.scheduler.reschedule_task(task_id)
        logger.info(f"Created task {task_id} ('{name}')")
        return self._require_task(task_id)

    def get_task(self, task_id: int) -> Task:
        return self._require_task(task_id)

    def list_tasks(self) -> List[Task]:
        return self.store.list_tasks()

    def update_task(self, task_id: int, **fields: Any) -> Task:
        """Apply a partial update and rebuild the task's timer."""
        if not self.store.update_task(task_id, **fields):
            raise TaskNotFoundError(task_id)
        self.scheduler.reschedule_task(task_id)
        logger.info(f"Updated task {task_id} ({', '.join(sorted(fields))})")
        return self._require_task(task_id)

    def delete_task(self, task_id: int):
        """Delete a task, its timer and its execution history."""
        self.scheduler.unschedule_task(task_id)
        if not self.store.delete_task(task_id):
            raise TaskNotFoundError(task_id)
        logger.info(f"Deleted task {task_id}")

    def toggle_task(self, task_id: int) -> Task:
        if not self.store.toggle_task(task_id):
            raise TaskNotFoundError(task_id)
        self.scheduler.reschedule_task(task_id)
        task = self._require_task(task_id)
        logger.info(f"Task {task_id} {'enabled' if task.enabled else 'disabled'}")
        return task

    def set_enabled(self, task_id: int, enabled: bool) -> Task:
        return self.update_task(task_id, enabled=enabled)

    def reorder_tasks(self, task_ids: Iterable[int]):
        """Set display order: each task's sort_order becomes its index in task_ids."""
        task_ids = list(task_ids)
        for task_id in task_ids:
            self._require_task(task_id)
        self.store.reorder_tasks(task_ids)

    def run_task_now(self, task_id: int) -> ExecutionResult:
        """Run a task immediately in the calling thread, bypassing its timer."""
        task = self._require_task(task_id)
        logger.info(f"Running task {task_id} ('{task.name}') now")
        return self.coordinator.run_with_retry(task)

    # ---- execution logs ----

    def list_logs(self, filters: Optional[LogFilter] = None) -> List[ExecutionLog]:
        return self.store.query_logs(filters)

    def count_logs(self, filters: Optional[LogFilter] = None) -> int:
        return self.store.count_logs(filters)

    def get_log(self, log_id: int) -> Optional[ExecutionLog]:
        return self.store.get_log(log_id)

    def log_stats(self) -> LogStats:
        return self.store.log_stats()

    def export_logs(self, fmt: str = 'jsonl', filters: Optional[LogFilter] = None) -> str:
        return export_logs(self.store, fmt, filters)

    def delete_log(self, log_id: int) -> bool:
        return self.store.delete_log(log_id)

    def clear_logs(self, task_id: Optional[int] = None) -> int:
        removed = self.store.clear_logs(task_id)
        scope = f"task {task_id}" if task_id else "all tasks"
        logger.info(f"Cleared {removed} log(s) for {scope}")
        return removed

    # ---- scheduler control ----

    def pause(self):
        self.scheduler.pause()
        if self._daemon:
            self._write_info_file()

    def resume(self):
        self.scheduler.resume()
        if self._daemon:
            self._write_info_file()

    def status(self) -> Dict[str, Any]:
        return {
            'running': self.scheduler.running,
            'paused': self.scheduler.paused,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'scheduled_tasks': len(self.scheduler.scheduled_task_ids()),
            'active_sessions': self.sessions.active_sessions(),
        }

    # ---- settings ----

    def get_setting(self, key: str) -> Optional[str]:
        return self.store.get_setting(key)

    def set_setting(self, key: str, value: Optional[str]):
        self.store.set_setting(key, value)

    def all_settings(self) -> Dict[str, Optional[str]]:
        return self.store.all_settings()

    # ---- live sessions ----

    def add_listener(self, callback: Listener, mask: int = EVENT_ALL):
        self.events.add_listener(callback, mask)

    def remove_listener(self, callback: Listener):
        self.events.remove_listener(callback)

    def kill_session(self, session_id: str) -> bool:
        return self.sessions.kill_session(session_id)
