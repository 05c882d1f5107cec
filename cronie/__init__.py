"""
cronie - recurring task scheduler

Runs shell commands and HTTP requests on 5-field cron schedules, with
per-attempt execution logs in SQLite.

Features:
- Cron scheduling with a global pause switch
- Retry with linear backoff and per-task timeouts
- Live stdout/stderr relay and kill-by-session for shell tasks
- Crash recovery of interrupted runs at startup
- Log search, stats and export (JSON lines, JSON, CSV)
"""

__version__ = "0.1.0"

from cronie.config import CronieConfig
from cronie.models import ExecutionLog, ExecutionResult, LogFilter, LogStatus, Task, TaskConfigError, TaskType
from cronie.service import CronieService, TaskNotFoundError

__all__ = [
    "CronieConfig",
    "CronieService",
    "ExecutionLog",
    "ExecutionResult",
    "LogFilter",
    "LogStatus",
    "Task",
    "TaskConfigError",
    "TaskNotFoundError",
    "TaskType",
]
