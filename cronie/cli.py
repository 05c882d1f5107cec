"""
Command-line interface for cronie.

Provides commands for:
- Starting/stopping/pausing the scheduler daemon
- Creating, editing, reordering and removing tasks
- Running a task now with live output
- Browsing, exporting and clearing execution logs
- Managing settings and configuration

Task mutations are written straight to the database; a running daemon
is sent SIGHUP so its timers follow the change.
"""

import argparse
import json
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Dict, Any, List

from cronie import __version__
from cronie.config import CronieConfig, LoggingConfig
from cronie.events import SessionEvent, SessionExitEvent, SessionOutputEvent, SessionStartEvent
from cronie.export import EXPORT_FORMATS
from cronie.models import LogFilter, LogStatus, Task, TaskType
from cronie.scheduler import build_trigger
from cronie.service import CronieService, get_scheduler_info, is_scheduler_running, signal_scheduler

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = None, verbose: bool = False, config: Optional[LoggingConfig] = None):
    """Setup logging configuration."""
    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count
        )
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def _open_service(args) -> CronieService:
    return CronieService(config_path=args.config, db_path=args.db)


def _notify_daemon():
    """Ask a running daemon to rebuild its timers from the store."""
    if signal_scheduler(signal.SIGHUP):
        logger.info("Scheduler notified of the change")


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime('%Y-%m-%d %H:%M:%S') if value else '-'


def _next_run(task: Task) -> Optional[datetime]:
    if not task.enabled:
        return None
    try:
        trigger = build_trigger(task.cron_expression)
    except (ValueError, TypeError):
        return None
    return trigger.get_next_fire_time(None, datetime.now(trigger.timezone))


def _type_name(task: Task) -> str:
    return getattr(task.task_type, 'value', task.task_type)


def _parse_pairs(items: Optional[List[str]], sep: str, what: str) -> Dict[str, str]:
    pairs = {}
    for item in items or []:
        key, found, value = item.partition(sep)
        if not found or not key.strip():
            raise ValueError(f"Invalid {what} '{item}' (expected KEY{sep}VALUE)")
        pairs[key.strip()] = value.strip() if sep == ':' else value
    return pairs


def _build_config(args, task_type: str, current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge command-line config flags over an existing task config."""
    config = dict(current or {})

    if task_type == TaskType.SHELL.value:
        if args.command is not None:
            config['command'] = args.command
        if args.cwd is not None:
            config['working_dir'] = args.cwd
        if args.env:
            config['env'] = {**config.get('env', {}), **_parse_pairs(args.env, '=', 'environment variable')}
    else:
        if args.url is not None:
            config['url'] = args.url
        if args.method is not None:
            config['method'] = args.method
        if args.header:
            config['headers'] = {**config.get('headers', {}), **_parse_pairs(args.header, ':', 'header')}
        if args.body is not None:
            config['body'] = args.body
        if args.expected_status is not None:
            config['expected_status'] = args.expected_status

    return config


def _task_fields(args) -> Dict[str, Any]:
    """Collect the generic task fields given on the command line."""
    fields = {}
    for attr, name in (
        ('description', 'description'),
        ('tags', 'tags'),
        ('retries', 'retry_count'),
        ('retry_delay', 'retry_delay_ms'),
        ('timeout', 'timeout_ms'),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            fields[name] = value
    return fields


def _has_config_flags(args) -> bool:
    return any(
        getattr(args, attr, None)
        for attr in ('command', 'cwd', 'env', 'url', 'method', 'header', 'body', 'expected_status')
    )


# ---- daemon ----

def cmd_start(args):
    """Start the scheduler."""
    config = CronieConfig(args.config, args.db)
    log_file = args.log_file or config.logging.file

    running, pid = is_scheduler_running()
    if running:
        setup_logging(verbose=args.verbose)
        logger.warning(f"Scheduler is already running (PID: {pid})")
        return

    if not args.foreground:
        setup_logging(verbose=args.verbose)
        command = [sys.executable, '-m', 'cronie.cli']
        if args.config:
            command += ['--config', args.config]
        if args.db:
            command += ['--db', args.db]
        if args.verbose:
            command.append('--verbose')
        command += ['start', '--foreground', '--log-file', log_file]
        if args.paused:
            command.append('--paused')

        subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True
        )

        for _ in range(10):
            time.sleep(0.5)
            running, pid = is_scheduler_running()
            if running:
                logger.info(f"Scheduler is running in the background (PID: {pid})")
                logger.info("Use 'cronie stop' to stop it")
                logger.info(f"Logs: {log_file}")
                return

        logger.error(f"Scheduler did not start, see {log_file}")
        sys.exit(1)

    setup_logging(log_file=log_file, verbose=args.verbose, config=config.logging)

    errors = config.validate()
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        sys.exit(1)

    logger.info("Starting scheduler...")

    try:
        service = CronieService(config=config)
        service.start(daemon=True, paused=args.paused)
        logger.info("Running in foreground mode. Press Ctrl+C to stop.")

        # Signal handlers stop the service and exit
        while service.scheduler.running:
            time.sleep(1)

    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)


def cmd_stop(args):
    """Stop the scheduler."""
    setup_logging(verbose=args.verbose)

    running, pid = is_scheduler_running()
    if not running:
        logger.warning("Scheduler does not appear to be running (no PID file)")
        return

    try:
        logger.info(f"Stopping scheduler (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)

        # Wait for process to stop
        for _ in range(args.wait):
            time.sleep(1)
            running, _ = is_scheduler_running()
            if not running:
                logger.info("Scheduler stopped successfully")
                return

        logger.warning("Scheduler did not stop gracefully, sending SIGKILL")
        os.kill(pid, signal.SIGKILL)

    except Exception as e:
        logger.error(f"Failed to stop scheduler: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show scheduler status."""
    setup_logging(verbose=args.verbose)

    try:
        scheduler_info = get_scheduler_info()

        print("\nSCHEDULER STATUS\n")

        if scheduler_info:
            state = "\033[93m● Paused\033[0m" if scheduler_info.get('paused') else "\033[92m● Running\033[0m"
            print(f"  Status:     {state}")
            print(f"  PID:        {scheduler_info['pid']}")
            if scheduler_info.get('started_at'):
                print(f"  Started:    {scheduler_info['started_at']}")
            print(f"  Database:   {scheduler_info.get('db_path', 'N/A')}")
            print(f"  Log File:   {scheduler_info.get('log_file', 'N/A')}")
        else:
            print("  Status:     \033[91m○ Not Running\033[0m")
            print("\n  Start the scheduler with: cronie start")

        service = _open_service(args)
        tasks = [task for task in service.list_tasks() if task.enabled]
        upcoming = []
        for task in tasks:
            next_run = _next_run(task)
            if next_run:
                upcoming.append((next_run, task))
        upcoming.sort(key=lambda pair: pair[0])

        print(f"\n  Enabled Tasks: {len(tasks)}")
        for next_run, task in upcoming[:10]:
            print(f"    {task.id:>4}  {task.name[:30]:<30} Next: {_format_time(next_run)}")
        print()

    except Exception as e:
        logger.error(f"Failed to get status: {e}", exc_info=args.verbose)
        sys.exit(1)


def _signal_control(signum: int, action: str):
    if signal_scheduler(signum):
        logger.info(f"Scheduler {action}")
    else:
        logger.error("Scheduler is not running")
        sys.exit(1)


def cmd_pause(args):
    """Pause the running scheduler (fired ticks are dropped)."""
    setup_logging(verbose=args.verbose)
    _signal_control(signal.SIGUSR1, "paused")


def cmd_resume(args):
    """Resume the running scheduler."""
    setup_logging(verbose=args.verbose)
    _signal_control(signal.SIGUSR2, "resumed")


# ---- tasks ----

def cmd_list(args):
    """List all tasks in display order."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        tasks = service.list_tasks()

        if args.json:
            print(json.dumps([task.to_dict() for task in tasks], indent=2))
            return

        if not tasks:
            print("No tasks defined. Add one with: cronie add NAME --cron EXPR --command CMD")
            return

        print(f"\n{'ID':>4}  {'':1} {'NAME':<28} {'TYPE':<6} {'SCHEDULE':<18} {'NEXT RUN':<19}  TAGS")
        for task in tasks:
            status = "✓" if task.enabled else "✗"
            print(
                f"{task.id:>4}  {status} {task.name[:28]:<28} {_type_name(task):<6} "
                f"{task.cron_expression[:18]:<18} {_format_time(_next_run(task)):<19}  {','.join(task.tags)}"
            )
        print()

    except Exception as e:
        logger.error(f"Failed to list tasks: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_show(args):
    """Show one task and its recent runs."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        task = service.get_task(args.task_id)

        print(f"\n\033[1m{task.name}\033[0m (id {task.id})")
        if task.description:
            print(f"  Description: {task.description}")
        print(f"  Enabled:     {'yes' if task.enabled else 'no'}")
        print(f"  Type:        {_type_name(task)}")
        print(f"  Schedule:    {task.cron_expression}")
        print(f"  Next Run:    {_format_time(_next_run(task))}")
        print(f"  Retries:     {task.retry_count} (delay {task.retry_delay_ms}ms)")
        print(f"  Timeout:     {task.timeout_ms}ms" if task.timeout_ms else "  Timeout:     none")
        if task.tags:
            print(f"  Tags:        {', '.join(task.tags)}")
        print(f"  Config:      {json.dumps(task.config)}")

        logs = service.list_logs(LogFilter(task_id=task.id, limit=5))
        if logs:
            print("\n  Recent runs:")
            for log in logs:
                print(f"    {_format_time(log.start_time)}  {log.status.value:<8} {log.duration_ms or 0}ms")
        print()

    except Exception as e:
        logger.error(f"Failed to show task: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_add(args):
    """Add a new task."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        task_type = TaskType.HTTP.value if args.url else TaskType.SHELL.value
        fields = _task_fields(args)
        if args.disabled:
            fields['enabled'] = False

        task = service.create_task(
            args.name,
            args.cron,
            task_type,
            _build_config(args, task_type),
            **fields
        )

        logger.info(f"Added task {task.id} '{task.name}' ({task_type}, '{task.cron_expression}')")
        if task.enabled and _next_run(task) is None:
            logger.warning(f"Cron expression '{task.cron_expression}' is not valid; the task will not be scheduled")
        _notify_daemon()

    except Exception as e:
        logger.error(f"Failed to add task: {e}")
        sys.exit(1)


def cmd_update(args):
    """Update an existing task."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        current = service.get_task(args.task_id)
        fields = _task_fields(args)
        if args.name:
            fields['name'] = args.name
        if args.cron:
            fields['cron_expression'] = args.cron

        if _has_config_flags(args):
            current_type = _type_name(current)
            if args.url:
                task_type = TaskType.HTTP.value
            elif args.command:
                task_type = TaskType.SHELL.value
            else:
                task_type = current_type
            base = current.config if task_type == current_type else {}
            fields['task_type'] = task_type
            fields['config'] = _build_config(args, task_type, base)

        if not fields:
            logger.error("Nothing to update")
            sys.exit(1)

        task = service.update_task(args.task_id, **fields)
        logger.info(f"Updated task {task.id} '{task.name}'")
        _notify_daemon()

    except Exception as e:
        logger.error(f"Failed to update task: {e}")
        sys.exit(1)


def cmd_remove(args):
    """Remove a task and its history."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        service.delete_task(args.task_id)
        logger.info(f"Removed task {args.task_id}")
        _notify_daemon()

    except Exception as e:
        logger.error(f"Failed to remove task: {e}")
        sys.exit(1)


def _set_enabled(args, enabled: Optional[bool]):
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        if enabled is None:
            task = service.toggle_task(args.task_id)
        else:
            task = service.set_enabled(args.task_id, enabled)
        logger.info(f"{'Enabled' if task.enabled else 'Disabled'} task {task.id} '{task.name}'")
        _notify_daemon()

    except Exception as e:
        logger.error(f"Failed to change task {args.task_id}: {e}")
        sys.exit(1)


def cmd_enable(args):
    """Enable a task."""
    _set_enabled(args, True)


def cmd_disable(args):
    """Disable a task."""
    _set_enabled(args, False)


def cmd_toggle(args):
    """Flip a task's enabled flag."""
    _set_enabled(args, None)


def cmd_reorder(args):
    """Set the display order of tasks."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        service.reorder_tasks(args.task_ids)
        logger.info(f"Reordered {len(args.task_ids)} task(s)")

    except Exception as e:
        logger.error(f"Failed to reorder tasks: {e}")
        sys.exit(1)


def cmd_run(args):
    """Run a task now, streaming its output. Ctrl+C kills the running command."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        task = service.get_task(args.task_id)
        live_sessions: List[str] = []

        def on_event(event: SessionEvent):
            if isinstance(event, SessionStartEvent):
                live_sessions.append(event.session_id)
            elif isinstance(event, SessionOutputEvent):
                stream = sys.stderr if event.stream == 'stderr' else sys.stdout
                stream.write(event.data)
                stream.flush()
            elif isinstance(event, SessionExitEvent) and event.session_id in live_sessions:
                live_sessions.remove(event.session_id)

        service.add_listener(on_event)
        outcome: Dict[str, Any] = {}

        def worker():
            try:
                outcome['result'] = service.run_task_now(task.id)
            except Exception as e:
                outcome['error'] = e

        thread = threading.Thread(target=worker, name=f"run-task-{task.id}", daemon=True)
        thread.start()
        while thread.is_alive():
            try:
                thread.join(0.2)
            except KeyboardInterrupt:
                for session_id in list(live_sessions):
                    if service.kill_session(session_id):
                        logger.warning(f"Killed session {session_id}")

        if 'error' in outcome:
            raise outcome['error']

        result = outcome['result']
        if result.http_status is not None:
            print(f"HTTP {result.http_status}")
            if result.http_body:
                print(result.http_body)

        message = f"Task '{task.name}' finished: {result.status.value} in {result.duration_ms}ms"
        if result.ok:
            logger.info(message)
        else:
            logger.error(f"{message} ({result.error_message})")
            sys.exit(1)

    except Exception as e:
        logger.error(f"Failed to run task: {e}", exc_info=args.verbose)
        sys.exit(1)


# ---- execution logs ----

def _log_filter(args, limit: Optional[int] = None, offset: int = 0) -> LogFilter:
    return LogFilter(
        task_id=args.task,
        status=args.status,
        search=args.search,
        limit=limit,
        offset=offset
    )


def cmd_logs(args):
    """Browse execution logs."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        filters = _log_filter(args, None if args.show_all else args.limit, args.offset)
        logs = service.list_logs(filters)

        if args.json:
            for log in logs:
                print(json.dumps(log.to_dict()))
            return

        if not logs:
            print("No matching execution logs found.")
            return

        colors = {
            LogStatus.SUCCESS: '\033[92m',
            LogStatus.FAILURE: '\033[91m',
            LogStatus.TIMEOUT: '\033[91m',
            LogStatus.RUNNING: '\033[93m',
        }
        for log in logs:
            status = log.status.value
            if args.color and log.status in colors:
                status = f"{colors[log.status]}{status:<8}\033[0m"
            else:
                status = f"{status:<8}"
            outcome = f"exit {log.exit_code}" if log.exit_code is not None else (
                f"HTTP {log.http_status}" if log.http_status is not None else ""
            )
            print(
                f"{log.id:>6}  {_format_time(log.start_time)}  {(log.task_name or '?')[:24]:<24} "
                f"#{log.retry_attempt} {status} {log.duration_ms or 0:>7}ms  {outcome}"
            )
            if args.details and log.error_message:
                print(f"        {log.error_message}")

        total = service.count_logs(_log_filter(args))
        print(f"\n--- Showing {len(logs)} of {total} log(s) ---")

    except Exception as e:
        logger.error(f"Failed to read logs: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_stats(args):
    """Show execution statistics."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        stats = service.log_stats()

        print("\nEXECUTION STATISTICS\n")
        print(f"  Total:    {stats.total}")
        print(f"  Success:  {stats.success}")
        print(f"  Failure:  {stats.failure}")
        print(f"  Timeout:  {stats.timeout}")
        print(f"  Success rate: {stats.success_rate:.1%}")

        if stats.failing_tasks:
            print("\n  Most failing tasks:")
            for failing in stats.failing_tasks:
                print(f"    {failing.id:>4}  {failing.name[:30]:<30} {failing.failure_count} failure(s)")

        if stats.recent:
            print("\n  Recent runs:")
            for log in stats.recent:
                print(f"    {_format_time(log.start_time)}  {(log.task_name or '?')[:30]:<30} {log.status.value}")
        print()

    except Exception as e:
        logger.error(f"Failed to compute stats: {e}", exc_info=args.verbose)
        sys.exit(1)


def cmd_export(args):
    """Export execution logs."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        data = service.export_logs(args.format, _log_filter(args))

        if args.output:
            output = Path(args.output).expanduser()
            output.write_text(data, encoding='utf-8')
            logger.info(f"Exported logs to {output}")
        else:
            sys.stdout.write(data)

    except Exception as e:
        logger.error(f"Failed to export logs: {e}")
        sys.exit(1)


def cmd_delete_log(args):
    """Delete one execution log."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        if service.delete_log(args.log_id):
            logger.info(f"Deleted log {args.log_id}")
        else:
            logger.error(f"Log {args.log_id} not found")
            sys.exit(1)

    except Exception as e:
        logger.error(f"Failed to delete log: {e}")
        sys.exit(1)


def cmd_clear_logs(args):
    """Delete all execution logs, or those of one task."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        removed = service.clear_logs(args.task)
        logger.info(f"Removed {removed} log(s)")

    except Exception as e:
        logger.error(f"Failed to clear logs: {e}")
        sys.exit(1)


# ---- settings and configuration ----

def cmd_setting(args):
    """Get, set or list settings."""
    setup_logging(verbose=args.verbose)

    try:
        service = _open_service(args)
        if args.setting_command == 'get':
            value = service.get_setting(args.key)
            if value is None:
                logger.error(f"Setting '{args.key}' is not set")
                sys.exit(1)
            print(value)
        elif args.setting_command == 'set':
            service.set_setting(args.key, args.value)
            logger.info(f"Set '{args.key}'")
        else:
            for key, value in sorted(service.all_settings().items()):
                print(f"{key}={value}")

    except Exception as e:
        logger.error(f"Failed to access settings: {e}")
        sys.exit(1)


def cmd_init(args):
    """Initialize configuration, log directory and database."""
    setup_logging(verbose=args.verbose)

    try:
        config = CronieConfig(args.config, args.db)
        config.save()
        logger.info(f"Initialized configuration at: {config.config_path}")

        log_dir = Path(config.logging.file).expanduser().parent
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created log directory: {log_dir}")

        service = CronieService(config=config)
        logger.info(f"Initialized database at: {service.store.db_path}")
        service.close()

    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Show current configuration."""
    setup_logging(verbose=args.verbose)

    try:
        config = CronieConfig(args.config, args.db)

        print(f"\nConfiguration file: {config.config_path}")
        print(f"Database: {config.db_path}")
        print(f"Logging level: {config.logging.level}")
        print(f"Log file: {config.logging.file}")
        print(f"Max workers: {config.execution.max_workers}")
        print(f"Kill grace period: {config.execution.kill_grace_seconds}s")
        print(f"Shell: {config.execution.shell}")
        print(f"Exclusive runs: {config.execution.exclusive_runs}")
        print(f"Stale run threshold: {config.recovery.stale_after_minutes} minutes")

        errors = config.validate()
        if errors:
            print("\nValidation errors:")
            for error in errors:
                print(f"  - {error}")
            sys.exit(1)

    except Exception as e:
        logger.error(f"Failed to show config: {e}")
        sys.exit(1)


def _add_task_arguments(parser: argparse.ArgumentParser, for_update: bool = False):
    """Arguments shared by the add and update commands."""
    target = parser.add_mutually_exclusive_group(required=not for_update)
    target.add_argument('--command', type=str, help='Shell command to run (shell task)')
    target.add_argument('--url', type=str, help='URL to request (http task)')

    shell_group = parser.add_argument_group('shell options')
    shell_group.add_argument('--cwd', type=str, help='Working directory')
    shell_group.add_argument('--env', action='append', metavar='KEY=VALUE',
                             help='Environment variable (repeatable)')

    http_group = parser.add_argument_group('http options')
    http_group.add_argument('--method', type=str, help='HTTP method (default: GET)')
    http_group.add_argument('--header', action='append', metavar='NAME:VALUE',
                            help='Request header (repeatable)')
    http_group.add_argument('--body', type=str, help='Request body')
    http_group.add_argument('--expected-status', type=int,
                            help='Required response status (default: any 2xx/3xx)')

    parser.add_argument('--description', type=str, help='Human-readable description')
    parser.add_argument('--tags', type=str, help='Comma-separated tags')
    parser.add_argument('--retries', type=int, help='Retries after a failure (default: 0)')
    parser.add_argument('--retry-delay', type=int, metavar='MS',
                        help='Base retry delay in milliseconds (default: 1000)')
    parser.add_argument('--timeout', type=int, metavar='MS',
                        help='Timeout in milliseconds, 0 for none (default: 30000)')


def _add_log_filter_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('--task', '-t', type=int, help='Filter by task id')
    parser.add_argument('--status', '-s', type=str, choices=[s.value for s in LogStatus],
                        help='Filter by status')
    parser.add_argument('--search', '-q', type=str, help='Search stdout, stderr and error messages')


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="cronie - run shell commands and HTTP requests on cron schedules",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to configuration file'
    )
    parser.add_argument(
        '--db',
        type=str,
        help='Path to the task database'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='cmd', help='Commands')

    # Start command
    start_parser = subparsers.add_parser('start', help='Start the scheduler')
    start_parser.add_argument(
        '--foreground',
        action='store_true',
        help='Run in the foreground instead of detaching'
    )
    start_parser.add_argument(
        '--paused',
        action='store_true',
        help='Start with the scheduler paused'
    )
    start_parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path'
    )
    start_parser.set_defaults(func=cmd_start)

    # Stop command
    stop_parser = subparsers.add_parser('stop', help='Stop the scheduler')
    stop_parser.add_argument('--wait', type=int, default=10,
                             help='Seconds to wait before sending SIGKILL (default: 10)')
    stop_parser.set_defaults(func=cmd_stop)

    subparsers.add_parser('status', help='Show scheduler status').set_defaults(func=cmd_status)
    subparsers.add_parser('pause', help='Pause the scheduler').set_defaults(func=cmd_pause)
    subparsers.add_parser('resume', help='Resume the scheduler').set_defaults(func=cmd_resume)

    # Task commands
    list_parser = subparsers.add_parser('list', help='List all tasks')
    list_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser('show', help='Show a task')
    show_parser.add_argument('task_id', type=int, help='Task id')
    show_parser.set_defaults(func=cmd_show)

    add_parser = subparsers.add_parser('add', help='Add a new task')
    add_parser.add_argument('name', help='Task name')
    add_parser.add_argument('--cron', type=str, required=True, help='Cron expression (5 fields)')
    add_parser.add_argument('--disabled', action='store_true', help='Create the task disabled')
    _add_task_arguments(add_parser)
    add_parser.set_defaults(func=cmd_add)

    update_parser = subparsers.add_parser('update', help='Update a task')
    update_parser.add_argument('task_id', type=int, help='Task id')
    update_parser.add_argument('--name', type=str, help='New task name')
    update_parser.add_argument('--cron', type=str, help='New cron expression')
    _add_task_arguments(update_parser, for_update=True)
    update_parser.set_defaults(func=cmd_update)

    for name, func, help_text in (
        ('remove', cmd_remove, 'Remove a task and its history'),
        ('enable', cmd_enable, 'Enable a task'),
        ('disable', cmd_disable, 'Disable a task'),
        ('toggle', cmd_toggle, "Flip a task's enabled flag"),
        ('run', cmd_run, 'Run a task now with live output'),
    ):
        task_parser = subparsers.add_parser(name, help=help_text)
        task_parser.add_argument('task_id', type=int, help='Task id')
        task_parser.set_defaults(func=func)

    reorder_parser = subparsers.add_parser('reorder', help='Set the display order of tasks')
    reorder_parser.add_argument('task_ids', type=int, nargs='+', help='Task ids in display order')
    reorder_parser.set_defaults(func=cmd_reorder)

    # Log commands
    logs_parser = subparsers.add_parser('logs', help='View execution logs')
    _add_log_filter_arguments(logs_parser)
    logs_parser.add_argument('--limit', '-n', type=int, default=100,
                             help='Maximum number of entries to show (default: 100)')
    logs_parser.add_argument('--offset', type=int, default=0, help='Number of entries to skip')
    logs_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                             help='Show all matching entries')
    logs_parser.add_argument('--json', action='store_true', help='Output as JSON lines')
    logs_parser.add_argument('--details', '-d', action='store_true', help='Show error messages')
    logs_parser.add_argument('--color', action='store_true', help='Colorize status output')
    logs_parser.set_defaults(func=cmd_logs)

    subparsers.add_parser('stats', help='Show execution statistics').set_defaults(func=cmd_stats)

    export_parser = subparsers.add_parser('export', help='Export execution logs')
    _add_log_filter_arguments(export_parser)
    export_parser.add_argument('--format', '-f', choices=EXPORT_FORMATS, default='jsonl',
                               help='Output format (default: jsonl)')
    export_parser.add_argument('--output', '-o', type=str, help='Output file (default: stdout)')
    export_parser.set_defaults(func=cmd_export)

    delete_log_parser = subparsers.add_parser('delete-log', help='Delete one execution log')
    delete_log_parser.add_argument('log_id', type=int, help='Log id')
    delete_log_parser.set_defaults(func=cmd_delete_log)

    clear_parser = subparsers.add_parser('clear-logs', help='Delete execution logs')
    clear_parser.add_argument('--task', '-t', type=int, help='Only clear logs of this task')
    clear_parser.set_defaults(func=cmd_clear_logs)

    # Settings
    setting_parser = subparsers.add_parser('setting', help='Get or set a setting')
    setting_commands = setting_parser.add_subparsers(dest='setting_command', required=True)
    get_parser = setting_commands.add_parser('get', help='Print a setting')
    get_parser.add_argument('key')
    set_parser = setting_commands.add_parser('set', help='Store a setting')
    set_parser.add_argument('key')
    set_parser.add_argument('value')
    setting_commands.add_parser('list', help='Print all settings')
    setting_parser.set_defaults(func=cmd_setting)

    subparsers.add_parser('init', help='Initialize configuration').set_defaults(func=cmd_init)
    subparsers.add_parser('show-config', help='Show configuration').set_defaults(func=cmd_show_config)

    args = parser.parse_args()

    if not args.cmd:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
