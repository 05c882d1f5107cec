"""
Task execution engine.

Runs a single attempt of a task and returns an ExecutionResult. Never
raises for execution problems: spawn errors, non-zero exits, network
errors, deadlines and unsupported task kinds all come back as results.

Shell tasks run in a POSIX shell in their own process group. Output is
read by one thread per pipe and relayed to the EventBus as it arrives.
HTTP tasks issue one request with requests.
"""

import codecs
import logging
import os
import shutil
import subprocess
import threading
import time
import traceback
from typing import Optional, List

import requests

from cronie.config import ExecutionConfig
from cronie.events import EventBus
from cronie.models import (
    ExecutionResult,
    HttpConfig,
    LogStatus,
    ShellConfig,
    Task,
    TaskConfigError,
    decode_config,
)
from cronie.sessions import ProcessTerminator, SessionRegistry

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [output truncated]"
KILLED_MESSAGE = "Killed by user"


def make_session_id(task_id: int) -> str:
    return f"task-{task_id}-{int(time.time() * 1000)}"


class _OutputCapture:
    """Accumulates decoded output up to a character limit."""

    def __init__(self, limit: int):
        self.limit = limit
        self.size = 0
        self.truncated = False
        self._chunks: List[str] = []

    def add(self, text: str):
        if self.truncated:
            return
        room = self.limit - self.size
        if len(text) > room:
            text = text[:room]
            self.truncated = True
        self._chunks.append(text)
        self.size += len(text)

    def text(self) -> str:
        output = ''.join(self._chunks)
        return output + TRUNCATION_MARKER if self.truncated else output


class TaskExecutor:
    """
    Executes tasks (shell or HTTP) with timeout enforcement.

    The executor is stateless between calls apart from the shared
    session registry used for out-of-band kills.
    """

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        sessions: Optional[SessionRegistry] = None,
        events: Optional[EventBus] = None
    ):
        """
        Initialize executor.

        Args:
            config: Execution limits (defaults if None)
            sessions: Registry that live shell sessions are tracked in
            events: Bus that live output is published to
        """
        self.config = config or ExecutionConfig()
        self.sessions = sessions or SessionRegistry()
        self.events = events or EventBus()

    def execute(self, task: Task, attempt: int = 0) -> ExecutionResult:
        """
        Run one attempt of a task.

        Args:
            task: Task to execute
            attempt: Attempt number (0 = first try), used for logging

        Returns:
            ExecutionResult whose duration_ms is the wall-clock time of this call
        """
        log_prefix = f"[{task.name}:{attempt}]"
        started = time.monotonic()

        try:
            config = decode_config(task.task_type, task.config)
        except TaskConfigError as e:
            logger.error(f"{log_prefix} Cannot execute task {task.id}: {e}")
            result = ExecutionResult(status=LogStatus.FAILURE, error_message=str(e))
        else:
            try:
                if isinstance(config, ShellConfig):
                    result = self._execute_shell(task, config, log_prefix)
                else:
                    result = self._execute_http(task, config, log_prefix)
            except Exception as e:
                logger.exception(f"{log_prefix} Unexpected execution error")
                result = ExecutionResult(
                    status=LogStatus.FAILURE,
                    error_message=str(e) or type(e).__name__,
                    error_stack=traceback.format_exc()
                )

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"{log_prefix} Finished with status '{result.status.value}' in {result.duration_ms}ms")
        return result

    # ---- shell ----

    def _shell_argv(self, command: str) -> List[str]:
        argv = [self.config.shell, '-c', command]
        stdbuf = shutil.which('stdbuf')
        if stdbuf:
            # Line-buffer the children so output streams in real time.
            argv = [stdbuf, '-oL', '-eL'] + argv
        return argv

    def _pump(self, stream, name: str, session_id: str, capture: _OutputCapture):
        """Read a pipe chunk by chunk until EOF, relaying each chunk."""
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        try:
            while True:
                chunk = stream.read1(65536)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    capture.add(text)
                    self.events.output(session_id, name, text)
            text = decoder.decode(b'', final=True)
            if text:
                capture.add(text)
                self.events.output(session_id, name, text)
        finally:
            stream.close()

    def _execute_shell(self, task: Task, shell: ShellConfig, log_prefix: str) -> ExecutionResult:
        session_id = make_session_id(task.id)

        env = os.environ.copy()
        env['PYTHONUNBUFFERED'] = '1'
        env.update(shell.env)

        self.events.session_started(session_id, task.id, task.name, shell.command)
        logger.info(f"{log_prefix} Executing command: {shell.command} (session {session_id})")

        try:
            process = subprocess.Popen(
                self._shell_argv(shell.command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=shell.working_dir,
                env=env,
                start_new_session=True
            )
        except (OSError, ValueError) as e:
            logger.error(f"{log_prefix} Failed to spawn command: {e}")
            self.events.session_exited(session_id, None, LogStatus.FAILURE.value)
            return ExecutionResult(
                status=LogStatus.FAILURE,
                error_message=str(e),
                error_stack=traceback.format_exc()
            )

        terminator = ProcessTerminator(process, self.config.kill_grace_seconds)
        self.sessions.register(session_id, terminator)

        stdout = _OutputCapture(self.config.output_limit)
        stderr = _OutputCapture(self.config.output_limit)
        exited = threading.Event()
        finished = threading.Event()
        timed_out = threading.Event()
        deadline: Optional[threading.Timer] = None
        result: Optional[ExecutionResult] = None

        def on_deadline():
            if finished.is_set():
                return
            if exited.is_set():
                # The shell finished in time; only leftover children hold the pipes.
                logger.warning(f"{log_prefix} Background processes still running at deadline, terminating")
            else:
                logger.warning(f"{log_prefix} Timed out after {task.timeout_ms}ms, terminating")
                timed_out.set()
            terminator.terminate()

        try:
            readers = [
                threading.Thread(
                    target=self._pump,
                    args=(process.stdout, 'stdout', session_id, stdout),
                    name=f"{session_id}-stdout",
                    daemon=True
                ),
                threading.Thread(
                    target=self._pump,
                    args=(process.stderr, 'stderr', session_id, stderr),
                    name=f"{session_id}-stderr",
                    daemon=True
                ),
            ]
            for reader in readers:
                reader.start()

            if task.timeout_ms > 0:
                deadline = threading.Timer(task.timeout_ms / 1000, on_deadline)
                deadline.daemon = True
                deadline.start()

            exit_code = process.wait()
            exited.set()
            for reader in readers:
                reader.join()
            finished.set()

            if timed_out.is_set():
                result = ExecutionResult(
                    status=LogStatus.TIMEOUT,
                    exit_code=exit_code,
                    error_message=f"Task timed out after {task.timeout_ms}ms"
                )
            elif terminator.killed:
                result = ExecutionResult(
                    status=LogStatus.FAILURE,
                    exit_code=exit_code,
                    error_message=KILLED_MESSAGE,
                    retryable=False
                )
            elif exit_code != 0:
                result = ExecutionResult(
                    status=LogStatus.FAILURE,
                    exit_code=exit_code,
                    error_message=f"Process exited with code {exit_code}"
                )
            else:
                result = ExecutionResult(status=LogStatus.SUCCESS, exit_code=0)

            result.stdout = stdout.text()
            result.stderr = stderr.text()
            return result

        finally:
            finished.set()
            if deadline is not None:
                deadline.cancel()
            terminator.cancel()
            self.sessions.unregister(session_id)
            if result is None and process.poll() is None:
                terminator.terminate()
            self.events.session_exited(
                session_id,
                result.exit_code if result else process.poll(),
                result.status.value if result else LogStatus.FAILURE.value
            )

    # ---- http ----

    def _execute_http(self, task: Task, http: HttpConfig, log_prefix: str) -> ExecutionResult:
        timeout = task.timeout_ms / 1000 if task.timeout_ms > 0 else None
        body = http.body.encode('utf-8') if http.body is not None else None

        logger.info(f"{log_prefix} {http.method} {http.url}")

        try:
            response = requests.request(
                http.method,
                http.url,
                headers=http.headers or None,
                data=body,
                timeout=timeout,
                allow_redirects=False
            )
        except requests.exceptions.Timeout:
            logger.warning(f"{log_prefix} HTTP request timed out after {task.timeout_ms}ms")
            return ExecutionResult(status=LogStatus.TIMEOUT, error_message="HTTP request timed out")
        except requests.exceptions.RequestException as e:
            logger.warning(f"{log_prefix} HTTP request failed: {e}")
            return ExecutionResult(status=LogStatus.FAILURE, error_message=str(e))

        status_code = response.status_code
        if http.expected_status is not None:
            success = status_code == http.expected_status
            expected = str(http.expected_status)
        else:
            success = 200 <= status_code < 400
            expected = "2xx/3xx"

        return ExecutionResult(
            status=LogStatus.SUCCESS if success else LogStatus.FAILURE,
            http_status=status_code,
            http_body=response.text[:self.config.http_body_limit],
            error_message=None if success else f"HTTP {status_code} (expected {expected})"
        )
