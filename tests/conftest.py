# tests/conftest.py

import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from cronie.config import CronieConfig, ExecutionConfig
from cronie.events import EventBus, SessionEvent
from cronie.executor import TaskExecutor
from cronie.models import Task, TaskType
from cronie.service import CronieService
from cronie.sessions import SessionRegistry
from cronie.store import TaskStore


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path: Path, monkeypatch) -> Path:
    """Keep PID/info/config files of every test inside tmp_path."""
    data_dir = tmp_path / "data"
    monkeypatch.setenv("CRONIE_DATA_DIR", str(data_dir))
    monkeypatch.delenv("CRONIE_CONFIG_PATH", raising=False)
    monkeypatch.delenv("CRONIE_DB_PATH", raising=False)
    monkeypatch.delenv("CRONIE_LOG_DIR", raising=False)
    monkeypatch.delenv("CRONIE_PID_FILE", raising=False)
    return data_dir


@pytest.fixture(autouse=True)
def no_proxy(monkeypatch) -> None:
    """Requests to the local test server must not go through a proxy."""
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")


@pytest.fixture()
def store(tmp_path: Path) -> TaskStore:
    task_store = TaskStore(tmp_path / "cronie.db")
    yield task_store
    task_store.close()


@pytest.fixture()
def execution_config() -> ExecutionConfig:
    return ExecutionConfig(kill_grace_seconds=0.5)


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def received(events: EventBus) -> List[SessionEvent]:
    """Every session event published on the bus, in order."""
    collected: List[SessionEvent] = []
    events.add_listener(collected.append)
    return collected


@pytest.fixture()
def sessions() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture()
def executor(execution_config: ExecutionConfig, sessions: SessionRegistry, events: EventBus) -> TaskExecutor:
    return TaskExecutor(execution_config, sessions, events)


@pytest.fixture()
def shell_task() -> Callable[..., Task]:
    """Build an unsaved shell task."""

    def _make(command: str, task_id: int = 1, **fields: Any) -> Task:
        config: Dict[str, Any] = {'command': command}
        for key in ('working_dir', 'env'):
            if key in fields:
                config[key] = fields.pop(key)
        return Task(
            id=task_id,
            name=fields.pop('name', f"task-{task_id}"),
            cron_expression=fields.pop('cron_expression', '* * * * *'),
            task_type=TaskType.SHELL,
            config=config,
            **fields
        )

    return _make


@pytest.fixture()
def http_task() -> Callable[..., Task]:
    """Build an unsaved http task."""

    def _make(url: str, task_id: int = 1, **fields: Any) -> Task:
        config: Dict[str, Any] = {'url': url}
        for key in ('method', 'headers', 'body', 'expected_status'):
            if key in fields:
                config[key] = fields.pop(key)
        return Task(
            id=task_id,
            name=fields.pop('name', f"http-{task_id}"),
            cron_expression='* * * * *',
            task_type=TaskType.HTTP,
            config=config,
            **fields
        )

    return _make


class _Handler(BaseHTTPRequestHandler):
    """
    Test endpoints:
        /status/<code>  respond with <code>
        /redirect       302 to /status/200
        /echo           200 with "<METHOD> <X-Token header> <body>"
        /slow           sleep 2s, then 200
    """

    def _respond(self, code: int, body: str = "", headers: Dict[str, str] = None):
        payload = body.encode('utf-8')
        self.send_response(code)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _handle(self):
        length = int(self.headers.get('Content-Length') or 0)
        body = self.rfile.read(length).decode('utf-8') if length else ""

        if self.path.startswith('/status/'):
            code = int(self.path.rsplit('/', 1)[1])
            self._respond(code, f"status {code}")
        elif self.path == '/redirect':
            self._respond(302, "", {'Location': '/status/200'})
        elif self.path == '/echo':
            self._respond(200, f"{self.command} {self.headers.get('X-Token')} {body}")
        elif self.path == '/slow':
            time.sleep(2)
            self._respond(200, "slow")
        else:
            self._respond(404, "not found")

    do_GET = _handle
    do_POST = _handle
    do_PUT = _handle
    do_DELETE = _handle

    def log_message(self, format, *args):
        pass


@pytest.fixture()
def http_server() -> str:
    """Local HTTP server; yields its base URL."""
    server = ThreadingHTTPServer(('127.0.0.1', 0), _Handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield f"http://{host}:{port}"
    server.shutdown()
    server.server_close()


@pytest.fixture()
def sleeps() -> List[float]:
    """Backoff sleeps recorded instead of slept."""
    return []


@pytest.fixture()
def service(tmp_path: Path, sleeps: List[float]) -> CronieService:
    config = CronieConfig(
        config_path=str(tmp_path / "config.json"),
        db_path=str(tmp_path / "service.db")
    )
    config.execution.kill_grace_seconds = 0.5
    svc = CronieService(config=config, sleep=sleeps.append)
    yield svc
    svc.close()
