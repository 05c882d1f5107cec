"""
Data models for tasks, execution results and execution log records.

Task configuration is stored as free-form JSON but is always decoded into
one of the closed variants below (ShellConfig or HttpConfig) before use.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, List, Any, Union
from urllib.parse import urlparse


class TaskType(str, Enum):
    SHELL = "shell"
    HTTP = "http"
    PLUGIN = "plugin"  # reserved, the engine has no plugin runner


class LogStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class TaskConfigError(ValueError):
    """Raised when a task's fields or kind-specific configuration are invalid."""
    pass


@dataclass
class ShellConfig:
    """Configuration for a 'shell' task."""
    command: str
    working_dir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShellConfig':
        command = data.get('command')
        if not isinstance(command, str) or not command.strip():
            raise TaskConfigError("shell task requires a non-empty 'command'")
        if '\x00' in command:
            raise TaskConfigError("'command' cannot contain NUL characters")

        working_dir = data.get('working_dir')
        if working_dir is not None and not isinstance(working_dir, str):
            raise TaskConfigError("'working_dir' must be a string")
        if working_dir and '\x00' in working_dir:
            raise TaskConfigError("'working_dir' cannot contain NUL characters")

        env = data.get('env') or {}
        if not isinstance(env, dict):
            raise TaskConfigError("'env' must be a mapping of strings")
        for key, value in env.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise TaskConfigError("'env' must be a mapping of strings")
            if '\x00' in key or '\x00' in value or '=' in key or not key:
                raise TaskConfigError(f"Invalid environment variable name or value: {key!r}")

        unknown = set(data) - {'command', 'working_dir', 'env'}
        if unknown:
            raise TaskConfigError(f"Unknown shell config field(s): {', '.join(sorted(unknown))}")

        return cls(command=command, working_dir=working_dir or None, env=dict(env))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'command': self.command}
        if self.working_dir:
            data['working_dir'] = self.working_dir
        if self.env:
            data['env'] = dict(self.env)
        return data


@dataclass
class HttpConfig:
    """
    Configuration for an 'http' task.

    expected_status: when set, the response status must equal it; when unset,
    any status in [200, 400) counts as success.
    """
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    expected_status: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HttpConfig':
        url = data.get('url')
        if not isinstance(url, str) or not url.strip():
            raise TaskConfigError("http task requires a non-empty 'url'")
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise TaskConfigError(f"Unsupported URL (expected http:// or https://): {url}")

        method = data.get('method') or "GET"
        if not isinstance(method, str):
            raise TaskConfigError("'method' must be a string")

        headers = data.get('headers') or {}
        if not isinstance(headers, dict):
            raise TaskConfigError("'headers' must be a mapping of strings")
        for key, value in headers.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise TaskConfigError("'headers' must be a mapping of strings")

        body = data.get('body')
        if body is not None and not isinstance(body, str):
            raise TaskConfigError("'body' must be a string")

        expected = data.get('expected_status')
        if expected is not None:
            if isinstance(expected, bool) or not isinstance(expected, int) or not 100 <= expected <= 599:
                raise TaskConfigError("'expected_status' must be an HTTP status code")

        unknown = set(data) - {'url', 'method', 'headers', 'body', 'expected_status'}
        if unknown:
            raise TaskConfigError(f"Unknown http config field(s): {', '.join(sorted(unknown))}")

        return cls(
            url=url,
            method=method.upper(),
            headers=dict(headers),
            body=body,
            expected_status=expected
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'url': self.url, 'method': self.method}
        if self.headers:
            data['headers'] = dict(self.headers)
        if self.body is not None:
            data['body'] = self.body
        if self.expected_status is not None:
            data['expected_status'] = self.expected_status
        return data


TaskConfig = Union[ShellConfig, HttpConfig]


def decode_config(task_type: Union[TaskType, str], data: Optional[Dict[str, Any]]) -> TaskConfig:
    """
    Decode raw configuration into the variant selected by task_type.

    Raises:
        TaskConfigError: If the kind is not runnable or the data is invalid
    """
    try:
        kind = TaskType(task_type)
    except ValueError:
        raise TaskConfigError(f"Unknown task type: {task_type}")

    if not isinstance(data, dict):
        raise TaskConfigError("Task config must be a JSON object")

    if kind is TaskType.SHELL:
        return ShellConfig.from_dict(data)
    if kind is TaskType.HTTP:
        return HttpConfig.from_dict(data)
    raise TaskConfigError(f"Task type '{kind.value}' is not supported by the execution engine")


@dataclass
class Task:
    """A persisted definition of recurring work."""
    id: int
    name: str
    cron_expression: str
    task_type: TaskType
    config: Dict[str, Any]  # raw; see decode_config()
    description: str = ""
    enabled: bool = True
    tags: List[str] = field(default_factory=list)
    retry_count: int = 0
    retry_delay_ms: int = 1000
    timeout_ms: int = 30000
    sort_order: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> 'Task':
        """Create from a database row mapping"""
        try:
            config = json.loads(row['config'] or '{}')
        except ValueError:
            config = {}
        try:
            task_type = TaskType(row['task_type'])
        except ValueError:
            task_type = row['task_type']

        return cls(
            id=row['id'],
            name=row['name'],
            description=row['description'] or '',
            cron_expression=row['cron_expression'],
            task_type=task_type,
            config=config if isinstance(config, dict) else {},
            enabled=bool(row['enabled']),
            tags=split_tags(row['tags']),
            retry_count=row['retry_count'] or 0,
            retry_delay_ms=row['retry_delay_ms'] or 0,
            timeout_ms=row['timeout_ms'] or 0,
            sort_order=row['sort_order'] or 0,
            created_at=row['created_at'],
            updated_at=row['updated_at']
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['task_type'] = getattr(self.task_type, 'value', self.task_type)
        data['created_at'] = self.created_at.isoformat() if self.created_at else None
        data['updated_at'] = self.updated_at.isoformat() if self.updated_at else None
        return data


def split_tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(',') if t.strip()]


def join_tags(tags: Union[str, List[str], None]) -> str:
    if not tags:
        return ''
    if isinstance(tags, str):
        tags = split_tags(tags)
    return ','.join(t.strip() for t in tags if t.strip())


@dataclass
class ExecutionResult:
    """Outcome of a single attempt."""
    status: LogStatus
    duration_ms: int = 0
    exit_code: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    http_status: Optional[int] = None
    http_body: Optional[str] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    retryable: bool = True  # False for failures the retry policy must not repeat

    @property
    def ok(self) -> bool:
        return self.status is LogStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data


@dataclass
class ExecutionLog:
    """Durable record of one attempt."""
    id: int
    task_id: int
    retry_attempt: int
    start_time: datetime
    status: LogStatus
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    exit_code: Optional[int] = None
    stdout: str = ''
    stderr: str = ''
    http_status: Optional[int] = None
    http_response_body: Optional[str] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    created_at: Optional[datetime] = None
    task_name: Optional[str] = None  # joined from tasks, not stored

    @classmethod
    def from_row(cls, row: Any) -> 'ExecutionLog':
        """Create from a database row mapping"""
        return cls(
            id=row['id'],
            task_id=row['task_id'],
            retry_attempt=row['retry_attempt'] or 0,
            start_time=row['start_time'],
            end_time=row['end_time'],
            duration_ms=row['duration_ms'],
            status=LogStatus(row['status']),
            exit_code=row['exit_code'],
            stdout=row['stdout'] or '',
            stderr=row['stderr'] or '',
            http_status=row['http_status'],
            http_response_body=row['http_response_body'],
            error_message=row['error_message'],
            error_stack=row['error_stack'],
            created_at=row['created_at'],
            task_name=row.get('task_name')
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        for key in ('start_time', 'end_time', 'created_at'):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


@dataclass
class LogFilter:
    """Filters for log queries. limit=None returns every matching row."""
    task_id: Optional[int] = None
    status: Optional[str] = None
    search: Optional[str] = None
    limit: Optional[int] = 100
    offset: int = 0


@dataclass
class FailingTask:
    id: int
    name: str
    failure_count: int


@dataclass
class LogStats:
    """Aggregate statistics over execution logs"""
    total: int
    success: int
    failure: int
    timeout: int
    recent: List[ExecutionLog]
    failing_tasks: List[FailingTask]

    @property
    def success_rate(self) -> float:
        """Share of finished attempts that succeeded"""
        finished = self.success + self.failure + self.timeout
        return self.success / finished if finished else 0.0
