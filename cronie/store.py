"""
Persistent store for tasks, execution logs and settings.

SQLAlchemy Core over SQLite. Every public method runs in its own
transaction and is committed before it returns; storage errors
(sqlalchemy.exc.SQLAlchemyError) propagate to the caller.

Schema:
    tasks           - task definitions
    execution_logs  - one row per attempt, cascades on task delete
    settings        - flat key/value map
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Any, Iterable, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    inspect,
    not_,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from cronie.config import DEFAULT_RETRY_COUNT, DEFAULT_RETRY_DELAY_MS, DEFAULT_TIMEOUT_MS
from cronie.models import (
    ExecutionLog,
    ExecutionResult,
    FailingTask,
    LogFilter,
    LogStats,
    LogStatus,
    Task,
    TaskConfigError,
    TaskType,
    decode_config,
    join_tags,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

tasks_table = Table(
    'tasks', metadata,
    Column('id', Integer, primary_key=True),
    Column('name', Text, nullable=False),
    Column('description', Text, nullable=False, default=''),
    Column('cron_expression', Text, nullable=False),
    Column('task_type', String(16), nullable=False),
    Column('config', Text, nullable=False, default='{}'),
    Column('enabled', Boolean, nullable=False, default=True),
    Column('tags', Text, nullable=False, default=''),
    Column('retry_count', Integer, nullable=False, default=DEFAULT_RETRY_COUNT),
    Column('retry_delay_ms', Integer, nullable=False, default=DEFAULT_RETRY_DELAY_MS),
    Column('timeout_ms', Integer, nullable=False, default=DEFAULT_TIMEOUT_MS),
    Column('sort_order', Integer, nullable=False, default=0),
    Column('created_at', DateTime, nullable=False),
    Column('updated_at', DateTime, nullable=False),
    CheckConstraint("task_type IN ('shell', 'http', 'plugin')", name='ck_tasks_task_type'),
    sqlite_autoincrement=True,
)

logs_table = Table(
    'execution_logs', metadata,
    Column('id', Integer, primary_key=True),
    Column('task_id', Integer, ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
    Column('retry_attempt', Integer, nullable=False, default=0),
    Column('start_time', DateTime, nullable=False),
    Column('end_time', DateTime),
    Column('duration_ms', Integer),
    Column('status', String(16), nullable=False),
    Column('exit_code', Integer),
    Column('stdout', Text, nullable=False, default=''),
    Column('stderr', Text, nullable=False, default=''),
    Column('http_status', Integer),
    Column('http_response_body', Text),
    Column('error_message', Text),
    Column('error_stack', Text),
    Column('created_at', DateTime, nullable=False),
    CheckConstraint(
        "status IN ('running', 'success', 'failure', 'timeout', 'skipped')",
        name='ck_logs_status'
    ),
    Index('idx_logs_task_id', 'task_id'),
    Index('idx_logs_status', 'status'),
    Index('idx_logs_start_time', 'start_time'),
    sqlite_autoincrement=True,
)

settings_table = Table(
    'settings', metadata,
    Column('key', Text, primary_key=True),
    Column('value', Text),
)

# Columns added after the first release; ALTERed into older databases.
_ADDED_COLUMNS = {
    'tasks': [
        ('sort_order', 'INTEGER NOT NULL DEFAULT 0'),
    ],
}

_TASK_FIELDS = {
    'name', 'description', 'cron_expression', 'task_type', 'config', 'enabled',
    'tags', 'retry_count', 'retry_delay_ms', 'timeout_ms', 'sort_order',
}


def _validate_task_type(task_type: Union[TaskType, str]) -> TaskType:
    try:
        return TaskType(task_type)
    except ValueError:
        raise TaskConfigError(f"Unknown task type: {task_type}")


def _encode_config(task_type: TaskType, config: Optional[Dict[str, Any]]) -> str:
    """Validate config for the task kind and serialize it."""
    if config is None:
        config = {}
    if task_type is TaskType.PLUGIN:
        # Reserved kind: stored as-is, the engine reports it as unsupported.
        if not isinstance(config, dict):
            raise TaskConfigError("Task config must be a JSON object")
        return json.dumps(config)
    return json.dumps(decode_config(task_type, config).to_dict())


def _non_negative(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise TaskConfigError(f"'{name}' must be a non-negative integer")
    return value


class TaskStore:
    """
    SQLite-backed store shared by every engine component.

    Thread-safety: connections come from the SQLAlchemy pool, one per
    call, so methods may be used from scheduler worker threads.
    """

    def __init__(self, db_path: Union[str, Path] = "cronie.db"):
        """
        Open (and create or migrate) the database.

        Args:
            db_path: Path to the SQLite file. ':memory:' is not supported
                     because every call checks out its own connection.
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={'check_same_thread': False, 'timeout': 30},
        )

        @event.listens_for(self.engine, "connect")
        def _configure_connection(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=FULL")
            cursor.close()

        self._ensure_schema()
        logger.debug(f"Task store ready: {self.db_path}")

    def close(self):
        """Release pooled connections."""
        self.engine.dispose()

    # ---- schema ----

    def _ensure_schema(self):
        metadata.create_all(self.engine)

        inspector = inspect(self.engine)
        with self.engine.begin() as conn:
            for table_name, columns in _ADDED_COLUMNS.items():
                existing = {c['name'] for c in inspector.get_columns(table_name)}
                for name, decl in columns:
                    if name in existing:
                        continue
                    conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {name} {decl}"))
                    logger.info(f"Schema migration: added column {table_name}.{name}")

    # ---- tasks ----

    def _task_values(self, fields: Dict[str, Any], current: Optional[Task] = None) -> Dict[str, Any]:
        """Validate and normalize task fields for insert or partial update."""
        unknown = set(fields) - _TASK_FIELDS
        if unknown:
            raise TaskConfigError(f"Unknown task field(s): {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}

        if 'name' in fields:
            name = fields['name']
            if not isinstance(name, str) or not name.strip():
                raise TaskConfigError("'name' is required")
            values['name'] = name.strip()

        if 'description' in fields:
            values['description'] = fields['description'] or ''

        if 'cron_expression' in fields:
            cron = fields['cron_expression']
            if not isinstance(cron, str) or not cron.strip():
                raise TaskConfigError("'cron_expression' is required")
            values['cron_expression'] = cron.strip()

        if 'task_type' in fields or 'config' in fields:
            task_type = _validate_task_type(
                fields['task_type'] if 'task_type' in fields else current.task_type
            )
            config = fields['config'] if 'config' in fields else current.config
            values['task_type'] = task_type.value
            values['config'] = _encode_config(task_type, config)

        if 'enabled' in fields:
            values['enabled'] = bool(fields['enabled'])

        if 'tags' in fields:
            values['tags'] = join_tags(fields['tags'])

        for name in ('retry_count', 'retry_delay_ms', 'timeout_ms', 'sort_order'):
            if name in fields:
                values[name] = _non_negative(name, fields[name])

        return values

    def insert_task(
        self,
        name: str,
        cron_expression: str,
        task_type: Union[TaskType, str],
        config: Optional[Dict[str, Any]] = None,
        **fields: Any
    ) -> int:
        """
        Insert a task.

        The cron expression is stored as given; an expression the scheduler
        cannot parse simply never fires.

        Returns:
            The new task id

        Raises:
            TaskConfigError: If a field or the kind-specific config is invalid
        """
        fields.update(name=name, cron_expression=cron_expression, task_type=task_type, config=config)
        values = self._task_values(fields)
        now = datetime.now()
        values.setdefault('description', '')
        values.setdefault('enabled', True)
        values.setdefault('tags', '')
        values.setdefault('retry_count', DEFAULT_RETRY_COUNT)
        values.setdefault('retry_delay_ms', DEFAULT_RETRY_DELAY_MS)
        values.setdefault('timeout_ms', DEFAULT_TIMEOUT_MS)
        values['created_at'] = now
        values['updated_at'] = now

        with self.engine.begin() as conn:
            if 'sort_order' not in values:
                highest = conn.execute(select(func.max(tasks_table.c.sort_order))).scalar()
                values['sort_order'] = (highest or 0) + 1
            result = conn.execute(tasks_table.insert().values(**values))
            task_id = result.inserted_primary_key[0]

        logger.debug(f"Inserted task {task_id} ({values['name']})")
        return task_id

    def update_task(self, task_id: int, **fields: Any) -> bool:
        """
        Apply a partial update.

        Returns:
            True if the task exists (and was updated), False otherwise
        """
        current = self.get_task(task_id)
        if current is None:
            return False

        values = self._task_values(fields, current)
        values['updated_at'] = datetime.now()

        with self.engine.begin() as conn:
            result = conn.execute(
                update(tasks_table).where(tasks_table.c.id == task_id).values(**values)
            )
        return result.rowcount == 1

    def toggle_task(self, task_id: int) -> bool:
        """Flip the enabled flag. Returns False if the task does not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(tasks_table)
                .where(tasks_table.c.id == task_id)
                .values(enabled=not_(tasks_table.c.enabled), updated_at=datetime.now())
            )
        return result.rowcount == 1

    def reorder_tasks(self, task_ids: Iterable[int]):
        """Set sort_order to each id's position in task_ids."""
        with self.engine.begin() as conn:
            for position, task_id in enumerate(task_ids):
                conn.execute(
                    update(tasks_table)
                    .where(tasks_table.c.id == task_id)
                    .values(sort_order=position)
                )

    def delete_task(self, task_id: int) -> bool:
        """Delete a task and its execution history."""
        with self.engine.begin() as conn:
            conn.execute(delete(logs_table).where(logs_table.c.task_id == task_id))
            result = conn.execute(delete(tasks_table).where(tasks_table.c.id == task_id))
        return result.rowcount == 1

    def get_task(self, task_id: int) -> Optional[Task]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(tasks_table).where(tasks_table.c.id == task_id)
            ).mappings().first()
        return Task.from_row(row) if row else None

    def list_tasks(self) -> List[Task]:
        """All tasks in display order."""
        stmt = select(tasks_table).order_by(
            tasks_table.c.sort_order.asc(),
            tasks_table.c.created_at.desc(),
            tasks_table.c.id.desc()
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [Task.from_row(row) for row in rows]

    def load_enabled_tasks(self) -> List[Task]:
        stmt = select(tasks_table).where(tasks_table.c.enabled.is_(True)).order_by(tasks_table.c.id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [Task.from_row(row) for row in rows]

    def count_tasks(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(tasks_table)).scalar()

    # ---- execution logs ----

    def begin_attempt(self, task_id: int, attempt: int, start_time: Optional[datetime] = None) -> int:
        """Insert a 'running' row for an attempt and return its id."""
        start_time = start_time or datetime.now()
        with self.engine.begin() as conn:
            result = conn.execute(
                logs_table.insert().values(
                    task_id=task_id,
                    retry_attempt=attempt,
                    start_time=start_time,
                    status=LogStatus.RUNNING.value,
                    stdout='',
                    stderr='',
                    created_at=start_time
                )
            )
            return result.inserted_primary_key[0]

    def finish_attempt(
        self,
        log_id: int,
        result: ExecutionResult,
        end_time: Optional[datetime] = None
    ) -> bool:
        """
        Close a running attempt with a single UPDATE.

        Returns:
            False if the row was not 'running' (already closed or reconciled)
        """
        end_time = end_time or datetime.now()
        with self.engine.begin() as conn:
            updated = conn.execute(
                update(logs_table)
                .where(logs_table.c.id == log_id)
                .where(logs_table.c.status == LogStatus.RUNNING.value)
                .values(
                    end_time=end_time,
                    duration_ms=result.duration_ms,
                    status=result.status.value,
                    exit_code=result.exit_code,
                    stdout=result.stdout or '',
                    stderr=result.stderr or '',
                    http_status=result.http_status,
                    http_response_body=result.http_body,
                    error_message=result.error_message,
                    error_stack=result.error_stack
                )
            )
        if updated.rowcount != 1:
            logger.warning(f"Execution log {log_id} was not running; result not recorded")
            return False
        return True

    def record_skipped(self, task_id: int, attempt: int, reason: str) -> int:
        """Insert an already-closed 'skipped' row."""
        now = datetime.now()
        with self.engine.begin() as conn:
            result = conn.execute(
                logs_table.insert().values(
                    task_id=task_id,
                    retry_attempt=attempt,
                    start_time=now,
                    end_time=now,
                    duration_ms=0,
                    status=LogStatus.SKIPPED.value,
                    stdout='',
                    stderr='',
                    error_message=reason,
                    created_at=now
                )
            )
            return result.inserted_primary_key[0]

    def fail_stale_runs(self, older_than: datetime, message: str, now: Optional[datetime] = None) -> int:
        """
        Mark 'running' rows that started before older_than as failed.

        Returns:
            Number of rows reconciled
        """
        now = now or datetime.now()
        with self.engine.begin() as conn:
            stale = conn.execute(
                select(logs_table.c.id, logs_table.c.start_time)
                .where(logs_table.c.status == LogStatus.RUNNING.value)
                .where(logs_table.c.start_time < older_than)
            ).all()

            for log_id, start_time in stale:
                elapsed_ms = max(0, int((now - start_time).total_seconds() * 1000))
                conn.execute(
                    update(logs_table)
                    .where(logs_table.c.id == log_id)
                    .values(
                        status=LogStatus.FAILURE.value,
                        error_message=message,
                        end_time=now,
                        duration_ms=elapsed_ms
                    )
                )
        return len(stale)

    def _log_query(self, filters: Optional[LogFilter]):
        stmt = (
            select(logs_table, tasks_table.c.name.label('task_name'))
            .select_from(logs_table.outerjoin(tasks_table, logs_table.c.task_id == tasks_table.c.id))
        )
        if filters is None:
            return stmt
        if filters.task_id:
            stmt = stmt.where(logs_table.c.task_id == filters.task_id)
        if filters.status:
            stmt = stmt.where(logs_table.c.status == filters.status)
        if filters.search:
            stmt = stmt.where(or_(
                logs_table.c.stdout.contains(filters.search, autoescape=True),
                logs_table.c.stderr.contains(filters.search, autoescape=True),
                logs_table.c.error_message.contains(filters.search, autoescape=True)
            ))
        return stmt

    def query_logs(self, filters: Optional[LogFilter] = None) -> List[ExecutionLog]:
        """Newest-first log rows matching filters (task name joined in)."""
        filters = filters or LogFilter()
        stmt = self._log_query(filters).order_by(logs_table.c.start_time.desc(), logs_table.c.id.desc())
        if filters.limit is not None:
            stmt = stmt.limit(filters.limit)
        if filters.offset:
            stmt = stmt.offset(filters.offset)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [ExecutionLog.from_row(row) for row in rows]

    def count_logs(self, filters: Optional[LogFilter] = None) -> int:
        subquery = self._log_query(filters).subquery()
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(subquery)).scalar()

    def get_log(self, log_id: int) -> Optional[ExecutionLog]:
        stmt = self._log_query(None).where(logs_table.c.id == log_id)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return ExecutionLog.from_row(row) if row else None

    def log_stats(self) -> LogStats:
        """Totals by status, the 10 most recent rows and the 5 most failing tasks."""
        with self.engine.connect() as conn:
            by_status = dict(conn.execute(
                select(logs_table.c.status, func.count()).group_by(logs_table.c.status)
            ).all())
            failing = conn.execute(
                select(tasks_table.c.id, tasks_table.c.name, func.count().label('failure_count'))
                .select_from(logs_table.join(tasks_table, logs_table.c.task_id == tasks_table.c.id))
                .where(logs_table.c.status == LogStatus.FAILURE.value)
                .group_by(tasks_table.c.id, tasks_table.c.name)
                .order_by(func.count().desc(), tasks_table.c.id)
                .limit(5)
            ).all()

        return LogStats(
            total=sum(by_status.values()),
            success=by_status.get(LogStatus.SUCCESS.value, 0),
            failure=by_status.get(LogStatus.FAILURE.value, 0),
            timeout=by_status.get(LogStatus.TIMEOUT.value, 0),
            recent=self.query_logs(LogFilter(limit=10)),
            failing_tasks=[FailingTask(id=r.id, name=r.name, failure_count=r.failure_count) for r in failing]
        )

    def delete_log(self, log_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(logs_table).where(logs_table.c.id == log_id))
        return result.rowcount == 1

    def clear_logs(self, task_id: Optional[int] = None) -> int:
        """Delete all logs, or only those of task_id. Returns rows removed."""
        stmt = delete(logs_table)
        if task_id:
            stmt = stmt.where(logs_table.c.task_id == task_id)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount

    # ---- settings ----

    def get_setting(self, key: str) -> Optional[str]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(settings_table.c.value).where(settings_table.c.key == key)
            ).scalar()

    def set_setting(self, key: str, value: Optional[str]):
        stmt = sqlite_insert(settings_table).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(index_elements=['key'], set_={'value': stmt.excluded.value})
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def all_settings(self) -> Dict[str, Optional[str]]:
        with self.engine.connect() as conn:
            return dict(conn.execute(select(settings_table.c.key, settings_table.c.value)).all())
