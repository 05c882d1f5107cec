"""
Scheduler configuration management.

Handles loading, saving, and validating engine configuration. Task
definitions live in the database; this file only holds knobs for the
engine itself (paths, logging, execution limits, crash recovery).
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

ENV_DATA_DIR = "CRONIE_DATA_DIR"
ENV_CONFIG_PATH = "CRONIE_CONFIG_PATH"
ENV_DB_PATH = "CRONIE_DB_PATH"
ENV_LOG_DIR = "CRONIE_LOG_DIR"

# Defaults applied to new tasks when a field is omitted
DEFAULT_RETRY_COUNT = 0
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_TIMEOUT_MS = 30000

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def get_data_dir() -> Path:
    """Get the data directory for database, PID and log files."""
    data_dir = os.environ.get(ENV_DATA_DIR)
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".cronie"


def get_db_path() -> Path:
    """Get the SQLite database path."""
    db_path = os.environ.get(ENV_DB_PATH)
    if db_path:
        return Path(db_path).expanduser()
    return get_data_dir() / "cronie.db"


def get_log_dir() -> Path:
    """Get the log directory from environment or default."""
    if os.environ.get(ENV_LOG_DIR):
        return Path(os.environ[ENV_LOG_DIR]).expanduser()
    return get_data_dir() / "logs"


def _get_default_log_file() -> str:
    return str(get_log_dir() / "cronie.log")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


@dataclass
class ExecutionConfig:
    """Execution engine limits."""
    max_workers: int = 10  # concurrent scheduled runs
    kill_grace_seconds: float = 5.0  # SIGTERM -> SIGKILL escalation delay
    http_body_limit: int = 10000  # characters of response body kept
    output_limit: int = 1000000  # characters of stdout/stderr kept per stream
    shell: str = "/bin/sh"
    exclusive_runs: bool = False  # skip a run if the same task is already executing


@dataclass
class RecoveryConfig:
    """Crash recovery configuration."""
    stale_after_minutes: int = 60


class CronieConfig:
    """
    Engine configuration manager.

    Loads and manages configuration from a JSON file, with support
    for validation and defaults.

    Configuration path priority:
    1. Explicit config_path argument
    2. CRONIE_CONFIG_PATH environment variable
    3. Default: ~/.cronie/config.json (or $CRONIE_DATA_DIR/config.json)
    """

    def __init__(self, config_path: Optional[str] = None, db_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
            db_path: Path to the SQLite database. If None, uses env var or default.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get(ENV_CONFIG_PATH):
            self.config_path = Path(os.environ[ENV_CONFIG_PATH]).expanduser()
        else:
            self.config_path = get_data_dir() / "config.json"

        self._db_path_fixed = bool(db_path or os.environ.get(ENV_DB_PATH))
        self.db_path: Path = Path(db_path).expanduser() if db_path else get_db_path()
        self.logging: LoggingConfig = LoggingConfig()
        self.execution: ExecutionConfig = ExecutionConfig()
        self.recovery: RecoveryConfig = RecoveryConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.debug(f"No config found at {self.config_path}, using defaults")

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            if data.get('db_path') and not self._db_path_fixed:
                self.db_path = Path(data['db_path']).expanduser()
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])
            if 'execution' in data:
                self.execution = ExecutionConfig(**data['execution'])
            if 'recovery' in data:
                self.recovery = RecoveryConfig(**data['recovery'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'db_path': str(self.db_path),
            'logging': asdict(self.logging),
            'execution': asdict(self.execution),
            'recovery': asdict(self.recovery)
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.logging.level.upper() not in LOG_LEVELS:
            errors.append(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

        execution = self.execution
        if execution.max_workers <= 0:
            errors.append("execution.max_workers must be positive")
        if execution.kill_grace_seconds < 0:
            errors.append("execution.kill_grace_seconds cannot be negative")
        if execution.http_body_limit <= 0:
            errors.append("execution.http_body_limit must be positive")
        if execution.output_limit <= 0:
            errors.append("execution.output_limit must be positive")
        if not execution.shell:
            errors.append("execution.shell cannot be empty")

        if self.recovery.stale_after_minutes <= 0:
            errors.append("recovery.stale_after_minutes must be positive")

        return errors

    def __repr__(self):
        return f"CronieConfig(db={self.db_path}, path={self.config_path})"
