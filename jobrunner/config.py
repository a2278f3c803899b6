"""
Job runner configuration management.

Handles loading, saving, and validating runner configuration.
Values come from a JSON file, with a few environment variables
taking precedence for deployment-specific paths.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, List
from dataclasses import dataclass, asdict

# Load .env file if python-dotenv is available
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

logger = logging.getLogger(__name__)


def _get_data_dir() -> Path:
    """Get the data directory for runner files."""
    data_dir = os.environ.get('JOBRUNNER_DATA_DIR')
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".jobrunner"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').strip().lower() in ('1', 'true', 'yes')


@dataclass
class TimeoutConfig:
    """Wall-clock bounds for child processes, in seconds."""
    command_seconds: int = 300
    shell_script_seconds: int = 300
    node_script_seconds: int = 1800
    long_running_seconds: int = 12 * 3600
    kill_grace_seconds: int = 5


@dataclass
class WorkspaceConfig:
    """Per-execution workspace directories."""
    root: str = None  # Set dynamically in __post_init__
    prefix: str = "user"

    def __post_init__(self):
        if self.root is None:
            self.root = tempfile.gettempdir()


@dataclass
class ExecutionConfig:
    """Worker pool and interpreter settings."""
    max_workers: int = 20
    allow_overlap: bool = True  # Concurrent runs of the same job
    max_command_length: int = 2000
    shell: str = "/bin/sh"
    bash: str = "bash"
    node: str = "node"
    misfire_grace_seconds: int = 60
    reconcile_seconds: int = 30  # How often the registry is synced with the job table
    timezone: str = "UTC"


@dataclass
class RetentionConfig:
    """Run history retention."""
    days: int = 30
    cron: str = "0 0 * * *"  # Daily at midnight


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__
    verbose: bool = False

    def __post_init__(self):
        if self.file is None:
            self.file = str(_get_data_dir() / "logs" / "jobrunner.log")
        if _env_flag('VERBOSE_LOGS'):
            self.verbose = True


class RunnerConfig:
    """
    Runner configuration manager.

    Configuration path priority:
    1. Explicit config_path argument
    2. JOBRUNNER_CONFIG_PATH environment variable
    3. Default: ~/.jobrunner/config.json

    The database URL can always be overridden with JOBRUNNER_DATABASE_URL.
    """

    DEFAULT_CONFIG_PATH = Path.home() / ".jobrunner" / "config.json"

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize runner configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get('JOBRUNNER_CONFIG_PATH'):
            self.config_path = Path(os.environ['JOBRUNNER_CONFIG_PATH']).expanduser()
        else:
            self.config_path = self.DEFAULT_CONFIG_PATH

        self.data_dir: Path = _get_data_dir()
        self.database_url: str = f"sqlite:///{self.data_dir / 'jobrunner.db'}"
        self.timeouts = TimeoutConfig()
        self.workspace = WorkspaceConfig()
        self.execution = ExecutionConfig()
        self.retention = RetentionConfig()
        self.logging = LoggingConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        if os.environ.get('JOBRUNNER_DATABASE_URL'):
            self.database_url = os.environ['JOBRUNNER_DATABASE_URL']

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            if 'database_url' in data:
                self.database_url = data['database_url']
            if 'timeouts' in data:
                self.timeouts = TimeoutConfig(**data['timeouts'])
            if 'workspace' in data:
                self.workspace = WorkspaceConfig(**data['workspace'])
            if 'execution' in data:
                self.execution = ExecutionConfig(**data['execution'])
            if 'retention' in data:
                self.retention = RetentionConfig(**data['retention'])
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'database_url': self.database_url,
            'timeouts': asdict(self.timeouts),
            'workspace': asdict(self.workspace),
            'execution': asdict(self.execution),
            'retention': asdict(self.retention),
            'logging': asdict(self.logging),
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
        # Imported here so that loading config never needs the scheduler stack
        from jobrunner.triggers import is_valid_expression

        errors = []

        for name, value in asdict(self.timeouts).items():
            if value <= 0:
                errors.append(f"timeouts.{name} must be positive")

        if self.execution.max_workers <= 0:
            errors.append("execution.max_workers must be positive")
        if self.execution.max_command_length <= 0:
            errors.append("execution.max_command_length must be positive")
        if self.execution.reconcile_seconds <= 0:
            errors.append("execution.reconcile_seconds must be positive")

        if self.retention.days <= 0:
            errors.append("retention.days must be positive")
        if not is_valid_expression(self.retention.cron):
            errors.append(f"retention.cron is not a valid cron expression: {self.retention.cron}")

        if not self.database_url:
            errors.append("database_url cannot be empty")

        return errors

    def __repr__(self):
        return f"RunnerConfig(path={self.config_path}, database={self.database_url})"
