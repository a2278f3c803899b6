"""
Data models for jobs, scripts and runs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union, Mapping, Any


class JobStatus:
    """Lifecycle status of a job."""
    ACTIVE = 'active'
    PAUSED = 'paused'

    ALL = (ACTIVE, PAUSED)


class RunStatus:
    """Outcome of a single run."""
    RUNNING = 'running'
    SUCCESS = 'success'
    ERROR = 'error'

    FINISHED = (SUCCESS, ERROR)


class ScriptKind:
    """Interpreter used for a stored script."""
    BASH = 'bash'
    NODE = 'node'

    ALL = (BASH, NODE)


NO_OUTPUT = '(no output)'


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the store keeps naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class CommandPayload:
    """Inline shell command."""
    command: str


@dataclass(frozen=True)
class ScriptPayload:
    """Reference to a stored script."""
    script_id: int


Payload = Union[CommandPayload, ScriptPayload]


@dataclass
class Job:
    """A user-defined unit of scheduled work."""
    id: Optional[int]
    owner: int
    name: str
    payload: Payload
    schedule: str  # 5-field cron expression
    status: str = JobStatus.ACTIVE
    long_running: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.payload, (CommandPayload, ScriptPayload)):
            raise TypeError(f"Unsupported payload type: {type(self.payload).__name__}")

    @property
    def is_paused(self) -> bool:
        return self.status == JobStatus.PAUSED

    @property
    def command(self) -> Optional[str]:
        if isinstance(self.payload, CommandPayload):
            return self.payload.command
        return None

    @property
    def script_id(self) -> Optional[int]:
        if isinstance(self.payload, ScriptPayload):
            return self.payload.script_id
        return None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Job':
        """Create from a database row mapping"""
        if row['script_id'] is not None:
            payload = ScriptPayload(script_id=row['script_id'])
        else:
            payload = CommandPayload(command=row['command'])
        return cls(
            id=row['id'],
            owner=row['owner'],
            name=row['name'],
            payload=payload,
            schedule=row['schedule'],
            status=row['status'],
            long_running=bool(row['long_running']),
            created_at=row['created_at']
        )


@dataclass
class Script:
    """A stored script body. Read once per run."""
    id: Optional[int]
    owner: int
    name: str
    content: str
    kind: str = ScriptKind.BASH
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Script':
        """Create from a database row mapping"""
        return cls(
            id=row['id'],
            owner=row['owner'],
            name=row['name'],
            content=row['content'],
            kind=row['kind'],
            created_at=row['created_at']
        )


@dataclass
class Run:
    """
    One recorded execution attempt of a job.

    finished_at and output are None exactly while status is 'running'.
    """
    id: Optional[int]
    job_id: int
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    output: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in RunStatus.FINISHED

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'job_id': self.job_id,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'output': self.output,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Run':
        """Create from a database row mapping"""
        return cls(
            id=row['id'],
            job_id=row['job_id'],
            status=row['status'],
            started_at=row['started_at'],
            finished_at=row['finished_at'],
            output=row['output']
        )
