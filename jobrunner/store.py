"""
Durable storage for jobs, scripts and run history.

Built on SQLAlchemy Core so the same code runs against the default
SQLite file and a server database. The engine's connection pool makes
every store safe to share between scheduler worker threads.

Every SQLAlchemy failure is re-raised as PersistenceError.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, MetaData, String, Table,
    Text, create_engine, delete, func, insert, select, update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from jobrunner.exceptions import PersistenceError
from jobrunner.models import (
    Job, JobStatus, Run, RunStatus, Script, ScriptKind, utcnow,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

scripts_table = Table(
    'scripts', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner', Integer, nullable=False, index=True),
    Column('name', String(255), nullable=False),
    Column('content', Text, nullable=False),
    Column('kind', String(16), nullable=False, default=ScriptKind.BASH),
    Column('created_at', DateTime, nullable=False, default=utcnow),
)

jobs_table = Table(
    'jobs', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner', Integer, nullable=False, index=True),
    Column('name', String(255), nullable=False),
    Column('command', Text),
    Column('script_id', Integer, ForeignKey('scripts.id')),
    Column('schedule', String(128), nullable=False),
    Column('status', String(16), nullable=False, default=JobStatus.ACTIVE, index=True),
    Column('long_running', Boolean, nullable=False, default=False),
    Column('created_at', DateTime, nullable=False, default=utcnow),
)

runs_table = Table(
    'job_runs', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_id', Integer, nullable=False, index=True),
    Column('status', String(16), nullable=False, default=RunStatus.RUNNING, index=True),
    Column('started_at', DateTime, nullable=False, index=True),
    Column('finished_at', DateTime),
    Column('output', Text),
)


class Database:
    """
    Owns the engine and schema.

    Usage:
        db = Database('sqlite:////tmp/jobrunner.db')
        jobs = JobStore(db)
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        if url.startswith('sqlite:///'):
            db_file = url[len('sqlite:///'):]
            if db_file and db_file != ':memory:':
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.engine: Engine = create_engine(url, echo=echo)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create engine for {url}: {e}") from e

    def init_schema(self):
        """Create tables if they do not exist."""
        with self.transaction() as conn:
            metadata.create_all(conn)
        logger.debug(f"Schema ready at {self.url}")

    def ping(self):
        """Raise PersistenceError if the database cannot be reached."""
        with self.transaction() as conn:
            conn.execute(select(1))

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction, wrapping driver errors."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e

    def dispose(self):
        self.engine.dispose()


class JobStore:
    """Read/write access to job definitions."""

    def __init__(self, db: Database):
        self.db = db

    def get_job(self, job_id: int) -> Optional[Job]:
        with self.db.transaction() as conn:
            row = conn.execute(
                select(jobs_table).where(jobs_table.c.id == job_id)
            ).mappings().first()
        return Job.from_row(row) if row else None

    def list_jobs(self, status: Optional[str] = None, owner: Optional[int] = None) -> List[Job]:
        """List jobs, optionally filtered by status and owner (newest first)."""
        query = select(jobs_table).order_by(jobs_table.c.id.desc())
        if status:
            query = query.where(jobs_table.c.status == status)
        if owner is not None:
            query = query.where(jobs_table.c.owner == owner)
        with self.db.transaction() as conn:
            rows = conn.execute(query).mappings().all()
        return [Job.from_row(r) for r in rows]

    def create_job(self, job: Job) -> Job:
        """Insert a job and return it with its id and created_at set."""
        created_at = utcnow()
        with self.db.transaction() as conn:
            result = conn.execute(
                insert(jobs_table).values(
                    owner=job.owner,
                    name=job.name,
                    command=job.command,
                    script_id=job.script_id,
                    schedule=job.schedule,
                    status=job.status,
                    long_running=job.long_running,
                    created_at=created_at,
                )
            )
            job.id = result.inserted_primary_key[0]
        job.created_at = created_at
        return job

    def update_status(self, job_id: int, status: str) -> bool:
        """
        Set job status.

        Returns:
            True if the job exists
        """
        if status not in JobStatus.ALL:
            raise ValueError(f"Invalid job status: {status}")
        with self.db.transaction() as conn:
            result = conn.execute(
                update(jobs_table).where(jobs_table.c.id == job_id).values(status=status)
            )
        return result.rowcount > 0

    def delete(self, job_id: int) -> bool:
        """
        Delete a job. Its runs stay until the retention sweep removes them.

        Returns:
            True if the job existed
        """
        with self.db.transaction() as conn:
            result = conn.execute(delete(jobs_table).where(jobs_table.c.id == job_id))
        return result.rowcount > 0


class ScriptStore:
    """Read/write access to stored scripts."""

    def __init__(self, db: Database):
        self.db = db

    def get_script(self, script_id: int) -> Optional[Script]:
        with self.db.transaction() as conn:
            row = conn.execute(
                select(scripts_table).where(scripts_table.c.id == script_id)
            ).mappings().first()
        return Script.from_row(row) if row else None

    def create_script(self, script: Script) -> Script:
        if script.kind not in ScriptKind.ALL:
            raise ValueError(f"Invalid script kind: {script.kind}")
        created_at = utcnow()
        with self.db.transaction() as conn:
            result = conn.execute(
                insert(scripts_table).values(
                    owner=script.owner,
                    name=script.name,
                    content=script.content,
                    kind=script.kind,
                    created_at=created_at,
                )
            )
            script.id = result.inserted_primary_key[0]
        script.created_at = created_at
        return script

    def update_content(self, script_id: int, content: str) -> bool:
        with self.db.transaction() as conn:
            result = conn.execute(
                update(scripts_table)
                .where(scripts_table.c.id == script_id)
                .values(content=content)
            )
        return result.rowcount > 0

    def delete(self, script_id: int) -> bool:
        with self.db.transaction() as conn:
            result = conn.execute(delete(scripts_table).where(scripts_table.c.id == script_id))
        return result.rowcount > 0


class RunStore:
    """Read/write access to run history."""

    def __init__(self, db: Database):
        self.db = db

    def insert_run(self, job_id: int, started_at: Optional[datetime] = None) -> int:
        """Create a run in 'running' state and return its id."""
        with self.db.transaction() as conn:
            result = conn.execute(
                insert(runs_table).values(
                    job_id=job_id,
                    status=RunStatus.RUNNING,
                    started_at=started_at or utcnow(),
                )
            )
            return result.inserted_primary_key[0]

    def update_run(self, run_id: int, status: str, output: str,
                   finished_at: Optional[datetime] = None) -> bool:
        """
        Finalize a run. Only a run still in 'running' state is updated.

        Returns:
            True if a running run was finalized
        """
        if status not in RunStatus.FINISHED:
            raise ValueError(f"Run can only be finalized as success or error, not {status}")
        with self.db.transaction() as conn:
            result = conn.execute(
                update(runs_table)
                .where(runs_table.c.id == run_id)
                .where(runs_table.c.status == RunStatus.RUNNING)
                .values(status=status, output=output, finished_at=finished_at or utcnow())
            )
        return result.rowcount > 0

    def get_run(self, run_id: int) -> Optional[Run]:
        with self.db.transaction() as conn:
            row = conn.execute(
                select(runs_table).where(runs_table.c.id == run_id)
            ).mappings().first()
        return Run.from_row(row) if row else None

    def list_runs(self, job_id: int, limit: Optional[int] = None) -> List[Run]:
        """Runs for a job, newest first."""
        query = (
            select(runs_table)
            .where(runs_table.c.job_id == job_id)
            .order_by(runs_table.c.id.desc())
        )
        if limit:
            query = query.limit(limit)
        with self.db.transaction() as conn:
            rows = conn.execute(query).mappings().all()
        return [Run.from_row(r) for r in rows]

    def delete_runs_older_than(self, age: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete finished runs whose finish time is older than age.

        Runs still in progress have no finish time and are never deleted.

        Returns:
            Number of deleted runs
        """
        cutoff = (now or utcnow()) - age
        with self.db.transaction() as conn:
            result = conn.execute(
                delete(runs_table)
                .where(runs_table.c.finished_at.is_not(None))
                .where(runs_table.c.finished_at < cutoff)
            )
        return result.rowcount

    def count_runs(self) -> int:
        with self.db.transaction() as conn:
            return conn.execute(select(func.count()).select_from(runs_table)).scalar_one()
