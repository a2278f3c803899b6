"""
Shared pytest fixtures for jobrunner tests.
"""

import threading
import time

import pytest

from jobrunner.config import RunnerConfig
from jobrunner.executor import ExecutionCoordinator
from jobrunner.models import CommandPayload, Job, JobStatus
from jobrunner.recorder import RunRecorder
from jobrunner.registry import JobRegistry
from jobrunner.service import SchedulerService
from jobrunner.store import Database, JobStore, RunStore, ScriptStore


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for name in ('JOBRUNNER_CONFIG_PATH', 'JOBRUNNER_DATABASE_URL',
                 'JOBRUNNER_DATA_DIR', 'VERBOSE_LOGS'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path):
    """Config pointing at tmp_path with short timeouts."""
    cfg = RunnerConfig(str(tmp_path / "config.json"))
    cfg.database_url = f"sqlite:///{tmp_path / 'jobrunner.db'}"
    cfg.workspace.root = str(tmp_path / "workspaces")
    cfg.timeouts.command_seconds = 10
    cfg.timeouts.shell_script_seconds = 10
    cfg.timeouts.kill_grace_seconds = 1
    cfg.execution.max_workers = 8
    return cfg


@pytest.fixture
def database(config):
    db = Database(config.database_url)
    db.init_schema()
    yield db
    db.dispose()


@pytest.fixture
def job_store(database):
    return JobStore(database)


@pytest.fixture
def script_store(database):
    return ScriptStore(database)


@pytest.fixture
def run_store(database):
    return RunStore(database)


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def coordinator(config, job_store, script_store, run_store, registry):
    return ExecutionCoordinator(
        config, job_store, script_store, RunRecorder(run_store), registry
    )


@pytest.fixture
def service(config, database):
    svc = SchedulerService(config, database=database)
    yield svc
    svc.stop(wait=False, terminate=True)


@pytest.fixture
def make_job(job_store):
    """Factory storing a command job."""

    def _make(command="echo hello", schedule="*/5 * * * *", status=JobStatus.ACTIVE,
              owner=1, name="test job", long_running=False):
        return job_store.create_job(Job(
            id=None,
            owner=owner,
            name=name,
            payload=CommandPayload(command=command),
            schedule=schedule,
            status=status,
            long_running=long_running
        ))

    return _make


def wait_for(predicate, timeout=10.0, interval=0.05):
    """Poll predicate until it returns truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    return predicate()


def run_in_thread(target, *args, **kwargs):
    """Start target in a thread and return (thread, result_holder)."""
    holder = {}

    def _run():
        holder['result'] = target(*args, **kwargs)

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread, holder
