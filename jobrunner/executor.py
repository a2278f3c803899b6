"""
Execution coordinator.

Runs one job attempt end to end, for scheduled firings and manual
"run now" requests alike:

    status check -> workspace -> run record -> payload checks -> spawn
    -> wait -> finalize run record -> release workspace

The workspace is always released, whatever happened in between. Nothing
raised while running a job escapes this module; failures end up in the
run record (when one exists) and in the log.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from jobrunner.config import RunnerConfig
from jobrunner.denylist import is_forbidden
from jobrunner.exceptions import (
    ForbiddenContentError, PersistenceError, ScriptNotFound, WorkspaceAcquireFailed,
)
from jobrunner.models import Job, RunStatus, Script, ScriptKind
from jobrunner.process import ProcessResult, ProcessRunner
from jobrunner.recorder import RunRecorder
from jobrunner.registry import JobRegistry
from jobrunner.store import JobStore, ScriptStore
from jobrunner.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

# Script bodies containing one of these get the extended timeout
LONG_RUNNING_MARKERS = ('@long-running', '@persistent-connection')

SCRIPT_FILENAMES = {
    ScriptKind.BASH: 'script.sh',
    ScriptKind.NODE: 'script.js',
}


class SkipReason:
    """Why an attempt ended before a run record was created."""
    PAUSED = 'paused'
    DELETED = 'deleted'
    OVERLAP = 'overlap'
    WORKSPACE = 'workspace'
    PERSISTENCE = 'persistence'


@dataclass
class ExecutionOutcome:
    """What happened to one execution attempt."""
    job_id: int
    run_id: Optional[int] = None
    status: Optional[str] = None  # RunStatus once a run record exists
    skipped: Optional[str] = None  # SkipReason when no run was recorded
    result: Optional[ProcessResult] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS


@dataclass
class PreparedCommand:
    """Everything needed to spawn the child for one run."""
    executable: str
    args: Tuple[str, ...]
    timeout: int
    env: Dict[str, str]


def has_long_running_directive(content: str) -> bool:
    return any(marker in content for marker in LONG_RUNNING_MARKERS)


class ExecutionCoordinator:
    """
    Executes jobs with workspace isolation, output capture and run recording.

    Usage:
        coordinator = ExecutionCoordinator(config, jobs, scripts, recorder, registry)
        outcome = coordinator.run_now(job, manual=True)
    """

    def __init__(
        self,
        config: RunnerConfig,
        jobs: JobStore,
        scripts: ScriptStore,
        recorder: RunRecorder,
        registry: JobRegistry,
        workspaces: Optional[WorkspaceManager] = None,
        runner: Optional[ProcessRunner] = None,
        forbidden: Callable[[str, str], bool] = is_forbidden
    ):
        self.config = config
        self.jobs = jobs
        self.scripts = scripts
        self.recorder = recorder
        self.registry = registry
        self.workspaces = workspaces or WorkspaceManager(
            config.workspace.root, prefix=config.workspace.prefix
        )
        self.runner = runner or ProcessRunner(kill_grace=config.timeouts.kill_grace_seconds)
        self.forbidden = forbidden

    def run_now(self, job: Job, manual: bool = False) -> ExecutionOutcome:
        """
        Execute one attempt of job and wait for it to finish.

        The job's status is always re-read from storage first; the job
        passed in is only used for its id.

        Args:
            job: Job snapshot
            manual: True for a user-triggered run (logging only)

        Returns:
            ExecutionOutcome describing the attempt
        """
        trigger = 'manual' if manual else 'scheduled'

        try:
            current = self.jobs.get_job(job.id)
        except PersistenceError as e:
            logger.error(f"[job {job.id}] Failed to read job status before {trigger} run: {e}")
            return ExecutionOutcome(job_id=job.id, skipped=SkipReason.PERSISTENCE, error=str(e))

        if current is None:
            logger.info(f"[job {job.id}] Job no longer exists; skipping {trigger} run")
            return ExecutionOutcome(job_id=job.id, skipped=SkipReason.DELETED)
        if current.is_paused:
            logger.info(f"[job {job.id}] Job \"{current.name}\" is paused; skipping {trigger} run")
            return ExecutionOutcome(job_id=job.id, skipped=SkipReason.PAUSED)

        exclusive = not self.config.execution.allow_overlap
        if exclusive and not self.registry.try_acquire(current.id):
            logger.info(f"[job {current.id}] Previous run still in progress; skipping {trigger} run")
            return ExecutionOutcome(job_id=current.id, skipped=SkipReason.OVERLAP)

        try:
            return self._execute(current, trigger)
        finally:
            if exclusive:
                self.registry.release(current.id)

    def _execute(self, job: Job, trigger: str) -> ExecutionOutcome:
        label = f"[job {job.id}] "
        logger.info(f"{label}Starting {trigger} run of \"{job.name}\"")

        try:
            workspace = self.workspaces.acquire(job.owner)
        except WorkspaceAcquireFailed as e:
            logger.error(f"{label}{e}")
            return ExecutionOutcome(job_id=job.id, skipped=SkipReason.WORKSPACE, error=str(e))

        run_id = None
        try:
            try:
                run_id = self.recorder.begin(job.id)
            except PersistenceError as e:
                logger.error(f"{label}Failed to record run start: {e}")
                return ExecutionOutcome(job_id=job.id, skipped=SkipReason.PERSISTENCE, error=str(e))

            label = f"[job {job.id}:run {run_id}] "
            logger.debug(f"{label}Workspace: {workspace}")

            try:
                prepared = self._prepare(job, workspace)
            except (ScriptNotFound, ForbiddenContentError) as e:
                logger.warning(f"{label}Not executing: {e}")
                self.recorder.fail(run_id, str(e))
                return ExecutionOutcome(
                    job_id=job.id, run_id=run_id, status=RunStatus.ERROR, error=str(e)
                )

            handle = self.runner.spawn(
                prepared.executable,
                prepared.args,
                cwd=str(workspace),
                env=prepared.env,
                timeout=prepared.timeout,
                label=label
            )
            if not self.registry.track(job.id, handle):
                logger.info(f"{label}Job was cancelled while starting; terminating process")
                handle.terminate()
            try:
                result = handle.result()
            finally:
                self.registry.untrack(job.id, handle)

            status = RunStatus.SUCCESS if result.success else RunStatus.ERROR
            output = result.output
            if result.timed_out:
                output = f"{output.rstrip()}\n[timed out after {prepared.timeout}s]"
            elif handle.terminate_requested:
                output = f"{output.rstrip()}\n[terminated: job was cancelled]"

            self.recorder.finalize(run_id, status, output)

            if result.success:
                logger.info(f"{label}Completed successfully in {result.duration_seconds:.2f}s")
            else:
                logger.warning(f"{label}Failed: {result.describe()}")
            logger.debug(f"{label}Output: {output.strip() or '(no output)'}")

            return ExecutionOutcome(job_id=job.id, run_id=run_id, status=status, result=result)

        except Exception as e:
            logger.error(f"{label}Run failed: {e}", exc_info=True)
            if run_id is not None:
                self.recorder.fail(run_id, str(e))
            return ExecutionOutcome(job_id=job.id, run_id=run_id, status=RunStatus.ERROR, error=str(e))

        finally:
            self.workspaces.release(workspace)

    def _prepare(self, job: Job, workspace: Path) -> PreparedCommand:
        """
        Resolve the payload into a command line, re-checking the denylist.

        Raises:
            ScriptNotFound: If the referenced script is gone
            ForbiddenContentError: If the payload matches the denylist
        """
        timeouts = self.config.timeouts
        execution = self.config.execution
        env = self._build_env(job, workspace)

        if job.script_id is not None:
            script = self.scripts.get_script(job.script_id)
            if script is None:
                raise ScriptNotFound("script not found")
            if self.forbidden(script.content, script.kind):
                raise ForbiddenContentError("script contains forbidden operations")

            script_path = self._write_script(script, workspace)
            env['SCRIPT_ID'] = str(script.id)

            if script.kind == ScriptKind.NODE:
                if job.long_running or has_long_running_directive(script.content):
                    timeout = timeouts.long_running_seconds
                else:
                    timeout = timeouts.node_script_seconds
                return PreparedCommand(execution.node, (str(script_path),), timeout, env)

            timeout = timeouts.long_running_seconds if job.long_running else timeouts.shell_script_seconds
            return PreparedCommand(execution.bash, (str(script_path),), timeout, env)

        command = job.command or ''
        if self.forbidden(command, ScriptKind.BASH):
            raise ForbiddenContentError("command contains forbidden operations")

        timeout = timeouts.long_running_seconds if job.long_running else timeouts.command_seconds
        return PreparedCommand(execution.shell, ('-c', command), timeout, env)

    def _write_script(self, script: Script, workspace: Path) -> Path:
        path = workspace / SCRIPT_FILENAMES.get(script.kind, 'script')
        path.write_text(script.content)
        path.chmod(0o700)
        return path

    def _build_env(self, job: Job, workspace: Path) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({
            'USER_TEMP_DIR': str(workspace),
            'JOB_ID': str(job.id),
            'USER_ID': str(job.owner),
            'JOB_NAME': job.name,
        })
        return env
