"""
Core scheduler service using APScheduler.

Provides:
- Cron-driven triggering of stored jobs
- Manual "run now" dispatch on the same worker pool
- Cancellation of schedules and running processes
- Daily retention sweep of run history

Schedule handles live only in memory. They are rebuilt from the job
store on startup and reconciled with it periodically, so changes made
by other processes are picked up. Every firing re-reads the job from
storage before doing anything, so pause and delete take effect even if
a stale trigger is still registered.
"""

import logging
import signal
import sys
import uuid
from typing import Optional, Dict, Any, List

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
)

from jobrunner.config import RunnerConfig
from jobrunner.denylist import is_forbidden
from jobrunner.exceptions import (
    ForbiddenContentError, InvalidExpression, PersistenceError, ValidationError,
)
from jobrunner.executor import ExecutionCoordinator
from jobrunner.models import CommandPayload, Job, JobStatus, ScriptKind, ScriptPayload
from jobrunner.recorder import RunRecorder
from jobrunner.registry import JobRegistry
from jobrunner.retention import RetentionSweeper
from jobrunner.store import Database, JobStore, RunStore, ScriptStore
from jobrunner.triggers import build_trigger, describe_expression, is_valid_expression

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Main scheduler service managing job schedules and executions.

    Usage:
        service = SchedulerService(RunnerConfig())
        service.start()
        job = service.submit_job(owner=1, name='hello', schedule='*/5 * * * *',
                                 command='echo hello')
    """

    RETENTION_JOB_ID = 'retention-sweeper'
    RECONCILE_JOB_ID = 'reconciler'

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        database: Optional[Database] = None,
        coordinator: Optional[ExecutionCoordinator] = None
    ):
        """
        Initialize scheduler service.

        Args:
            config: Runner configuration (loaded from the default location if None)
            database: Durable store (built from config.database_url if None)
            coordinator: Execution coordinator (built from config if None)
        """
        self.config = config or RunnerConfig()
        self.database = database or Database(self.config.database_url)

        self.jobs = JobStore(self.database)
        self.scripts = ScriptStore(self.database)
        self.runs = RunStore(self.database)

        self.registry = JobRegistry()
        self.recorder = RunRecorder(self.runs)
        self.coordinator = coordinator or ExecutionCoordinator(
            self.config, self.jobs, self.scripts, self.recorder, self.registry
        )
        self.sweeper = RetentionSweeper(
            self.runs,
            days=self.config.retention.days,
            verbose=self.config.logging.verbose
        )

        execution = self.config.execution
        executors = {
            'default': ThreadPoolExecutor(execution.max_workers)
        }

        # Job defaults
        job_defaults = {
            'coalesce': True,  # Combine missed firings of one trigger into one
            'max_instances': execution.max_workers,  # Overlapping runs of one job are allowed
            'misfire_grace_time': execution.misfire_grace_seconds
        }

        self.scheduler = BackgroundScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone=execution.timezone
        )

        self._setup_event_listeners()

        logger.debug(f"Scheduler initialized with store: {self.database.url}")

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.debug(f"Trigger '{event.job_id}' finished")

        def job_error_listener(event):
            logger.error(
                f"Trigger '{event.job_id}' raised exception: {event.exception}",
                exc_info=(type(event.exception), event.exception, event.exception.__traceback__)
            )

        def job_missed_listener(event):
            logger.warning(f"Trigger '{event.job_id}' missed scheduled run time")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)

    def install_signal_handlers(self):
        """Setup signal handlers for graceful shutdown (main thread only)."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop(wait=False, terminate=True)
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    @staticmethod
    def _trigger_id(job_id: int) -> str:
        return f"job-{job_id}"

    # Scheduling

    def schedule(self, job: Job) -> bool:
        """
        Install a cron trigger for job.

        Idempotent: a job that already has a live trigger is left alone.

        Returns:
            True if a new trigger was installed

        Raises:
            InvalidExpression: If the job's cron expression is invalid
        """
        if not is_valid_expression(job.schedule):
            logger.warning(f"Invalid cron expression for job #{job.id}: {job.schedule}")
            raise InvalidExpression(job.schedule)

        self.registry.clear_cancelled(job.id)

        def install():
            return self.scheduler.add_job(
                self._fire,
                trigger=build_trigger(job.schedule, self.config.execution.timezone),
                args=[job.id],
                id=self._trigger_id(job.id),
                name=job.name,
                replace_existing=True
            )

        if not self.registry.add_schedule(job.id, install):
            logger.info(f"Job #{job.id} \"{job.name}\" is already scheduled")
            return False

        logger.info(
            f"Scheduled job #{job.id}: \"{job.name}\" ({job.schedule}, "
            f"{describe_expression(job.schedule)})"
        )
        return True

    def _fire(self, job_id: int):
        """Trigger callback. Never trusts the job as it was when scheduled."""
        if not self.registry.has_schedule(job_id):
            logger.info(f"Job #{job_id} is no longer scheduled; ignoring stray trigger")
            return

        try:
            fresh = self.jobs.get_job(job_id)
        except PersistenceError as e:
            logger.error(f"Failed to load job #{job_id} for scheduled run: {e}")
            return

        if fresh is None:
            logger.info(f"Job #{job_id} was deleted; skipping scheduled run")
            return
        if fresh.is_paused:
            logger.info(f"Skipping paused job #{job_id}: \"{fresh.name}\"")
            return

        self.coordinator.run_now(fresh)

    def unschedule(self, job_id: int) -> bool:
        """
        Remove the live trigger for job_id, leaving running processes alone.

        Returns:
            True if a trigger was removed
        """
        handle = self.registry.pop_schedule(job_id)
        if handle is None:
            return False
        try:
            handle.remove()
        except JobLookupError:
            # Already gone from APScheduler (e.g. scheduler shut down)
            pass
        return True

    def cancel(self, job_id: int) -> bool:
        """
        Stop future firings of job_id and terminate its running processes.

        Does not wait for the processes to exit; their runs are finalized
        by the workers that spawned them.
        Runs of job_id that are still starting up are terminated as soon
        as their process spawns, until the job is scheduled again.

        Returns:
            True if a live trigger existed
        """
        removed = self.unschedule(job_id)
        if removed:
            logger.info(f"Canceled scheduled job #{job_id}")
        else:
            logger.info(f"Job #{job_id} is not currently scheduled; nothing to cancel")

        processes = self.registry.cancel(job_id)
        for handle in processes:
            handle.terminate()
        if processes:
            logger.info(f"Killed {len(processes)} running process(es) for job #{job_id}")

        return removed

    def initialize(self) -> Dict[str, int]:
        """
        Load jobs from storage and schedule every active one.

        Returns:
            Counts of loaded, skipped (paused) and failed jobs

        Raises:
            PersistenceError: If the store cannot be reached
        """
        logger.info("Initializing scheduler and loading jobs from database...")
        self.database.init_schema()
        jobs = self.jobs.list_jobs()

        counts = {'loaded': 0, 'skipped': 0, 'failed': 0}
        for job in jobs:
            if job.is_paused:
                logger.debug(f"Skipping paused job: \"{job.name}\" (id={job.id})")
                counts['skipped'] += 1
                continue
            try:
                self.schedule(job)
                counts['loaded'] += 1
            except InvalidExpression as e:
                logger.error(f"Failed to schedule job #{job.id}: {e}")
                counts['failed'] += 1

        logger.info(
            f"Scheduler initialization complete. Loaded {counts['loaded']} active jobs, "
            f"skipped {counts['skipped']} paused jobs"
            + (f", {counts['failed']} failed" if counts['failed'] else "")
        )
        return counts

    def reconcile(self) -> Dict[str, int]:
        """
        Bring the registry in line with the job table.

        Picks up changes written by other processes (the CLI): active jobs
        without a trigger are scheduled, paused jobs lose their trigger
        (their running processes are left alone), and deleted jobs are
        cancelled, which also terminates their running processes.

        Returns:
            Counts of scheduled, unscheduled and cancelled jobs
        """
        counts = {'scheduled': 0, 'unscheduled': 0, 'cancelled': 0}
        try:
            jobs = {job.id: job for job in self.jobs.list_jobs()}
        except PersistenceError as e:
            logger.error(f"Failed to load jobs for reconciliation: {e}")
            return counts

        for job in jobs.values():
            if job.is_paused or self.registry.has_schedule(job.id):
                continue
            if not is_valid_expression(job.schedule):
                logger.debug(f"Not scheduling job #{job.id}: invalid cron expression {job.schedule!r}")
                continue
            if self.schedule(job):
                counts['scheduled'] += 1

        for job_id in self.registry.scheduled_ids():
            job = jobs.get(job_id)
            if job is not None and job.is_paused:
                self.unschedule(job_id)
                logger.info(f"Job #{job_id} was paused; removed its trigger")
                counts['unscheduled'] += 1

        orphaned = set(self.registry.scheduled_ids()) | set(self.registry.executing_ids())
        for job_id in orphaned - set(jobs):
            logger.info(f"Job #{job_id} was deleted; cancelling")
            self.cancel(job_id)
            counts['cancelled'] += 1

        if any(counts.values()):
            logger.info(
                f"Reconciled jobs: {counts['scheduled']} scheduled, "
                f"{counts['unscheduled']} unscheduled, {counts['cancelled']} cancelled"
            )
        return counts

    def dispatch_run(self, job: Job) -> str:
        """
        Queue a manual run of job on the worker pool and return immediately.

        Returns:
            Dispatch id of the one-off trigger
        """
        dispatch_id = f"run-{job.id}-{uuid.uuid4().hex[:8]}"
        self.scheduler.add_job(
            self.coordinator.run_now,
            'date',  # No run_date: fire as soon as a worker is free
            id=dispatch_id,
            name=f"manual run of {job.name}",
            misfire_grace_time=None,  # Wait for a free worker however long it takes
            kwargs={'job': job, 'manual': True}
        )
        logger.info(f"Queued manual run of job #{job.id} \"{job.name}\" ({dispatch_id})")
        return dispatch_id

    # Interface used by the API layer

    def schedule_job(self, job: Job, run_now: bool = False):
        """Schedule job, or dispatch a single manual run when run_now is set."""
        if run_now:
            return self.dispatch_run(job)
        return self.schedule(job)

    def cancel_job(self, job_id: int) -> bool:
        return self.cancel(job_id)

    def init_scheduler(self) -> Dict[str, int]:
        return self.initialize()

    def cleanup_old_runs(self) -> int:
        return self.sweeper.sweep()

    # Job lifecycle

    def submit_job(
        self,
        owner: int,
        name: str,
        schedule: str,
        command: Optional[str] = None,
        script_id: Optional[int] = None,
        long_running: bool = False
    ) -> Job:
        """
        Validate, store and schedule a new job.

        Raises:
            ValidationError: Missing name, missing or ambiguous payload, unknown script
            ForbiddenContentError: Payload matches the denylist
            InvalidExpression: Cron expression is invalid
        """
        if not name or not name.strip():
            raise ValidationError("name is required")
        if (command is None) == (script_id is None):
            raise ValidationError("exactly one of command or script is required")

        if command is not None:
            if not command.strip():
                raise ValidationError("command cannot be empty")
            if len(command) > self.config.execution.max_command_length:
                raise ValidationError("command too long")
            if is_forbidden(command, ScriptKind.BASH):
                raise ForbiddenContentError("command contains forbidden operations")
            payload = CommandPayload(command=command)
        else:
            script = self.scripts.get_script(script_id)
            if script is None or script.owner != owner:
                raise ValidationError(f"script {script_id} not found")
            if is_forbidden(script.content, script.kind):
                raise ForbiddenContentError("script contains forbidden operations")
            payload = ScriptPayload(script_id=script_id)

        if not is_valid_expression(schedule):
            raise InvalidExpression(schedule)

        job = self.jobs.create_job(Job(
            id=None,
            owner=owner,
            name=name.strip(),
            payload=payload,
            schedule=schedule,
            status=JobStatus.ACTIVE,
            long_running=long_running
        ))
        logger.info(f"Created job #{job.id} \"{job.name}\" for owner {owner}")

        self.schedule(job)
        return job

    def pause_job(self, job_id: int) -> bool:
        """
        Mark a job paused and stop its trigger. Runs already in flight continue.

        Returns:
            True if the job exists
        """
        if not self.jobs.update_status(job_id, JobStatus.PAUSED):
            return False
        self.unschedule(job_id)
        logger.info(f"Paused job #{job_id}")
        return True

    def resume_job(self, job_id: int) -> bool:
        """
        Mark a job active and reinstall its trigger if needed.

        Returns:
            True if the job exists
        """
        if not self.jobs.update_status(job_id, JobStatus.ACTIVE):
            return False
        job = self.jobs.get_job(job_id)
        if job and not self.registry.has_schedule(job_id):
            self.schedule(job)
        logger.info(f"Resumed job #{job_id}")
        return True

    def delete_job(self, job_id: int) -> bool:
        """
        Cancel a job, terminating its running processes, then delete it.

        Returns:
            True if the job existed
        """
        self.cancel(job_id)
        deleted = self.jobs.delete(job_id)
        if deleted:
            logger.info(f"Deleted job #{job_id}")
        return deleted

    def run_job_now(self, job_id: int) -> Optional[str]:
        """
        Dispatch a manual run of a stored job.

        Returns:
            Dispatch id, or None if the job does not exist
        """
        job = self.jobs.get_job(job_id)
        if job is None:
            return None
        return self.dispatch_run(job)

    # Introspection

    def get_scheduled(self) -> List[Dict[str, Any]]:
        """
        Get list of all live triggers.

        Returns:
            List of trigger information dictionaries
        """
        triggers = []
        for job_id in self.registry.scheduled_ids():
            handle = self.registry.get_schedule(job_id)
            if handle is None:
                continue
            next_run = getattr(handle, 'next_run_time', None)
            triggers.append({
                'job_id': job_id,
                'name': handle.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(handle.trigger),
                'running': self.registry.running_count(job_id)
            })
        return triggers

    # Lifecycle

    def start(self):
        """Load jobs, register the retention sweep and reconcile pass, and start the scheduler."""
        if self.scheduler.running:
            logger.warning("Scheduler is already running")
            return

        errors = self.config.validate()
        if errors:
            logger.error("Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")
            raise ValueError("Invalid configuration")

        logger.info("Starting scheduler...")
        self.initialize()

        self.scheduler.add_job(
            self.cleanup_old_runs,
            trigger=build_trigger(self.config.retention.cron, self.config.execution.timezone),
            id=self.RETENTION_JOB_ID,
            name='retention sweep',
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.add_job(
            self.reconcile,
            'interval',
            seconds=self.config.execution.reconcile_seconds,
            id=self.RECONCILE_JOB_ID,
            name='registry reconcile',
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        logger.info("Scheduler started successfully")

    def stop(self, wait: bool = True, terminate: bool = False):
        """
        Stop the scheduler.

        Args:
            wait: If True, wait for running executions to complete
            terminate: If True, signal every running process first
        """
        for job_id in self.registry.scheduled_ids():
            self.unschedule(job_id)

        if terminate:
            for job_id in self.registry.executing_ids():
                for handle in self.registry.drain(job_id):
                    handle.terminate()

        if self.scheduler.running:
            logger.info("Stopping scheduler...")
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self.scheduler.running
