"""
Command-line interface for the job runner.

Provides commands for:
- Starting the scheduler
- Adding scripts and jobs
- Pausing, resuming, deleting and manually running jobs
- Viewing run history
- Cleaning up old runs

Management commands only touch the database. A scheduler running in
another process (`jobrunner start`) applies them on its next reconcile
pass, every `execution.reconcile_seconds`: new and resumed jobs get a
trigger, paused jobs lose theirs, and deleted jobs have their running
processes terminated.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# Load .env file if python-dotenv is available
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

from jobrunner.config import RunnerConfig
from jobrunner.exceptions import JobRunnerError
from jobrunner.models import Script, ScriptKind
from jobrunner.service import SchedulerService
from jobrunner.triggers import describe_expression

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = None, verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # APScheduler logs every trigger at INFO
    logging.getLogger('apscheduler').setLevel(logging.DEBUG if verbose else logging.WARNING)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def _load_service(args) -> SchedulerService:
    config = RunnerConfig(args.config)
    setup_logging(verbose=args.verbose or config.logging.verbose)
    service = SchedulerService(config)
    service.database.init_schema()
    return service


def _format_duration(seconds) -> str:
    if seconds is None:
        return '-'
    if seconds >= 3600:
        return f"{seconds/3600:.1f}h"
    if seconds >= 60:
        return f"{seconds/60:.1f}m"
    return f"{seconds:.1f}s"


def cmd_start(args):
    """Start the scheduler in the foreground."""
    config = RunnerConfig(args.config)
    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose or config.logging.verbose
    )

    logger.info("Starting job runner...")

    try:
        service = SchedulerService(config)
        service.install_signal_handlers()
        service.start()

        logger.info("Running in foreground mode. Press Ctrl+C to stop.")
        try:
            while service.is_running():
                time.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            logger.info("Shutting down...")
            service.stop(wait=False, terminate=True)

    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)


def cmd_add_script(args):
    """Store a script."""
    try:
        service = _load_service(args)
        content = Path(args.file).read_text()
        script = service.scripts.create_script(Script(
            id=None,
            owner=args.owner,
            name=args.name,
            content=content,
            kind=args.kind
        ))
        logger.info(f"Added {script.kind} script #{script.id} \"{script.name}\"")
    except (JobRunnerError, OSError, ValueError) as e:
        logger.error(f"Failed to add script: {e}")
        sys.exit(1)


def cmd_add_job(args):
    """Add a new scheduled job."""
    try:
        service = _load_service(args)
        job = service.submit_job(
            owner=args.owner,
            name=args.name,
            schedule=args.cron,
            command=args.command_text,
            script_id=args.script,
            long_running=args.long_running
        )
        logger.info(f"Added job #{job.id} \"{job.name}\" ({describe_expression(job.schedule)})")
    except JobRunnerError as e:
        logger.error(f"Failed to add job: {e}")
        sys.exit(1)


def cmd_list(args):
    """List stored jobs."""
    try:
        service = _load_service(args)
        jobs = service.jobs.list_jobs(owner=args.owner)
    except JobRunnerError as e:
        logger.error(f"Failed to list jobs: {e}")
        sys.exit(1)

    if not jobs:
        print("No jobs found")
        return

    print(f"\n{len(jobs)} job(s):\n")
    for job in jobs:
        mark = "✓" if not job.is_paused else "⏸"
        print(f"{mark} #{job.id} {job.name} (owner {job.owner})")
        if job.command is not None:
            print(f"    Command:  {job.command}")
        else:
            print(f"    Script:   #{job.script_id}")
        print(f"    Schedule: {job.schedule} ({describe_expression(job.schedule)})")
        print(f"    Status:   {job.status}")
        if job.long_running:
            print("    Long-running: yes")
        print()


def cmd_run(args):
    """Run a job now, in the foreground, and print the run."""
    try:
        service = _load_service(args)
        job = service.jobs.get_job(args.job_id)
        if job is None:
            logger.error(f"Job #{args.job_id} not found")
            sys.exit(1)

        outcome = service.coordinator.run_now(job, manual=True)
        if outcome.run_id is None:
            logger.error(f"Job #{job.id} did not run ({outcome.skipped})")
            sys.exit(1)

        run = service.runs.get_run(outcome.run_id)
    except JobRunnerError as e:
        logger.error(f"Failed to run job: {e}")
        sys.exit(1)

    print(f"\nRun #{run.id}: {run.status} in {_format_duration(run.duration_seconds)}\n")
    print(run.output)
    if run.status != 'success':
        sys.exit(1)


def cmd_pause(args):
    """Pause a job."""
    try:
        service = _load_service(args)
        if not service.pause_job(args.job_id):
            logger.error(f"Job #{args.job_id} not found")
            sys.exit(1)
        logger.info(f"Paused job #{args.job_id}")
    except JobRunnerError as e:
        logger.error(f"Failed to pause job: {e}")
        sys.exit(1)


def cmd_resume(args):
    """Resume a job."""
    try:
        service = _load_service(args)
        if not service.resume_job(args.job_id):
            logger.error(f"Job #{args.job_id} not found")
            sys.exit(1)
        logger.info(f"Resumed job #{args.job_id}")
    except JobRunnerError as e:
        logger.error(f"Failed to resume job: {e}")
        sys.exit(1)


def cmd_delete(args):
    """Delete a job, terminating its running processes. Its runs are kept."""
    try:
        service = _load_service(args)
        if not service.delete_job(args.job_id):
            logger.error(f"Job #{args.job_id} not found")
            sys.exit(1)
        logger.info(f"Deleted job #{args.job_id}")
    except JobRunnerError as e:
        logger.error(f"Failed to delete job: {e}")
        sys.exit(1)


def cmd_history(args):
    """Show run history for a job."""
    try:
        service = _load_service(args)
        runs = service.runs.list_runs(args.job_id, limit=args.limit)
    except JobRunnerError as e:
        print(f"Error reading history: {e}")
        sys.exit(1)

    if not runs:
        print(f"\nNo run history found for job #{args.job_id}.")
        return

    if args.json:
        print(json.dumps([r.to_dict() for r in runs], indent=2))
        return

    rows = []
    for run in runs:
        rows.append([
            str(run.id),
            run.started_at.strftime('%Y-%m-%d %H:%M:%S'),
            run.finished_at.strftime('%Y-%m-%d %H:%M:%S') if run.finished_at else 'running...',
            _format_duration(run.duration_seconds),
            run.status,
        ])

    headers = ['Run ID', 'Start Time', 'End Time', 'Elapsed', 'Status']
    col_widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

    def make_row(cells, widths):
        return "│ " + " │ ".join(cell.ljust(w) for cell, w in zip(cells, widths)) + " │"

    def make_separator(widths, left, mid, right, fill='─'):
        return left + mid.join(fill * (w + 2) for w in widths) + right

    print()
    print(make_separator(col_widths, '┌', '┬', '┐'))
    print(make_row(headers, col_widths))
    print(make_separator(col_widths, '├', '┼', '┤'))
    for row in rows:
        print(make_row(row, col_widths))
    print(make_separator(col_widths, '└', '┴', '┘'))
    print(f"\nShowing {len(runs)} run(s)")


def cmd_cleanup(args):
    """Delete runs older than the retention window."""
    try:
        service = _load_service(args)
    except JobRunnerError as e:
        logger.error(f"Failed to open database: {e}")
        sys.exit(1)
    deleted = service.cleanup_old_runs()
    print(f"Deleted {deleted} run(s)")


def cmd_init(args):
    """Initialize configuration and database."""
    setup_logging(verbose=args.verbose)

    try:
        config = RunnerConfig(args.config)
        config.save()
        logger.info(f"Initialized configuration at: {config.config_path}")

        service = SchedulerService(config)
        service.database.init_schema()
        logger.info(f"Initialized database: {config.database_url}")

        log_dir = Path(config.logging.file).expanduser().parent
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created log directory: {log_dir}")

    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        sys.exit(1)


def cmd_show_config(args):
    """Show current configuration."""
    setup_logging(verbose=args.verbose)

    try:
        config = RunnerConfig(args.config)
    except Exception as e:
        logger.error(f"Failed to show config: {e}")
        sys.exit(1)

    print(f"\nConfiguration file: {config.config_path}")
    print(f"Database: {config.database_url}")
    print(f"Workspace root: {config.workspace.root}")
    print(f"Workers: {config.execution.max_workers}")
    print(f"Reconcile interval: {config.execution.reconcile_seconds}s")
    print(f"Overlapping runs: {'allowed' if config.execution.allow_overlap else 'skipped'}")
    print(f"Command timeout: {config.timeouts.command_seconds}s")
    print(f"Node script timeout: {config.timeouts.node_script_seconds}s")
    print(f"Long-running timeout: {config.timeouts.long_running_seconds}s")
    print(f"Retention: {config.retention.days} days ({config.retention.cron})")
    print(f"Log file: {config.logging.file}")

    errors = config.validate()
    if errors:
        print("\nProblems:")
        for error in errors:
            print(f"  - {error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Job Runner - run commands and scripts on cron schedules in isolated workspaces",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to configuration file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Start command
    start_parser = subparsers.add_parser('start', help='Start the scheduler (foreground)')
    start_parser.add_argument('--log-file', type=str, help='Log file path')
    start_parser.set_defaults(func=cmd_start)

    # Add script command
    script_parser = subparsers.add_parser('add-script', help='Store a script')
    script_parser.add_argument('name', help='Script name')
    script_parser.add_argument('--file', '-f', required=True, help='File containing the script body')
    script_parser.add_argument('--kind', choices=list(ScriptKind.ALL), default=ScriptKind.BASH,
                               help='Interpreter (default: bash)')
    script_parser.add_argument('--owner', type=int, required=True, help='Owner user id')
    script_parser.set_defaults(func=cmd_add_script)

    # Add job command
    add_parser = subparsers.add_parser('add-job', help='Add a new scheduled job')
    add_parser.add_argument('name', help='Job name')
    payload_group = add_parser.add_mutually_exclusive_group(required=True)
    payload_group.add_argument('--command', dest='command_text', help='Shell command to execute')
    payload_group.add_argument('--script', type=int, help='Id of a stored script')
    add_parser.add_argument('--cron', required=True, help='Cron expression, e.g. "*/5 * * * *"')
    add_parser.add_argument('--owner', type=int, required=True, help='Owner user id')
    add_parser.add_argument('--long-running', action='store_true',
                            help='Use the extended timeout')
    add_parser.set_defaults(func=cmd_add_job)

    # List command
    list_parser = subparsers.add_parser('list', help='List jobs')
    list_parser.add_argument('--owner', type=int, help='Only jobs of this owner')
    list_parser.set_defaults(func=cmd_list)

    # Run command
    run_parser = subparsers.add_parser('run', help='Run a job now and wait for it')
    run_parser.add_argument('job_id', type=int, help='Job id')
    run_parser.set_defaults(func=cmd_run)

    # Pause / resume / delete
    pause_parser = subparsers.add_parser('pause', help='Pause a job')
    pause_parser.add_argument('job_id', type=int, help='Job id')
    pause_parser.set_defaults(func=cmd_pause)

    resume_parser = subparsers.add_parser('resume', help='Resume a paused job')
    resume_parser.add_argument('job_id', type=int, help='Job id')
    resume_parser.set_defaults(func=cmd_resume)

    delete_parser = subparsers.add_parser('delete', help='Delete a job')
    delete_parser.add_argument('job_id', type=int, help='Job id')
    delete_parser.set_defaults(func=cmd_delete)

    # History command
    history_parser = subparsers.add_parser('history', help='View run history of a job')
    history_parser.add_argument('job_id', type=int, help='Job id')
    history_parser.add_argument('--limit', '-n', type=int, default=20,
                                help='Maximum number of runs to show (default: 20)')
    history_parser.add_argument('--json', action='store_true',
                                help='Output in JSON format')
    history_parser.set_defaults(func=cmd_history)

    # Cleanup command
    cleanup_parser = subparsers.add_parser('cleanup', help='Delete runs past the retention window')
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # Init command
    init_parser = subparsers.add_parser('init', help='Initialize configuration and database')
    init_parser.set_defaults(func=cmd_init)

    # Show config command
    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
