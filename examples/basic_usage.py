#!/usr/bin/env python3
"""
Basic Usage Example

Embeds the job runner in a Python process: stores a job, runs it once
by hand, then lets the scheduler take over.
"""

import sys
import tempfile
import time
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from jobrunner import RunnerConfig, SchedulerService
from jobrunner.cli import setup_logging


def main():
    setup_logging(verbose=True)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = RunnerConfig(str(Path(temp_dir) / "config.json"))
        config.database_url = f"sqlite:///{Path(temp_dir) / 'jobrunner.db'}"
        config.workspace.root = temp_dir

        service = SchedulerService(config)
        service.start()

        job = service.submit_job(
            owner=1,
            name="hello",
            schedule="* * * * *",
            command='echo "hello from $JOB_NAME in $USER_TEMP_DIR"'
        )

        # Manual run, waited on in this thread
        outcome = service.coordinator.run_now(job, manual=True)
        run = service.runs.get_run(outcome.run_id)
        print(f"\nRun #{run.id}: {run.status}")
        print(run.output)

        print("\nWaiting for the next scheduled firing (up to 70s)...")
        deadline = time.time() + 70
        while time.time() < deadline and len(service.runs.list_runs(job.id)) < 2:
            time.sleep(1)

        for run in service.runs.list_runs(job.id):
            print(f"  Run #{run.id}: {run.status} at {run.started_at}")

        service.delete_job(job.id)
        service.stop()


if __name__ == "__main__":
    main()
