"""
Run lifecycle bookkeeping.

Thin facade over the run store used by the execution coordinator. A run
is opened once and closed once; closing an unknown or already-closed run
is logged as an anomaly and otherwise ignored. Storage failures are
logged and reported through return values so that a broken database
never takes the scheduler down with it.
"""

import logging
import threading
from typing import Optional, Set

from jobrunner.exceptions import PersistenceError
from jobrunner.models import NO_OUTPUT, RunStatus, utcnow
from jobrunner.store import RunStore

logger = logging.getLogger(__name__)


class RunRecorder:
    """Records run start and completion."""

    def __init__(self, runs: RunStore):
        self.runs = runs
        self._open: Set[int] = set()
        self._lock = threading.Lock()

    def begin(self, job_id: int) -> int:
        """
        Create a run in 'running' state.

        Returns:
            The new run id

        Raises:
            PersistenceError: If the run could not be stored
        """
        run_id = self.runs.insert_run(job_id, started_at=utcnow())
        with self._lock:
            self._open.add(run_id)
        logger.debug(f"Logged new run {run_id} for job {job_id}")
        return run_id

    def _close(self, run_id: Optional[int]) -> bool:
        with self._lock:
            if run_id not in self._open:
                return False
            self._open.discard(run_id)
            return True

    def finalize(self, run_id: Optional[int], status: str, output: Optional[str]) -> bool:
        """
        Set the final status, output and finish time of a run.

        Returns:
            True if the run was stored as finished
        """
        if status not in RunStatus.FINISHED:
            raise ValueError(f"Cannot finalize run with status {status!r}")

        if not self._close(run_id):
            logger.warning(f"Ignoring finalize for unknown or already finished run {run_id}")
            return False

        text = (output or '').strip() or NO_OUTPUT
        try:
            updated = self.runs.update_run(run_id, status, text, finished_at=utcnow())
        except PersistenceError as e:
            logger.error(f"Failed to update run {run_id}: {e}")
            return False

        if not updated:
            # Row vanished, e.g. the job was deleted while this run was in flight
            logger.warning(f"Run {run_id} no longer exists or was already finalized")
        return updated

    def fail(self, run_id: Optional[int], message: str) -> bool:
        """Finalize a run as error with an explanatory message."""
        return self.finalize(run_id, RunStatus.ERROR, message)

    @property
    def open_runs(self) -> int:
        with self._lock:
            return len(self._open)
