"""
In-memory registry of live schedules and running processes.

Holds, per job id, the active schedule handle and the set of processes
currently executing for that job. Both are derived state: the durable
store stays the source of truth for job status. Cancelled job ids are
remembered until the job is scheduled again, so a process that starts
after its job was cancelled is refused. All access goes through one
lock; callers only ever receive copies of the tracked collections.
"""

import logging
import threading
from typing import Any, Callable, Dict, Hashable, List, Optional, Set

logger = logging.getLogger(__name__)


class JobRegistry:
    """Thread-safe job id -> schedule handle / execution set mapping."""

    def __init__(self):
        self._lock = threading.RLock()
        self._schedules: Dict[int, Any] = {}
        self._executions: Dict[int, Set[Hashable]] = {}
        self._exclusive: Set[int] = set()
        self._cancelled: Set[int] = set()

    # Schedule handles

    def add_schedule(self, job_id: int, factory: Callable[[], Any]) -> bool:
        """
        Install a schedule handle built by factory, unless one exists.

        factory runs under the registry lock, so two concurrent callers can
        never both install a handle for the same job.

        Returns:
            True if a new handle was installed
        """
        with self._lock:
            if job_id in self._schedules:
                return False
            self._schedules[job_id] = factory()
            return True

    def pop_schedule(self, job_id: int) -> Optional[Any]:
        """Remove and return the schedule handle for job_id, if any."""
        with self._lock:
            return self._schedules.pop(job_id, None)

    def get_schedule(self, job_id: int) -> Optional[Any]:
        with self._lock:
            return self._schedules.get(job_id)

    def has_schedule(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._schedules

    def scheduled_ids(self) -> List[int]:
        with self._lock:
            return list(self._schedules)

    # Execution sets

    def track(self, job_id: int, handle: Hashable) -> bool:
        """
        Add a running process handle to the job's execution set.

        Returns:
            False if the job was cancelled; the handle is not tracked and
            the caller must terminate it
        """
        with self._lock:
            if job_id in self._cancelled:
                return False
            self._executions.setdefault(job_id, set()).add(handle)
            return True

    def untrack(self, job_id: int, handle: Hashable) -> bool:
        """
        Remove a handle from the job's execution set.

        Returns:
            True if the handle was tracked
        """
        with self._lock:
            handles = self._executions.get(job_id)
            if not handles or handle not in handles:
                return False
            handles.discard(handle)
            if not handles:
                del self._executions[job_id]
            return True

    def drain(self, job_id: int) -> List[Hashable]:
        """Remove and return every handle tracked for job_id."""
        with self._lock:
            return list(self._executions.pop(job_id, ()))

    def cancel(self, job_id: int) -> List[Hashable]:
        """
        Mark job_id cancelled and drain its execution set in one step.

        Until clear_cancelled() is called, track() refuses new handles for
        the job, so a run that was already past its status check when the
        job was cancelled cannot start an untracked process.
        """
        with self._lock:
            self._cancelled.add(job_id)
            return self.drain(job_id)

    def clear_cancelled(self, job_id: int):
        with self._lock:
            self._cancelled.discard(job_id)

    def is_cancelled(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def executions(self, job_id: int) -> List[Hashable]:
        """Snapshot of the handles currently tracked for job_id."""
        with self._lock:
            return list(self._executions.get(job_id, ()))

    def executing_ids(self) -> List[int]:
        """Job ids with at least one tracked process."""
        with self._lock:
            return list(self._executions)

    def running_count(self, job_id: Optional[int] = None) -> int:
        with self._lock:
            if job_id is not None:
                return len(self._executions.get(job_id, ()))
            return sum(len(s) for s in self._executions.values())

    # Per-job mutual exclusion, used when overlapping runs are disabled

    def try_acquire(self, job_id: int) -> bool:
        with self._lock:
            if job_id in self._exclusive:
                return False
            self._exclusive.add(job_id)
            return True

    def release(self, job_id: int):
        with self._lock:
            self._exclusive.discard(job_id)
