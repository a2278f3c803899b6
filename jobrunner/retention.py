"""
Run history retention.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from jobrunner.exceptions import PersistenceError
from jobrunner.store import RunStore

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Deletes finished runs older than the retention window."""

    def __init__(self, runs: RunStore, days: int = 30, verbose: bool = False):
        self.runs = runs
        self.days = days
        self.verbose = verbose

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.days)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Delete old runs.

        Returns:
            Number of deleted runs (0 if none, or if the store failed)
        """
        logger.info("Cleaning old job runs...")
        try:
            before = self.runs.count_runs() if self.verbose else None
            deleted = self.runs.delete_runs_older_than(self.window, now=now)
        except PersistenceError as e:
            logger.error(f"Failed to clean old runs: {e}")
            return 0

        if before is not None:
            logger.debug(f"Total runs before cleanup: {before}")
            logger.debug(f"Total runs after cleanup: {before - deleted}")

        if deleted:
            logger.info(f"Deleted {deleted} old job run(s) (>{self.days} days)")
        else:
            logger.info("No old job runs to clean up")
        return deleted
