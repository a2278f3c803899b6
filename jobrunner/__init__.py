"""
Job Runner

Runs user-submitted commands and scripts on cron schedules, each
execution in its own temporary workspace, with run history kept in a
SQL database.

Features:
- Cron-style scheduling with APScheduler
- Manual "run now" alongside scheduled runs
- Overlapping runs of the same job, each tracked for cancellation
- Timeouts that terminate the whole process group
- Pause, resume and delete take effect at the next trigger firing
- Daily retention sweep of old runs
"""

from jobrunner.service import SchedulerService
from jobrunner.executor import ExecutionCoordinator
from jobrunner.config import RunnerConfig

__version__ = "0.1.0"
__all__ = ["SchedulerService", "ExecutionCoordinator", "RunnerConfig"]
