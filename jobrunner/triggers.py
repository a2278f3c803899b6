"""
Cron expression handling.

Jobs use standard 5-field crontab syntax (minute hour day month day_of_week).
Validation and trigger construction both go through APScheduler's
CronTrigger so that a job accepted here is a job the scheduler can run.
"""

import logging
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from jobrunner.exceptions import InvalidExpression

logger = logging.getLogger(__name__)


def is_valid_expression(expression: Optional[str]) -> bool:
    """Return True if expression is a valid 5-field cron expression."""
    if not expression or not isinstance(expression, str):
        return False
    if len(expression.split()) != 5:
        return False
    try:
        CronTrigger.from_crontab(expression)
        return True
    except (ValueError, TypeError):
        return False


def build_trigger(expression: str, timezone: str = 'UTC') -> CronTrigger:
    """
    Build an APScheduler trigger from a cron expression.

    Raises:
        InvalidExpression: If the expression is not valid 5-field cron syntax
    """
    if not is_valid_expression(expression):
        raise InvalidExpression(expression)
    return CronTrigger.from_crontab(expression, timezone=timezone)


def describe_expression(expression: str) -> str:
    """Convert cron expression to human-readable format."""
    parts = expression.split()
    if len(parts) != 5:
        return expression

    minute, hour, day, month, dow = parts

    if expression == "* * * * *":
        return "Every minute"
    if minute.startswith("*/") and hour == "*" and day == "*" and month == "*" and dow == "*":
        return f"Every {minute[2:]} minutes"
    if minute == "0" and hour == "*" and day == "*" and month == "*" and dow == "*":
        return "Every hour"
    if minute.isdigit() and hour.isdigit() and day == "*" and month == "*" and dow == "*":
        return f"Daily at {int(hour):02d}:{int(minute):02d}"
    if minute.isdigit() and hour.isdigit() and day == "*" and month == "*" and dow.isdigit():
        return f"Weekly on day {dow} at {int(hour):02d}:{int(minute):02d}"

    return expression
