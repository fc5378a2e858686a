"""Cron scheduling — schedule types and calculators.

The runtime lives in ``routinebot.core.cron.scheduler``; it is not imported
here because the store depends on these types.
"""

from routinebot.core.cron.schedule import classify, next_run
from routinebot.core.cron.types import (
    ClassificationError,
    JobRunResult,
    ScheduledJob,
)

__all__ = [
    "ClassificationError",
    "JobRunResult",
    "ScheduledJob",
    "classify",
    "next_run",
]
