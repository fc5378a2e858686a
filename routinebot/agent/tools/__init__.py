"""Agent tools — LangChain tools that act on the current session."""

from __future__ import annotations

from typing import TYPE_CHECKING

from routinebot.agent.tools.planner_tools import make_planner_tools
from routinebot.agent.tools.scheduler_tools import make_scheduler_tools

if TYPE_CHECKING:
    from routinebot.core.cron.scheduler import CronScheduler
    from routinebot.memory.store import MemoryStore


def make_tools(
    scheduler: CronScheduler | None = None, db: MemoryStore | None = None
) -> list:
    """All tools available for the given collaborators."""
    return make_scheduler_tools(scheduler) + make_planner_tools(db)


__all__ = ["make_planner_tools", "make_scheduler_tools", "make_tools"]
