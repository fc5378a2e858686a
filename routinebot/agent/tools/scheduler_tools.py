"""Scheduler tools — let the agent manage routines for the current session."""

from __future__ import annotations

from typing import TYPE_CHECKING

from langchain_core.tools import tool

from routinebot.core.cron.schedule import classify, describe_schedule, format_datetime
from routinebot.core.cron.types import ClassificationError
from routinebot.core.session import get_current_session_id

if TYPE_CHECKING:
    from routinebot.core.cron.scheduler import CronScheduler


def make_scheduler_tools(scheduler: CronScheduler | None = None) -> list:
    """Create routine tools. Returns empty list if no scheduler provided."""
    if scheduler is None:
        return []

    @tool
    def schedule_task(
        name: str,
        schedule: str,
        prompt: str,
        channel: str = "desktop",
        context_messages: int = 0,
    ) -> str:
        """Schedule a routine or reminder that runs a prompt later.

        schedule accepts:
        - cron: '0 9 * * *' (daily 9am), '*/30 * * * *' (every 30 min)
        - at: 'tomorrow 3pm', 'in 2 hours', 'monday 9am' (runs once)
        - every: '30m', '2h', '1d' (fixed interval)

        Start prompt with '@<chat_id>:' to deliver to a specific chat.
        Re-using a name replaces the existing routine.
        """
        try:
            descriptor = classify(schedule)
        except ClassificationError as e:
            return f"Failed to schedule: {e}"

        created = scheduler.create_job(
            name, schedule, prompt,
            channel=channel,
            session_id=get_current_session_id(),
            context_messages=context_messages,
        )
        if not created:
            return f"Failed to schedule {name!r}."
        return f"Scheduled {name!r} ({descriptor.kind}: {describe_schedule(descriptor)})."

    @tool
    def list_scheduled_tasks() -> str:
        """List the routines and reminders of this conversation."""
        session_id = get_current_session_id()
        jobs = scheduler.store.list_session_cron_jobs(session_id) if scheduler.store else []
        if not jobs:
            return "No scheduled tasks."
        lines = []
        for j in jobs:
            status = "enabled" if j.enabled else "disabled"
            when = format_datetime(j.next_run_at) or "-"
            lines.append(
                f"- {j.name}: {describe_schedule(j.descriptor)} → {j.prompt[:50]}"
                f" (next: {when}, {status})"
            )
        return "\n".join(lines)

    @tool
    def delete_scheduled_task(name: str) -> str:
        """Delete a routine or reminder of this conversation by name."""
        job = scheduler.store.get_cron_job(name) if scheduler.store else None
        if job is None or job.session_id != get_current_session_id():
            return f"No scheduled task named {name!r}."
        scheduler.delete_job(name)
        return f"Scheduled task {name!r} deleted."

    return [schedule_task, list_scheduled_tasks, delete_scheduled_task]
