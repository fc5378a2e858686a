"""Calendar and task tools — session-scoped planner backed by SQLite."""

from __future__ import annotations

from datetime import datetime

from langchain_core.tools import tool

from routinebot.core.cron.schedule import format_datetime, parse_datetime
from routinebot.core.session import get_current_session_id
from routinebot.memory.store import MemoryStore


def _when(value: str | None) -> str:
    if not value:
        return "-"
    return format_datetime(datetime.fromisoformat(value)) or value


def make_planner_tools(db: MemoryStore | None = None) -> list:
    """Create calendar and task tools. Returns empty list if no store provided."""
    if db is None:
        return []

    @tool
    def calendar_add(
        title: str,
        start: str,
        location: str | None = None,
        reminder_minutes: int = 15,
        channel: str = "desktop",
    ) -> str:
        """Add a calendar event.

        start accepts 'tomorrow 3pm', 'friday 10:30am', 'in 2 hours' or ISO
        '2026-03-01T14:00'. A reminder is sent reminder_minutes before start.
        """
        start_time = parse_datetime(start)
        if start_time is None:
            return f"Could not understand the time {start!r}."
        event_id = db.add_calendar_event(
            title, start_time,
            location=location,
            reminder_minutes=reminder_minutes,
            channel=channel,
            session_id=get_current_session_id(),
        )
        return f"Event #{event_id} added: {title} at {format_datetime(start_time)}."

    @tool
    def calendar_list(upcoming_only: bool = True) -> str:
        """List calendar events of this conversation."""
        since = datetime.now() if upcoming_only else None
        events = db.list_calendar_events(get_current_session_id(), since=since)
        if not events:
            return "No events."
        lines = []
        for ev in events:
            where = f" @ {ev['location']}" if ev.get("location") else ""
            lines.append(f"- #{ev['id']} {_when(ev['start_time'])}: {ev['title']}{where}")
        return "\n".join(lines)

    @tool
    def task_add(
        title: str,
        due: str | None = None,
        priority: str = "medium",
        reminder_minutes: int | None = None,
        channel: str = "desktop",
    ) -> str:
        """Add a task. priority is low, medium or high; due uses the same
        formats as calendar_add."""
        due_date = parse_datetime(due) if due else None
        if due and due_date is None:
            return f"Could not understand the due date {due!r}."
        task_id = db.add_task(
            title,
            due_date=due_date,
            priority=priority,
            reminder_minutes=reminder_minutes,
            channel=channel,
            session_id=get_current_session_id(),
        )
        return f"Task #{task_id} added: {title}."

    @tool
    def task_list(include_completed: bool = False) -> str:
        """List tasks of this conversation."""
        status = None if include_completed else "pending"
        tasks = db.list_tasks(get_current_session_id(), status=status)
        if not tasks:
            return "No tasks."
        return "\n".join(
            f"- #{t['id']} [{t['priority']}] {t['title']}"
            f" (due: {_when(t['due_date'])}, {t['status']})"
            for t in tasks
        )

    @tool
    def task_complete(task_id: int) -> str:
        """Mark a task as completed."""
        if db.complete_task(task_id, get_current_session_id()):
            return f"Task #{task_id} completed."
        return f"No pending task #{task_id}."

    return [calendar_add, calendar_list, task_add, task_list, task_complete]
