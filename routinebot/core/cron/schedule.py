"""Schedule classification and next-run calculation.

Three kinds of schedule expression are understood:

- ``every``: fixed interval, e.g. ``30m``, ``2h``, ``every 1d``
- ``at``: one instant, e.g. ``tomorrow 3pm``, ``in 2 hours``, ``monday 9:30am``
  or an ISO timestamp
- ``cron``: five-field cron, e.g. ``0 9 * * 1-5``

Everything here is pure: ``now`` can be passed in and nothing is persisted.
Times are naive local wall-clock datetimes, like the rest of the scheduler.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from routinebot.core.cron.types import (
    AtSchedule,
    ClassificationError,
    CronSchedule,
    EverySchedule,
    ScheduleDescriptor,
)

_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_EVERY_RE = re.compile(
    r"^(?:every\s+)?(\d+)\s*(m|min|mins|minutes?|h|hr|hrs|hours?|d|days?)$", re.I
)
_RELATIVE_DAY_RE = re.compile(
    r"^(today|tomorrow|" + "|".join(_WEEKDAYS) + r")\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$",
    re.I,
)
_IN_RE = re.compile(r"^in\s+(\d+)\s*(hours?|hrs?|minutes?|mins?|days?|d)$", re.I)
_RELATIVE_PREFIX_RE = re.compile(
    r"^(today|tomorrow|in\s+\d|" + "|".join(_WEEKDAYS) + r")", re.I
)
_CRON_ITEM_RE = re.compile(r"^(\*|\d+|\d+-\d+)(?:/(\d+))?$")

# (name, low, high) per cron field
_CRON_FIELDS = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 7),
]


# ════════════════════════════════════════════════════════════
# CLASSIFY
# ════════════════════════════════════════════════════════════


def classify(expression: str, now: datetime | None = None) -> ScheduleDescriptor:
    """Turn a schedule expression into a typed descriptor.

    First match wins: every → relative at → cron → absolute at.

    Raises
    ------
    ClassificationError
        Malformed expression, out-of-range cron field, or a time in the past.
    """
    now = now or datetime.now()
    text = (expression or "").strip()
    if not text:
        raise ClassificationError(expression, "empty schedule")

    interval_ms = parse_interval(text)
    if interval_ms is not None:
        if interval_ms <= 0:
            raise ClassificationError(expression, "interval must be positive")
        try:
            now + timedelta(milliseconds=interval_ms)
        except OverflowError:
            raise ClassificationError(expression, "interval out of range") from None
        return EverySchedule(interval_ms=interval_ms)

    run_at = parse_datetime(text, now)
    if run_at is None and _IN_RE.match(text):
        raise ClassificationError(expression, "time out of range")
    if run_at is not None and _RELATIVE_PREFIX_RE.match(text):
        return _future_at(expression, run_at, now)

    fields = text.split()
    if len(fields) == 5:
        problem = cron_problem(text)
        if problem is None:
            return CronSchedule(expression=" ".join(fields))
        if run_at is None:
            raise ClassificationError(expression, problem)

    if run_at is not None:
        return _future_at(expression, run_at, now)

    if len(fields) != 5 and all(_CRON_ITEM_RE.match(f) or "," in f for f in fields):
        raise ClassificationError(
            expression, f"cron needs 5 fields, got {len(fields)}"
        )
    raise ClassificationError(
        expression, 'use cron ("0 9 * * *"), at ("tomorrow 3pm") or every ("30m")'
    )


def _future_at(expression: str, run_at: datetime, now: datetime) -> AtSchedule:
    if run_at <= now:
        raise ClassificationError(expression, f"{run_at.isoformat()} is in the past")
    return AtSchedule(run_at=run_at)


def parse_interval(text: str) -> int | None:
    """``30m`` / ``every 2h`` / ``1d`` → milliseconds, None if not an interval."""
    match = _EVERY_RE.match(text.strip())
    if not match:
        return None
    amount, unit = int(match.group(1)), match.group(2).lower()
    if unit.startswith("m"):
        return amount * _MINUTE_MS
    if unit.startswith("h"):
        return amount * _HOUR_MS
    return amount * _DAY_MS


def parse_datetime(text: str, now: datetime | None = None) -> datetime | None:
    """Parse natural-language or ISO datetime text into a local datetime.

    Supported: ``today 3pm``, ``tomorrow 9:30am``, ``friday 14:00``,
    ``in 2 hours``, ``in 30 minutes``, ``in 3 days`` and ISO 8601. Returns
    None when the text is not a datetime or lies outside the calendar. The
    result may lie in the past.
    """
    now = now or datetime.now()
    text = text.strip()

    match = _RELATIVE_DAY_RE.match(text)
    if match:
        day_str, hour_str, minute_str, ampm = match.groups()
        hour = int(hour_str)
        minute = int(minute_str) if minute_str else 0
        if ampm:
            if not 1 <= hour <= 12:
                return None
            if ampm.lower() == "pm" and hour < 12:
                hour += 12
            elif ampm.lower() == "am" and hour == 12:
                hour = 0
        if hour > 23 or minute > 59:
            return None

        target = now.date()
        day = day_str.lower()
        if day == "tomorrow":
            target += timedelta(days=1)
        elif day != "today":
            days_ahead = _WEEKDAYS.index(day) - now.weekday()
            if days_ahead <= 0:
                days_ahead += 7
            target += timedelta(days=days_ahead)
        return datetime(target.year, target.month, target.day, hour, minute)

    match = _IN_RE.match(text)
    if match:
        amount, unit = int(match.group(1)), match.group(2).lower()
        try:
            if unit.startswith("h"):
                delta = timedelta(hours=amount)
            elif unit.startswith("m"):
                delta = timedelta(minutes=amount)
            else:
                delta = timedelta(days=amount)
            return now + delta
        except OverflowError:
            return None

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


# ════════════════════════════════════════════════════════════
# CRON
# ════════════════════════════════════════════════════════════


def cron_problem(expression: str) -> str | None:
    """Describe what is wrong with a cron expression, None if it is valid."""
    fields = expression.split()
    if len(fields) != 5:
        return f"cron needs 5 fields, got {len(fields)}"
    for value, (name, low, high) in zip(fields, _CRON_FIELDS):
        problem = _field_problem(value, low, high)
        if problem:
            return f"invalid {name} field {value!r}: {problem}"
    if not croniter.is_valid(expression):
        return "not a valid cron expression"
    return None


def _field_problem(value: str, low: int, high: int) -> str | None:
    """Syntax and bounds of one field; croniter accepts a wider grammar."""
    for item in value.split(","):
        match = _CRON_ITEM_RE.match(item)
        if not match:
            return f"bad syntax {item!r}"
        base, step = match.groups()
        if step is not None and int(step) < 1:
            return "step must be at least 1"
        if base == "*":
            continue
        start, _, end = base.partition("-")
        if end and int(start) > int(end):
            return f"range {base} is reversed"
        if int(start) < low or int(end or start) > high:
            return f"out of range {low}-{high}"
    return None


def _cron_next(expression: str, now: datetime) -> datetime | None:
    """First matching minute strictly after ``now``.

    ``implement_cron_bug`` gives classic cron day matching: day-of-month
    and day-of-week are OR-ed when both are restricted, but a field
    starting with ``*`` (``*/2``) leaves only the other one in charge.
    """
    try:
        return croniter(expression, now, implement_cron_bug=True).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError):
        # e.g. "0 0 31 2 *" never fires
        return None


# ════════════════════════════════════════════════════════════
# NEXT RUN
# ════════════════════════════════════════════════════════════


def next_run(descriptor: ScheduleDescriptor, now: datetime | None = None) -> datetime | None:
    """Next fire time for ``descriptor``; None means no further runs."""
    now = now or datetime.now()
    if isinstance(descriptor, AtSchedule):
        return descriptor.run_at if descriptor.run_at > now else None
    if isinstance(descriptor, EverySchedule):
        try:
            return now + timedelta(milliseconds=descriptor.interval_ms)
        except OverflowError:
            return None
    return _cron_next(descriptor.expression, now)


# ════════════════════════════════════════════════════════════
# FORMATTING
# ════════════════════════════════════════════════════════════


def format_duration(ms: int) -> str:
    if ms < _MINUTE_MS:
        return f"{round(ms / 1000)}s"
    if ms < _HOUR_MS:
        return f"{round(ms / _MINUTE_MS)}m"
    if ms < _DAY_MS:
        return f"{round(ms / _HOUR_MS)}h"
    return f"{round(ms / _DAY_MS)}d"


def format_datetime(when: datetime | None) -> str | None:
    """``Mon, Mar 4 3:05 PM`` style, None passes through."""
    if when is None:
        return None
    hour = when.hour % 12 or 12
    ampm = "AM" if when.hour < 12 else "PM"
    return f"{when:%a, %b} {when.day} {hour}:{when:%M} {ampm}"


def describe_schedule(descriptor: ScheduleDescriptor) -> str:
    if isinstance(descriptor, EverySchedule):
        return f"every {format_duration(descriptor.interval_ms)}"
    if isinstance(descriptor, AtSchedule):
        return format_datetime(descriptor.run_at) or ""
    return descriptor.expression
