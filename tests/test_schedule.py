"""Tests for schedule classification and next-run calculation."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from routinebot.core.cron.schedule import (
    classify,
    cron_problem,
    describe_schedule,
    format_datetime,
    format_duration,
    next_run,
    parse_datetime,
    parse_interval,
)
from routinebot.core.cron.types import (
    AtSchedule,
    ClassificationError,
    CronSchedule,
    EverySchedule,
)

# Monday
NOW = datetime(2026, 3, 2, 10, 30)


# ── classify: every ────────────────────────────────────────


@pytest.mark.parametrize(
    "expr, ms",
    [
        ("30m", 30 * 60_000),
        ("5 min", 5 * 60_000),
        ("every 2h", 2 * 3_600_000),
        ("3 hours", 3 * 3_600_000),
        ("1d", 86_400_000),
        ("every 2 days", 2 * 86_400_000),
    ],
)
def test_classify_every(expr, ms):
    descriptor = classify(expr, NOW)
    assert isinstance(descriptor, EverySchedule)
    assert descriptor.interval_ms == ms


def test_classify_every_zero_rejected():
    with pytest.raises(ClassificationError):
        classify("0m", NOW)


def test_parse_interval_not_interval():
    assert parse_interval("tomorrow 3pm") is None


# ── classify: at ───────────────────────────────────────────


def test_classify_relative_at():
    assert classify("in 2 hours", NOW) == AtSchedule(run_at=NOW + timedelta(hours=2))
    assert classify("tomorrow 3pm", NOW) == AtSchedule(run_at=datetime(2026, 3, 3, 15, 0))
    assert classify("today 3:15pm", NOW) == AtSchedule(run_at=datetime(2026, 3, 2, 15, 15))


def test_classify_same_weekday_means_next_week():
    descriptor = classify("monday 9am", NOW)
    assert descriptor.run_at == datetime(2026, 3, 9, 9, 0)


def test_classify_absolute_iso_falls_back_to_at():
    descriptor = classify("2026-12-31T10:00:00", NOW)
    assert isinstance(descriptor, AtSchedule)
    assert descriptor.run_at == datetime(2026, 12, 31, 10, 0)


@pytest.mark.parametrize("expr", ["today 9am", "2020-01-01T00:00:00"])
def test_classify_past_at_rejected(expr):
    with pytest.raises(ClassificationError) as exc:
        classify(expr, NOW)
    assert "past" in str(exc.value)


def test_parse_datetime_variants():
    assert parse_datetime("friday 14:00", NOW) == datetime(2026, 3, 6, 14, 0)
    assert parse_datetime("tomorrow 12am", NOW) == datetime(2026, 3, 3, 0, 0)
    assert parse_datetime("in 30 minutes", NOW) == NOW + timedelta(minutes=30)
    assert parse_datetime("in 3 days", NOW) == NOW + timedelta(days=3)
    assert parse_datetime("tomorrow 25:00", NOW) is None
    assert parse_datetime("soon", NOW) is None


def test_huge_values_are_classification_errors():
    with pytest.raises(ClassificationError) as exc:
        classify("every 99999999d", NOW)
    assert "out of range" in exc.value.reason
    with pytest.raises(ClassificationError) as exc:
        classify("in 99999999 days", NOW)
    assert "out of range" in exc.value.reason
    assert parse_datetime("in 99999999999 days", NOW) is None


# ── classify: cron ─────────────────────────────────────────


@pytest.mark.parametrize(
    "expr",
    [
        "0 9 * * *",
        "*/30 * * * *",
        "0 9 * * 1-5",
        "0,30 8-18 * * *",
        "5/15 * * * *",
        "0 0 1,15 * 0",
        "59 23 31 12 7",
    ],
)
def test_classify_cron(expr):
    descriptor = classify(expr, NOW)
    assert isinstance(descriptor, CronSchedule)
    assert descriptor.expression == expr
    assert cron_problem(expr) is None


@pytest.mark.parametrize(
    "expr",
    [
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * 32 * *",
        "* * * 13 *",
        "* * * * 8",
        "5-1 * * * *",
        "* * *",
        "* * * * * *",
        "not-a-cron",
        "",
    ],
)
def test_classify_invalid(expr):
    with pytest.raises(ClassificationError):
        classify(expr, NOW)


def test_classify_wrong_field_count_message():
    with pytest.raises(ClassificationError) as exc:
        classify("0 9 *", NOW)
    assert "5 fields" in exc.value.reason


# ── next_run ───────────────────────────────────────────────


def test_next_run_every_is_now_plus_interval():
    descriptor = EverySchedule(interval_ms=90_000)
    assert next_run(descriptor, NOW) == NOW + timedelta(milliseconds=90_000)


def test_next_run_at():
    future = AtSchedule(run_at=NOW + timedelta(minutes=1))
    assert next_run(future, NOW) == future.run_at
    assert next_run(AtSchedule(run_at=NOW), NOW) is None
    assert next_run(AtSchedule(run_at=NOW - timedelta(days=1)), NOW) is None


@pytest.mark.parametrize(
    "expr, now, expected",
    [
        # daily, already past today
        ("0 9 * * *", NOW, datetime(2026, 3, 3, 9, 0)),
        # step within the hour
        ("*/15 * * * *", NOW, datetime(2026, 3, 2, 10, 45)),
        # strictly after now
        ("30 10 * * *", NOW, datetime(2026, 3, 3, 10, 30)),
        # weekdays only, from a Friday evening
        ("0 9 * * 1-5", datetime(2026, 3, 6, 10, 0), datetime(2026, 3, 9, 9, 0)),
        # 7 is Sunday
        ("0 8 * * 7", NOW, datetime(2026, 3, 8, 8, 0)),
        # month rollover
        ("0 0 1 * *", datetime(2026, 3, 31, 23, 59, 30), datetime(2026, 4, 1, 0, 0)),
        # year rollover
        ("0 0 1 1 *", NOW, datetime(2027, 1, 1, 0, 0)),
        ("59 23 31 12 *", datetime(2026, 12, 31, 23, 59), datetime(2027, 12, 31, 23, 59)),
        # leap day
        ("0 0 29 2 *", NOW, datetime(2028, 2, 29, 0, 0)),
        # day-of-month OR day-of-week when both are restricted
        ("0 12 15 * 1", NOW, datetime(2026, 3, 2, 12, 0)),
        ("0 12 15 * 1", datetime(2026, 3, 3, 13, 0), datetime(2026, 3, 9, 12, 0)),
        ("0 12 10 * 5", datetime(2026, 3, 7, 0, 0), datetime(2026, 3, 10, 12, 0)),
        # "*/2" day-of-month counts as unrestricted → AND with weekday
        ("0 6 */2 * 3", NOW, datetime(2026, 3, 11, 6, 0)),
    ],
)
def test_next_run_cron(expr, now, expected):
    assert next_run(CronSchedule(expression=expr), now) == expected


def test_next_run_cron_impossible_date():
    assert next_run(CronSchedule(expression="0 0 31 2 *"), NOW) is None


def test_cron_problem_messages():
    assert "out of range 0-59" in cron_problem("61 * * * *")
    assert "reversed" in cron_problem("5-1 * * * *")
    assert "bad syntax" in cron_problem("MON * * * *")
    assert "5 fields" in cron_problem("* * * *")


# ── formatting ─────────────────────────────────────────────


def test_format_duration():
    assert format_duration(45_000) == "45s"
    assert format_duration(120_000) == "2m"
    assert format_duration(7_200_000) == "2h"
    assert format_duration(172_800_000) == "2d"


def test_format_datetime():
    assert format_datetime(datetime(2026, 3, 4, 15, 5)) == "Wed, Mar 4 3:05 PM"
    assert format_datetime(datetime(2026, 3, 4, 0, 0)) == "Wed, Mar 4 12:00 AM"
    assert format_datetime(None) is None


def test_describe_schedule():
    assert describe_schedule(EverySchedule(interval_ms=1_800_000)) == "every 30m"
    assert describe_schedule(CronSchedule(expression="0 9 * * *")) == "0 9 * * *"
