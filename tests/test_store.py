"""Tests for MemoryStore — cron jobs, history, messages, planner tables."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta

import pytest

from routinebot.core.cron.types import (
    AtSchedule,
    CronSchedule,
    EverySchedule,
    ScheduledJob,
)
from routinebot.memory.store import MemoryStore, StoreError


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path / "test.db"))


def _job(name="daily-report", expr="0 9 * * *", **kwargs) -> ScheduledJob:
    defaults = dict(
        name=name,
        schedule=expr,
        descriptor=CronSchedule(expression=expr),
        prompt="Generate daily report",
        next_run_at=datetime(2026, 3, 3, 9, 0),
    )
    defaults.update(kwargs)
    return ScheduledJob(**defaults)


# ── Cron jobs ──────────────────────────────────────────────


def test_save_and_get_job(store):
    saved = store.save_cron_job(_job())
    assert saved.id is not None

    job = store.get_cron_job("daily-report")
    assert job.name == "daily-report"
    assert job.descriptor == CronSchedule(expression="0 9 * * *")
    assert job.prompt == "Generate daily report"
    assert job.channel == "desktop"
    assert job.session_id == "default"
    assert job.enabled is True
    assert job.next_run_at == datetime(2026, 3, 3, 9, 0)


def test_get_missing_job(store):
    assert store.get_cron_job("nope") is None


def test_save_replaces_by_name(store):
    store.save_cron_job(_job())
    store.save_cron_job(_job(expr="*/5 * * * *", prompt="Check inbox", channel="telegram"))

    jobs = store.list_all()
    assert len(jobs) == 1
    assert jobs[0].schedule == "*/5 * * * *"
    assert jobs[0].prompt == "Check inbox"
    assert jobs[0].channel == "telegram"


def test_at_and_every_round_trip(store):
    run_at = datetime(2026, 12, 31, 10, 0)
    store.save_cron_job(
        _job("once", "tomorrow 3pm", descriptor=AtSchedule(run_at=run_at),
             delete_after_run=True)
    )
    store.save_cron_job(_job("often", "30m", descriptor=EverySchedule(interval_ms=1_800_000)))

    once = store.get_cron_job("once")
    assert once.descriptor == AtSchedule(run_at=run_at)
    assert once.schedule == "tomorrow 3pm"
    assert once.delete_after_run is True

    often = store.get_cron_job("often")
    assert often.descriptor == EverySchedule(interval_ms=1_800_000)
    assert often.schedule_type == "every"


def test_context_messages_clamped(store):
    store.save_cron_job(_job(context_messages=50))
    assert store.get_cron_job("daily-report").context_messages == 10
    store.save_cron_job(_job(context_messages=-3))
    assert store.get_cron_job("daily-report").context_messages == 0


def test_list_enabled_and_all(store):
    store.save_cron_job(_job("a"))
    store.save_cron_job(_job("b"))
    assert store.set_cron_job_enabled("b", False) is True

    assert [j.name for j in store.list_enabled()] == ["a"]
    assert {j.name for j in store.list_all()} == {"a", "b"}


def test_set_enabled_unknown(store):
    assert store.set_cron_job_enabled("ghost", True) is False


def test_list_ordered_by_next_run_nulls_last(store):
    store.save_cron_job(_job("late", next_run_at=datetime(2026, 3, 5, 9, 0)))
    store.save_cron_job(_job("none", next_run_at=None))
    store.save_cron_job(_job("soon", next_run_at=datetime(2026, 3, 3, 9, 0)))
    assert [j.name for j in store.list_all()] == ["soon", "late", "none"]


def test_session_scoped_listing(store):
    store.save_cron_job(_job("mine", session_id="work"))
    store.save_cron_job(_job("theirs", session_id="home"))
    store.save_cron_job(_job("default-job"))

    assert [j.name for j in store.list_session_cron_jobs("work")] == ["mine"]
    assert [j.name for j in store.list_session_cron_jobs()] == ["default-job"]


def test_delete_job(store):
    store.save_cron_job(_job())
    assert store.delete_cron_job("daily-report") is True
    assert store.delete_cron_job("daily-report") is False
    assert store.list_all() == []


def test_set_next_run(store):
    store.save_cron_job(_job())
    store.set_next_run("daily-report", None)
    assert store.get_cron_job("daily-report").next_run_at is None


# ── Run history ────────────────────────────────────────────


def test_record_run_updates_job_and_log(store):
    store.save_cron_job(_job())
    store.record_run("daily-report", "ok", 120, result="All good")

    job = store.get_cron_job("daily-report")
    assert job.last_status == "ok"
    assert job.last_duration_ms == 120
    assert job.last_error is None
    assert job.last_run_at is not None

    history = store.get_execution_history()
    assert len(history) == 1
    assert history[0].job_name == "daily-report"
    assert history[0].result == "All good"


def test_record_run_error(store):
    store.save_cron_job(_job())
    store.record_run("daily-report", "error", 5, error="LLM down")
    job = store.get_cron_job("daily-report")
    assert job.last_status == "error"
    assert job.last_error == "LLM down"


def test_record_run_for_deleted_job_still_logged(store):
    store.record_run("gone", "ok", 1, session_id="work")
    history = store.get_execution_history()
    assert history[0].job_name == "gone"
    assert history[0].session_id == "work"


def test_history_newest_first_with_limit(store):
    for i in range(5):
        store.record_run(f"job-{i}", "ok", i)
    history = store.get_execution_history(limit=3)
    assert [r.job_name for r in history] == ["job-4", "job-3", "job-2"]


def test_execution_stats(store):
    stats = store.get_execution_stats()
    assert stats == {"total": 0, "last": None}

    store.record_run("a", "ok", 1)
    store.record_run("b", "skipped", 1)
    stats = store.get_execution_stats()
    assert stats["total"] == 2
    assert isinstance(stats["last"], datetime)


def test_cron_summary(store):
    store.save_cron_job(_job("a", next_run_at=datetime(2026, 3, 4, 9, 0)))
    store.save_cron_job(_job("b", next_run_at=datetime(2026, 3, 3, 9, 0)))
    store.set_cron_job_enabled("a", False)
    store.record_run("b", "error", 1, error="x")

    summary = store.get_cron_summary()
    assert summary["total"] == 2
    assert summary["active"] == 1
    assert summary["failed"] == 1
    assert summary["next"] == {"name": "b", "at": datetime(2026, 3, 3, 9, 0)}


# ── Errors / migration ─────────────────────────────────────


def test_write_failure_raises_store_error(store, monkeypatch):
    def broken_conn():
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(sqlite3, "connect", lambda *a, **kw: broken_conn())
    with pytest.raises(StoreError):
        store.save_cron_job(_job())


def test_migrates_legacy_cron_table(tmp_path):
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE cron_jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            schedule TEXT,
            prompt TEXT NOT NULL,
            channel TEXT NOT NULL DEFAULT 'desktop',
            enabled INTEGER DEFAULT 1,
            created_at TEXT DEFAULT (datetime('now'))
        );
        INSERT INTO cron_jobs (name, schedule, prompt) VALUES ('old', '0 8 * * *', 'Morning');
    """)
    conn.commit()
    conn.close()

    store = MemoryStore(str(db_path))
    job = store.get_cron_job("old")
    assert job.descriptor == CronSchedule(expression="0 8 * * *")
    assert job.session_id == "default"
    assert job.context_messages == 0
    assert job.delete_after_run is False

    # Re-running the migration is harmless
    MemoryStore(str(db_path))


# ── Messages ───────────────────────────────────────────────


def test_recent_messages_oldest_first(store):
    for i in range(4):
        store.add_message("s1", "user" if i % 2 == 0 else "assistant", f"m{i}")
    store.add_message("s2", "user", "other session")

    recent = store.get_recent_messages("s1", limit=3)
    assert [m["content"] for m in recent] == ["m1", "m2", "m3"]


# ── Calendar ───────────────────────────────────────────────


def test_calendar_crud_is_session_scoped(store):
    start = datetime(2026, 3, 3, 14, 0)
    eid = store.add_calendar_event("Dentist", start, location="Main St", session_id="home")
    store.add_calendar_event("Standup", start, session_id="work")

    events = store.list_calendar_events("home")
    assert [e["title"] for e in events] == ["Dentist"]
    assert events[0]["reminder_minutes"] == 15

    assert store.delete_calendar_event(eid, "work") is False
    assert store.delete_calendar_event(eid, "home") is True
    assert store.list_calendar_events("home") == []


def test_calendar_list_since(store):
    store.add_calendar_event("Past", datetime(2026, 3, 1, 9, 0))
    store.add_calendar_event("Future", datetime(2026, 3, 5, 9, 0))
    events = store.list_calendar_events(since=datetime(2026, 3, 2, 0, 0))
    assert [e["title"] for e in events] == ["Future"]


def test_due_calendar_reminders(store):
    now = datetime(2026, 3, 2, 10, 0)
    due = store.add_calendar_event("Soon", now + timedelta(minutes=10), session_id="s1")
    store.add_calendar_event("Later", now + timedelta(hours=3))
    store.add_calendar_event("Over", now - timedelta(hours=1))

    reminders = store.get_due_calendar_reminders(now)
    assert [r["id"] for r in reminders] == [due]
    assert reminders[0]["session_id"] == "s1"

    store.mark_calendar_reminded(due)
    assert store.get_due_calendar_reminders(now) == []


# ── Tasks ──────────────────────────────────────────────────


def test_task_crud(store):
    tid = store.add_task("Pay rent", due_date=datetime(2026, 3, 5), priority="high")
    store.add_task("Other", session_id="work")

    tasks = store.list_tasks()
    assert [t["title"] for t in tasks] == ["Pay rent"]
    assert tasks[0]["priority"] == "high"

    assert store.complete_task(tid) is True
    assert store.complete_task(tid) is False
    assert store.list_tasks() == []
    assert store.list_tasks(status=None)[0]["status"] == "completed"

    assert store.delete_task(tid) is True


def test_task_invalid_priority_defaults(store):
    store.add_task("Whatever", priority="urgent")
    assert store.list_tasks()[0]["priority"] == "medium"


def test_due_task_reminders(store):
    now = datetime(2026, 3, 2, 10, 0)
    due = store.add_task("Call mom", due_date=now + timedelta(minutes=30), reminder_minutes=60)
    store.add_task("No reminder", due_date=now)
    store.add_task("Not yet", due_date=now + timedelta(days=1), reminder_minutes=60)

    reminders = store.get_due_task_reminders(now)
    assert [r["id"] for r in reminders] == [due]

    store.mark_task_reminded(due)
    assert store.get_due_task_reminders(now) == []


# ── Notifications ──────────────────────────────────────────


def test_notifications(store):
    nid = store.add_notification("daily-report", "Report ready", session_id="s1")
    pending = store.get_undelivered_notifications("s1")
    assert [n["id"] for n in pending] == [nid]
    assert pending[0]["body"] == "Report ready"

    store.mark_notifications_delivered([nid])
    assert store.get_undelivered_notifications() == []
