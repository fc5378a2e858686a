"""SQLite store for routinebot — single source of truth.

Tables:
    messages, cron_jobs, cron_execution_log,
    calendar_events, tasks, notifications

Everything a conversation owns carries a ``session_id``; reads that are
session-scoped default to the default session.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from routinebot.core.cron.types import (
    AtSchedule,
    CronSchedule,
    EverySchedule,
    ExecutionRecord,
    ScheduledJob,
)
from routinebot.core.session import DEFAULT_SESSION_ID


class StoreError(RuntimeError):
    """A write to the store failed (I/O or constraint error)."""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat(timespec="seconds") if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class MemoryStore:
    """SQLite memory — single source of truth."""

    def __init__(self, db_path: str = "data/routinebot.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"MemoryStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write(self):
        """Connection for a mutation; commits on success, raises StoreError."""
        try:
            with self._get_conn() as conn:
                yield conn
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
            conn.commit()

    def _migrate(self, conn) -> None:
        """Add columns missing in databases created by older versions."""
        _add_columns(conn, "cron_jobs", [
            ("schedule_type", "TEXT DEFAULT 'cron'"),
            ("run_at", "TEXT"),
            ("interval_ms", "INTEGER"),
            ("delete_after_run", "INTEGER DEFAULT 0"),
            ("context_messages", "INTEGER DEFAULT 0"),
            ("next_run_at", "TEXT"),
            ("last_run_at", "TEXT"),
            ("last_status", "TEXT"),
            ("last_error", "TEXT"),
            ("last_duration_ms", "INTEGER"),
            ("recipient", "TEXT"),
            ("session_id", f"TEXT DEFAULT '{DEFAULT_SESSION_ID}'"),
            ("updated_at", "TEXT"),
        ])
        _add_columns(conn, "calendar_events", [
            ("reminded", "INTEGER DEFAULT 0"),
            ("channel", "TEXT DEFAULT 'desktop'"),
            ("session_id", f"TEXT DEFAULT '{DEFAULT_SESSION_ID}'"),
        ])
        _add_columns(conn, "tasks", [
            ("reminded", "INTEGER DEFAULT 0"),
            ("channel", "TEXT DEFAULT 'desktop'"),
            ("session_id", f"TEXT DEFAULT '{DEFAULT_SESSION_ID}'"),
        ])
        _add_columns(conn, "cron_execution_log", [
            ("session_id", f"TEXT DEFAULT '{DEFAULT_SESSION_ID}'"),
        ])
        # Session indexes need the columns above on upgraded databases
        conn.executescript("""
            CREATE INDEX IF NOT EXISTS idx_cron_jobs_session ON cron_jobs(session_id);
            CREATE INDEX IF NOT EXISTS idx_calendar_session
                ON calendar_events(session_id, start_time);
            CREATE INDEX IF NOT EXISTS idx_tasks_session ON tasks(session_id, status);
        """)

    # ════════════════════════════════════════════════════════════
    # MESSAGES (recent conversation context)
    # ════════════════════════════════════════════════════════════

    def add_message(
        self, session_id: str, role: str, content: str,
    ) -> int:
        with self._write() as conn:
            cursor = conn.execute(
                "INSERT INTO messages (session_id, role, content) VALUES (?, ?, ?)",
                (session_id, role, content),
            )
            return cursor.lastrowid or 0

    def get_recent_messages(
        self, session_id: str = DEFAULT_SESSION_ID, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Last ``limit`` messages of a session, oldest first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT role, content, created_at
                   FROM messages WHERE session_id = ?
                   ORDER BY id DESC LIMIT ?""",
                (session_id, limit),
            ).fetchall()
        return list(reversed([dict(r) for r in rows]))

    # ════════════════════════════════════════════════════════════
    # CRON JOBS
    # ════════════════════════════════════════════════════════════

    def save_cron_job(self, job: ScheduledJob) -> ScheduledJob:
        """Insert a job, or overwrite the job with the same name.

        History fields are left untouched on overwrite. Returns the stored
        job with its id filled in.
        """
        d = job.descriptor
        values = {
            "name": job.name,
            "schedule_type": d.kind,
            "schedule": d.expression if isinstance(d, CronSchedule) else job.schedule,
            "run_at": _iso(d.run_at) if isinstance(d, AtSchedule) else None,
            "interval_ms": d.interval_ms if isinstance(d, EverySchedule) else None,
            "prompt": job.prompt,
            "channel": job.channel,
            "session_id": job.session_id,
            "recipient": job.recipient,
            "enabled": int(job.enabled),
            "delete_after_run": int(job.delete_after_run),
            "context_messages": job.context_messages,
            "next_run_at": _iso(job.next_run_at),
        }
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        updates = ", ".join(f"{c} = excluded.{c}" for c in values if c != "name")
        with self._write() as conn:
            conn.execute(
                f"""INSERT INTO cron_jobs ({cols}) VALUES ({marks})
                    ON CONFLICT(name) DO UPDATE SET {updates},
                        updated_at = datetime('now')""",
                tuple(values.values()),
            )
            row = conn.execute(
                "SELECT id FROM cron_jobs WHERE name = ?", (job.name,)
            ).fetchone()
        return job.model_copy(update={"id": row["id"]})

    def get_cron_job(self, name: str) -> ScheduledJob | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM cron_jobs WHERE name = ?", (name,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_cron_jobs(self, enabled_only: bool = False) -> list[ScheduledJob]:
        """All jobs across sessions, soonest next run first."""
        query = "SELECT * FROM cron_jobs"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY next_run_at IS NULL, next_run_at ASC, id ASC"
        with self._get_conn() as conn:
            rows = conn.execute(query).fetchall()
        return _rows_to_jobs(rows)

    def list_enabled(self) -> list[ScheduledJob]:
        return self.list_cron_jobs(enabled_only=True)

    def list_all(self) -> list[ScheduledJob]:
        return self.list_cron_jobs()

    def list_session_cron_jobs(
        self, session_id: str = DEFAULT_SESSION_ID
    ) -> list[ScheduledJob]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM cron_jobs WHERE session_id = ?
                   ORDER BY next_run_at IS NULL, next_run_at ASC, id ASC""",
                (session_id,),
            ).fetchall()
        return _rows_to_jobs(rows)

    def set_cron_job_enabled(self, name: str, enabled: bool) -> bool:
        with self._write() as conn:
            cursor = conn.execute(
                """UPDATE cron_jobs SET enabled = ?, updated_at = datetime('now')
                   WHERE name = ?""",
                (int(enabled), name),
            )
        return cursor.rowcount > 0

    def set_next_run(self, name: str, next_run_at: datetime | None) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE cron_jobs SET next_run_at = ? WHERE name = ?",
                (_iso(next_run_at), name),
            )

    def delete_cron_job(self, name: str) -> bool:
        with self._write() as conn:
            cursor = conn.execute("DELETE FROM cron_jobs WHERE name = ?", (name,))
        return cursor.rowcount > 0

    def record_run(
        self,
        name: str,
        status: str,
        duration_ms: int,
        error: str | None = None,
        result: str | None = None,
        session_id: str = DEFAULT_SESSION_ID,
    ) -> None:
        """Store the outcome of a firing on the job and in the execution log.

        The job row may already be gone (one-shot cleanup, deletion while
        firing); the log entry is written regardless.
        """
        with self._write() as conn:
            conn.execute(
                """UPDATE cron_jobs SET
                       last_run_at = ?, last_status = ?, last_error = ?,
                       last_duration_ms = ?, updated_at = datetime('now')
                   WHERE name = ?""",
                (_iso(datetime.now()), status, error, duration_ms, name),
            )
            conn.execute(
                """INSERT INTO cron_execution_log
                   (job_name, session_id, status, result, error, duration_ms, executed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (name, session_id, status, result, error, duration_ms,
                 datetime.now().isoformat()),
            )

    def get_cron_summary(self) -> dict[str, Any]:
        """Job counts by state plus the next enabled job due."""
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          SUM(CASE WHEN enabled = 1 THEN 1 ELSE 0 END) AS active,
                          SUM(CASE WHEN last_status = 'ok' THEN 1 ELSE 0 END) AS succeeded,
                          SUM(CASE WHEN last_status = 'error' THEN 1 ELSE 0 END) AS failed
                   FROM cron_jobs"""
            ).fetchone()
            nxt = conn.execute(
                """SELECT name, next_run_at FROM cron_jobs
                   WHERE enabled = 1 AND next_run_at IS NOT NULL
                   ORDER BY next_run_at ASC LIMIT 1"""
            ).fetchone()
        return {
            "total": row["total"],
            "active": row["active"] or 0,
            "succeeded": row["succeeded"] or 0,
            "failed": row["failed"] or 0,
            "next": (
                {"name": nxt["name"], "at": datetime.fromisoformat(nxt["next_run_at"])}
                if nxt else None
            ),
        }

    def get_execution_history(self, limit: int = 50) -> list[ExecutionRecord]:
        """Most recent executions across all jobs, newest first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM cron_execution_log ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            ExecutionRecord(
                job_name=r["job_name"],
                session_id=r["session_id"] or DEFAULT_SESSION_ID,
                status=r["status"],
                result=r["result"],
                error=r["error"],
                duration_ms=r["duration_ms"] or 0,
                executed_at=datetime.fromisoformat(r["executed_at"]),
            )
            for r in rows
        ]

    def get_execution_stats(self) -> dict[str, Any]:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, MAX(executed_at) AS last FROM cron_execution_log"
            ).fetchone()
        return {"total": row["total"], "last": _parse_dt(row["last"])}

    # ════════════════════════════════════════════════════════════
    # CALENDAR EVENTS
    # ════════════════════════════════════════════════════════════

    def add_calendar_event(
        self,
        title: str,
        start_time: datetime,
        end_time: datetime | None = None,
        location: str | None = None,
        description: str | None = None,
        reminder_minutes: int = 15,
        channel: str = "desktop",
        session_id: str = DEFAULT_SESSION_ID,
    ) -> int:
        with self._write() as conn:
            cursor = conn.execute(
                """INSERT INTO calendar_events
                   (title, description, start_time, end_time, location,
                    reminder_minutes, channel, session_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (title, description, _iso(start_time), _iso(end_time), location,
                 reminder_minutes, channel, session_id),
            )
            return cursor.lastrowid or 0

    def list_calendar_events(
        self,
        session_id: str = DEFAULT_SESSION_ID,
        since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            if since:
                rows = conn.execute(
                    """SELECT * FROM calendar_events
                       WHERE session_id = ? AND start_time >= ?
                       ORDER BY start_time ASC""",
                    (session_id, _iso(since)),
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM calendar_events WHERE session_id = ?
                       ORDER BY start_time ASC""",
                    (session_id,),
                ).fetchall()
        return [dict(r) for r in rows]

    def delete_calendar_event(
        self, event_id: int, session_id: str = DEFAULT_SESSION_ID
    ) -> bool:
        with self._write() as conn:
            cursor = conn.execute(
                "DELETE FROM calendar_events WHERE id = ? AND session_id = ?",
                (event_id, session_id),
            )
        return cursor.rowcount > 0

    def get_due_calendar_reminders(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Unreminded upcoming events whose reminder window has opened."""
        now = now or datetime.now()
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT id, title, description, start_time, location,
                          reminder_minutes, channel, session_id
                   FROM calendar_events
                   WHERE reminded = 0 AND reminder_minutes IS NOT NULL
                     AND start_time >= ?""",
                (_iso(now),),
            ).fetchall()
        return [
            dict(r) for r in rows
            if _reminder_due(r["start_time"], r["reminder_minutes"], now)
        ]

    def mark_calendar_reminded(self, event_id: int) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE calendar_events SET reminded = 1 WHERE id = ?", (event_id,)
            )

    # ════════════════════════════════════════════════════════════
    # TASKS
    # ════════════════════════════════════════════════════════════

    def add_task(
        self,
        title: str,
        due_date: datetime | None = None,
        priority: str = "medium",
        reminder_minutes: int | None = None,
        description: str | None = None,
        channel: str = "desktop",
        session_id: str = DEFAULT_SESSION_ID,
    ) -> int:
        if priority not in ("low", "medium", "high"):
            priority = "medium"
        with self._write() as conn:
            cursor = conn.execute(
                """INSERT INTO tasks
                   (title, description, due_date, priority, reminder_minutes,
                    channel, session_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (title, description, _iso(due_date), priority, reminder_minutes,
                 channel, session_id),
            )
            return cursor.lastrowid or 0

    def list_tasks(
        self,
        session_id: str = DEFAULT_SESSION_ID,
        status: str | None = "pending",
    ) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            if status:
                rows = conn.execute(
                    """SELECT * FROM tasks WHERE session_id = ? AND status = ?
                       ORDER BY due_date IS NULL, due_date ASC, id ASC""",
                    (session_id, status),
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM tasks WHERE session_id = ?
                       ORDER BY due_date IS NULL, due_date ASC, id ASC""",
                    (session_id,),
                ).fetchall()
        return [dict(r) for r in rows]

    def complete_task(self, task_id: int, session_id: str = DEFAULT_SESSION_ID) -> bool:
        with self._write() as conn:
            cursor = conn.execute(
                """UPDATE tasks SET status = 'completed', completed_at = ?
                   WHERE id = ? AND session_id = ? AND status = 'pending'""",
                (_iso(datetime.now()), task_id, session_id),
            )
        return cursor.rowcount > 0

    def delete_task(self, task_id: int, session_id: str = DEFAULT_SESSION_ID) -> bool:
        with self._write() as conn:
            cursor = conn.execute(
                "DELETE FROM tasks WHERE id = ? AND session_id = ?",
                (task_id, session_id),
            )
        return cursor.rowcount > 0

    def get_due_task_reminders(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Pending, unreminded tasks whose reminder window has opened."""
        now = now or datetime.now()
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT id, title, description, due_date, priority,
                          reminder_minutes, channel, session_id
                   FROM tasks
                   WHERE status = 'pending' AND reminded = 0
                     AND due_date IS NOT NULL AND reminder_minutes IS NOT NULL""",
            ).fetchall()
        return [
            dict(r) for r in rows
            if _reminder_due(r["due_date"], r["reminder_minutes"], now)
        ]

    def mark_task_reminded(self, task_id: int) -> None:
        with self._write() as conn:
            conn.execute("UPDATE tasks SET reminded = 1 WHERE id = ?", (task_id,))

    # ════════════════════════════════════════════════════════════
    # NOTIFICATIONS (desktop channel → GUI shell)
    # ════════════════════════════════════════════════════════════

    def add_notification(
        self,
        title: str,
        body: str,
        session_id: str = DEFAULT_SESSION_ID,
        source: str = "cron",
    ) -> int:
        with self._write() as conn:
            cursor = conn.execute(
                """INSERT INTO notifications (session_id, source, title, body)
                   VALUES (?, ?, ?, ?)""",
                (session_id, source, title, body),
            )
            return cursor.lastrowid or 0

    def get_undelivered_notifications(
        self, session_id: str | None = None
    ) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            if session_id:
                rows = conn.execute(
                    """SELECT * FROM notifications
                       WHERE is_delivered = 0 AND session_id = ? ORDER BY id""",
                    (session_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM notifications WHERE is_delivered = 0 ORDER BY id"
                ).fetchall()
        return [dict(r) for r in rows]

    def mark_notifications_delivered(self, ids: list[int]) -> None:
        if not ids:
            return
        marks = ", ".join("?" for _ in ids)
        with self._write() as conn:
            conn.execute(
                f"UPDATE notifications SET is_delivered = 1 WHERE id IN ({marks})",
                tuple(ids),
            )


# ════════════════════════════════════════════════════════════
# HELPERS
# ════════════════════════════════════════════════════════════


def _add_columns(conn, table: str, columns: list[tuple[str, str]]) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    for col, ddl in columns:
        if col in existing:
            continue
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {col} {ddl}")
        except sqlite3.OperationalError as e:
            # Another process migrated first
            logger.debug(f"Migration {table}.{col} skipped: {e}")


def _reminder_due(when: str | None, minutes: int | None, now: datetime) -> bool:
    if not when or minutes is None:
        return False
    return datetime.fromisoformat(when) - timedelta(minutes=minutes) <= now


def _rows_to_jobs(rows) -> list[ScheduledJob]:
    jobs = []
    for row in rows:
        try:
            jobs.append(_row_to_job(row))
        except ValueError as e:
            logger.error(f"Skipping unreadable cron job {row['name']!r}: {e}")
    return jobs


def _row_to_job(row) -> ScheduledJob:
    kind = row["schedule_type"] or "cron"
    if kind == "at":
        descriptor: Any = AtSchedule(run_at=datetime.fromisoformat(row["run_at"]))
        schedule = row["schedule"] or row["run_at"]
    elif kind == "every":
        descriptor = EverySchedule(interval_ms=row["interval_ms"])
        schedule = row["schedule"] or ""
    else:
        descriptor = CronSchedule(expression=row["schedule"])
        schedule = row["schedule"]
    return ScheduledJob(
        id=row["id"],
        name=row["name"],
        schedule=schedule,
        descriptor=descriptor,
        prompt=row["prompt"],
        channel=row["channel"],
        session_id=row["session_id"] or DEFAULT_SESSION_ID,
        recipient=row["recipient"],
        enabled=bool(row["enabled"]),
        delete_after_run=bool(row["delete_after_run"]),
        context_messages=row["context_messages"] or 0,
        next_run_at=_parse_dt(row["next_run_at"]),
        last_run_at=_parse_dt(row["last_run_at"]),
        last_status=row["last_status"],
        last_error=row["last_error"],
        last_duration_ms=row["last_duration_ms"],
    )


# ════════════════════════════════════════════════════════════
# SQL SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Messages (conversation history per session)
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);

-- 2. Cron jobs (cron | at | every)
CREATE TABLE IF NOT EXISTS cron_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    schedule_type TEXT NOT NULL DEFAULT 'cron'
        CHECK(schedule_type IN ('cron', 'at', 'every')),
    schedule TEXT,
    run_at TEXT,
    interval_ms INTEGER,
    prompt TEXT NOT NULL,
    channel TEXT NOT NULL DEFAULT 'desktop',
    session_id TEXT DEFAULT 'default',
    recipient TEXT,
    enabled INTEGER DEFAULT 1,
    delete_after_run INTEGER DEFAULT 0,
    context_messages INTEGER DEFAULT 0,
    next_run_at TEXT,
    last_run_at TEXT,
    last_status TEXT CHECK(last_status IN ('ok', 'error', 'skipped')),
    last_error TEXT,
    last_duration_ms INTEGER,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- 3. Cron execution log
CREATE TABLE IF NOT EXISTS cron_execution_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    session_id TEXT DEFAULT 'default',
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    duration_ms INTEGER DEFAULT 0,
    executed_at TEXT NOT NULL
);

-- 4. Calendar events
CREATE TABLE IF NOT EXISTS calendar_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT,
    all_day INTEGER DEFAULT 0,
    location TEXT,
    reminder_minutes INTEGER DEFAULT 15,
    reminded INTEGER DEFAULT 0,
    channel TEXT DEFAULT 'desktop',
    session_id TEXT DEFAULT 'default',
    created_at TEXT DEFAULT (datetime('now'))
);

-- 5. Tasks
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    due_date TEXT,
    priority TEXT DEFAULT 'medium' CHECK(priority IN ('low', 'medium', 'high')),
    status TEXT DEFAULT 'pending' CHECK(status IN ('pending', 'completed')),
    reminder_minutes INTEGER,
    reminded INTEGER DEFAULT 0,
    channel TEXT DEFAULT 'desktop',
    session_id TEXT DEFAULT 'default',
    created_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT
);

-- 6. Notifications (desktop deliveries awaiting the GUI shell)
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT DEFAULT 'default',
    source TEXT,
    title TEXT,
    body TEXT,
    is_delivered INTEGER DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""
