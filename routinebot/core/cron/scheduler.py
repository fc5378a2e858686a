"""CronScheduler — APScheduler + SQLite bridge for named routines."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from routinebot.core.config.schema import SchedulerConfig
from routinebot.core.cron.dispatcher import (
    ChatHandler,
    ExecutionDispatcher,
    NotificationHandler,
)
from routinebot.core.cron.schedule import (
    classify,
    cron_problem,
    format_datetime,
    next_run,
)
from routinebot.core.cron.types import (
    AtSchedule,
    ClassificationError,
    CronSchedule,
    ExecutionRecord,
    JobRunResult,
    ScheduledJob,
    SchedulerStats,
)
from routinebot.core.session import get_current_session_id, session_scope
from routinebot.memory.store import MemoryStore

if TYPE_CHECKING:
    from routinebot.agent.executor import AgentBoundary

_RECIPIENT_RE = re.compile(r"^@(\S+?):")
_REMINDER_JOB_ID = "__reminder_sweep__"


def extract_recipient(prompt: str) -> str | None:
    """``@12345: remind me`` → ``12345``."""
    match = _RECIPIENT_RE.match(prompt.strip())
    return match.group(1) if match else None


class CronScheduler:
    """Bridge between SQLite cron_jobs and APScheduler.

    Jobs are persisted in SQLite (source of truth); each enabled job with a
    next run time has exactly one APScheduler ``DateTrigger`` job, keyed by
    the job name. On trigger the dispatcher runs it, then the job is
    re-armed for its next run or retired.

    Construct one per process (or per test) and pass it around; nothing
    here is global.
    """

    def __init__(
        self,
        store: MemoryStore | None = None,
        agent: AgentBoundary | None = None,
        config: SchedulerConfig | None = None,
    ):
        self.store = store
        self.config = config or SchedulerConfig()
        self.dispatcher = ExecutionDispatcher(agent=agent, store=store)
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": self.config.misfire_grace_s,
            }
        )
        # name → job currently owning the timer (derived from the store)
        self._jobs: dict[str, ScheduledJob] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Lifecycle ────────────────────────────────────────────

    async def initialize(self, store: MemoryStore | None = None) -> None:
        """Load enabled jobs from SQLite, arm them and start the scheduler."""
        if store is not None:
            self.store = store
            self.dispatcher.store = store
        if self.store is None:
            raise RuntimeError("CronScheduler needs a MemoryStore")

        for name in list(self._jobs):
            self._disarm(name)
        self._jobs.clear()

        now = datetime.now()
        grace = timedelta(seconds=self.config.misfire_grace_s)
        jobs = self.store.list_enabled()
        armed = 0
        for job in jobs:
            next_at = job.next_run_at
            # Keep a persisted time unless it is stale (queued runs are kept)
            if next_at is None or next_at < now - grace:
                next_at = next_run(job.descriptor, now)
                if next_at != job.next_run_at:
                    self.store.set_next_run(job.name, next_at)
            if next_at is None:
                logger.info(f"Cron job {job.name} has no further runs, not armed")
                continue
            self._jobs[job.name] = job.model_copy(update={"next_run_at": next_at})
            self._arm(self._jobs[job.name])
            armed += 1
            if not self.dispatcher.has_handler(job.channel):
                logger.warning(
                    f"Cron job {job.name}: no handler for channel {job.channel},"
                    f" results are only recorded"
                )

        self._scheduler.add_job(
            self._check_reminders,
            trigger=IntervalTrigger(seconds=self.config.reminder_check_interval_s),
            id=_REMINDER_JOB_ID,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(f"CronScheduler started with {armed}/{len(jobs)} jobs armed")

    async def stop(self) -> None:
        """Cancel every timer and shut the scheduler down."""
        self.stop_all()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("CronScheduler stopped")

    def stop_all(self) -> None:
        """Cancel every job timer. Persisted jobs are untouched and the
        scheduler keeps running, so jobs armed afterwards still fire."""
        for name in list(self._jobs):
            self._disarm(name)
        self._jobs.clear()

    # ── Handlers ─────────────────────────────────────────────

    def set_notification_handler(self, handler: NotificationHandler | None) -> None:
        self.dispatcher.set_notification_handler(handler)

    def set_chat_handler(self, handler: ChatHandler | None) -> None:
        self.dispatcher.set_chat_handler(handler)

    def register_channel(self, name: str, handler: ChatHandler) -> None:
        self.dispatcher.register_channel(name, handler)

    # ── CRUD ─────────────────────────────────────────────────

    def create_job(
        self,
        name: str,
        schedule: str,
        prompt: str,
        channel: str | None = None,
        session_id: str | None = None,
        delete_after_run: bool = False,
        context_messages: int = 0,
    ) -> bool:
        """Classify, persist and arm a job. False if the schedule is invalid."""
        try:
            descriptor = classify(schedule)
        except ClassificationError as e:
            logger.warning(f"Cron job {name} rejected: {e}")
            return False

        job = ScheduledJob(
            name=name,
            schedule=schedule.strip(),
            descriptor=descriptor,
            prompt=prompt,
            channel=channel or self.config.default_channel,
            session_id=session_id or get_current_session_id(),
            recipient=extract_recipient(prompt),
            delete_after_run=delete_after_run or isinstance(descriptor, AtSchedule),
            context_messages=min(context_messages, self.config.max_context_messages),
        )
        return self.schedule_job(job)

    def schedule_job(self, job: ScheduledJob) -> bool:
        """Persist ``job`` (replacing any job with the same name) and arm it."""
        if self.store is None:
            logger.warning(f"Cron job {job.name} not scheduled: no store")
            return False

        descriptor = job.descriptor
        if isinstance(descriptor, CronSchedule):
            problem = cron_problem(descriptor.expression)
            if problem:
                logger.warning(f"Cron job {job.name} rejected: {problem}")
                return False
        next_at = next_run(descriptor)
        if next_at is None and isinstance(descriptor, AtSchedule):
            logger.warning(f"Cron job {job.name} rejected: {descriptor.run_at} is in the past")
            return False

        stored = self.store.save_cron_job(job.model_copy(update={"next_run_at": next_at}))

        self._disarm(job.name)
        self._jobs.pop(job.name, None)
        if stored.enabled and next_at is not None:
            self._jobs[job.name] = stored
            self._arm(stored)
        logger.info(
            f"Cron job added: {job.name} ({job.schedule_type}: {job.schedule})"
            f" next={format_datetime(next_at)}"
        )
        return True

    def get_jobs(self) -> list[ScheduledJob]:
        """Jobs with a live timer, soonest first."""
        return sorted(
            self._jobs.values(), key=lambda j: j.next_run_at or datetime.max
        )

    def get_all_jobs(self) -> list[ScheduledJob]:
        """Every persisted job, including disabled ones."""
        return self.store.list_all() if self.store else []

    def set_job_enabled(self, name: str, enabled: bool) -> bool:
        if self.store is None or self.store.get_cron_job(name) is None:
            return False
        self.store.set_cron_job_enabled(name, enabled)
        if not enabled:
            self._disarm(name)
            self._jobs.pop(name, None)
            logger.info(f"Cron job disabled: {name}")
            return True

        job = self.store.get_cron_job(name)
        next_at = next_run(job.descriptor)
        self.store.set_next_run(name, next_at)
        if next_at is not None:
            self._jobs[name] = job.model_copy(update={"next_run_at": next_at})
            self._arm(self._jobs[name])
        logger.info(f"Cron job enabled: {name} next={format_datetime(next_at)}")
        return True

    def delete_job(self, name: str) -> bool:
        """Remove a job (SQLite + APScheduler)."""
        deleted = self.store.delete_cron_job(name) if self.store else False
        was_armed = self.stop_job(name)
        self._drop_lock(name)
        if deleted or was_armed:
            logger.info(f"Cron job removed: {name}")
        return deleted or was_armed

    def stop_job(self, name: str) -> bool:
        """Cancel the live timer only; the persisted job stays."""
        known = name in self._jobs
        self._jobs.pop(name, None)
        return self._disarm(name) or known

    def is_running(self, name: str) -> bool:
        return name in self._jobs and self._scheduler.get_job(name) is not None

    async def run_job_now(self, name: str) -> JobRunResult | None:
        """Fire a job immediately, serialised with its timer."""
        job = self._jobs.get(name)
        if job is None and self.store is not None:
            job = self.store.get_cron_job(name)
        if job is None:
            logger.warning(f"Cron job not found: {name}")
            return None
        async with self._lock(name):
            result = await self._run(job)
        self._drop_lock(name)
        return result

    # ── Stats ────────────────────────────────────────────────

    def get_stats(self) -> SchedulerStats:
        if self.store is None:
            return SchedulerStats(active_jobs=len(self._jobs))
        stats = self.store.get_execution_stats()
        return SchedulerStats(
            active_jobs=len(self._jobs),
            total_executions=stats["total"],
            last_execution=stats["last"],
        )

    def get_history(self, limit: int = 50) -> list[ExecutionRecord]:
        return self.store.get_execution_history(limit) if self.store else []

    # ── Timers ───────────────────────────────────────────────

    def _arm(self, job: ScheduledJob) -> None:
        """Register the job's next run with APScheduler."""
        # Pending jobs (scheduler not started) ignore replace_existing
        self._disarm(job.name)
        try:
            self._scheduler.add_job(
                self._fire,
                trigger=DateTrigger(run_date=job.next_run_at),
                id=job.name,
                name=job.name,
                args=[job.name],
                replace_existing=True,
            )
            logger.debug(f"Cron job armed: {job.name} at {job.next_run_at}")
        except Exception as e:
            logger.error(f"Failed to register cron job {job.name}: {e}")

    def _disarm(self, name: str) -> bool:
        try:
            self._scheduler.remove_job(name)
            return True
        except JobLookupError:
            return False

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def _drop_lock(self, name: str) -> None:
        """Forget the lock of a job that no longer owns a timer."""
        lock = self._locks.get(name)
        if lock is not None and not lock.locked() and name not in self._jobs:
            del self._locks[name]

    async def _fire(self, name: str) -> None:
        job = self._jobs.get(name)
        if job is None:
            return
        lock = self._lock(name)
        if lock.locked():
            logger.debug(f"Cron job {name} still running, firing coalesced")
            return
        async with lock:
            await self._run(job)
        self._drop_lock(name)

    async def _run(self, job: ScheduledJob) -> JobRunResult:
        result = await self.dispatcher.dispatch(job)
        try:
            self._after_run(job)
        except Exception as e:
            logger.error(f"Cron job {job.name} could not be rescheduled: {e}")
        return result

    def _after_run(self, job: ScheduledJob) -> None:
        """Re-arm or retire ``job`` once a firing has finished."""
        name = job.name
        current = self._jobs.get(name)
        if current is not None and current is not job:
            # Replaced while firing; the new definition owns the timer
            return

        if job.delete_after_run:
            self._disarm(name)
            self._jobs.pop(name, None)
            self.store.delete_cron_job(name)
            logger.info(f"Cron job {name} retired (delete after run)")
            return

        if current is None:
            # Stopped or disabled while firing, or a manual run of an unarmed job
            return

        next_at = next_run(job.descriptor)
        self.store.set_next_run(name, next_at)
        if next_at is None:
            self._jobs.pop(name, None)
            logger.info(f"Cron job {name} retired (no further runs)")
            return
        self._jobs[name] = job.model_copy(update={"next_run_at": next_at})
        self._arm(self._jobs[name])

    # ── Calendar / task reminders ────────────────────────────

    async def _check_reminders(self) -> None:
        """Deliver calendar and task reminders whose window has opened."""
        if self.store is None:
            return
        now = datetime.now()
        try:
            events = self.store.get_due_calendar_reminders(now)
            tasks = self.store.get_due_task_reminders(now)
        except Exception as e:
            logger.error(f"Reminder check failed: {e}")
            return

        for ev in events:
            start = datetime.fromisoformat(ev["start_time"])
            text = f"Reminder: {ev['title']} at {format_datetime(start)}"
            if ev.get("location"):
                text += f" ({ev['location']})"
            await self._send_reminder(
                ev, f"calendar:{ev['id']}", ev["title"], text,
                self.store.mark_calendar_reminded,
            )

        for task in tasks:
            due = datetime.fromisoformat(task["due_date"])
            text = f"Task due: {task['title']} ({format_datetime(due)})"
            await self._send_reminder(
                task, f"task:{task['id']}", task["title"], text,
                self.store.mark_task_reminded,
            )

    async def _send_reminder(self, row, name, title, text, mark_done) -> None:
        session_id = row.get("session_id") or self.config.default_session
        try:
            with session_scope(session_id):
                await self.dispatcher.deliver(
                    row.get("channel") or self.config.default_channel,
                    name, title, text, session_id,
                )
            mark_done(row["id"])
            logger.info(f"Reminder {name} sent (session={session_id})")
        except Exception as e:
            logger.error(f"Reminder {name} failed: {e}")
