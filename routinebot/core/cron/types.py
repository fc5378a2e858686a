"""Scheduled job types."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator

from routinebot.core.session import DEFAULT_SESSION_ID

MAX_CONTEXT_MESSAGES = 10

JobStatus = Literal["ok", "error", "skipped"]


class ClassificationError(ValueError):
    """A schedule expression could not be classified (malformed or in the past)."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Could not parse schedule {expression!r}: {reason}")


# ════════════════════════════════════════════════════════════
# SCHEDULE DESCRIPTORS (tagged by ``kind``)
# ════════════════════════════════════════════════════════════


class CronSchedule(BaseModel):
    """Five-field cron expression (minute hour day-of-month month day-of-week)."""

    kind: Literal["cron"] = "cron"
    expression: str


class AtSchedule(BaseModel):
    """One-shot absolute instant."""

    kind: Literal["at"] = "at"
    run_at: datetime


class EverySchedule(BaseModel):
    """Fixed interval, measured from the moment the job is (re)armed."""

    kind: Literal["every"] = "every"
    interval_ms: int = Field(gt=0)


ScheduleDescriptor = Annotated[
    Union[CronSchedule, AtSchedule, EverySchedule], Field(discriminator="kind")
]


# ════════════════════════════════════════════════════════════
# JOB
# ════════════════════════════════════════════════════════════


class ScheduledJob(BaseModel):
    """Scheduled job — mirrors the SQLite ``cron_jobs`` table.

    ``schedule`` keeps the text the user typed (the cron expression for cron
    jobs), ``descriptor`` the classified form.
    """

    id: int | None = None
    name: str
    schedule: str
    descriptor: ScheduleDescriptor
    prompt: str
    channel: str = "desktop"
    session_id: str = DEFAULT_SESSION_ID
    recipient: str | None = None
    enabled: bool = True
    delete_after_run: bool = False
    context_messages: int = 0

    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_status: JobStatus | None = None
    last_error: str | None = None
    last_duration_ms: int | None = None

    @field_validator("context_messages", mode="before")
    @classmethod
    def _clamp_context(cls, value: int | None) -> int:
        return max(0, min(MAX_CONTEXT_MESSAGES, int(value or 0)))

    @property
    def schedule_type(self) -> str:
        return self.descriptor.kind


# ════════════════════════════════════════════════════════════
# EXECUTION RESULTS
# ════════════════════════════════════════════════════════════


class JobRunResult(BaseModel):
    """Outcome of one firing, as returned by the dispatcher."""

    status: JobStatus
    duration_ms: int = 0
    response: str | None = None
    error: str | None = None


class ExecutionRecord(BaseModel):
    """One row of the execution log."""

    job_name: str
    session_id: str = DEFAULT_SESSION_ID
    status: JobStatus
    result: str | None = None
    error: str | None = None
    duration_ms: int = 0
    executed_at: datetime


class SchedulerStats(BaseModel):
    active_jobs: int = 0
    total_executions: int = 0
    last_execution: datetime | None = None
