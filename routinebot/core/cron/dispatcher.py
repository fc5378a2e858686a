"""Execution dispatcher — runs one firing and routes the result to a channel."""

from __future__ import annotations

import inspect
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from loguru import logger

from routinebot.core.cron.types import JobRunResult, ScheduledJob
from routinebot.core.session import session_scope
from routinebot.memory.store import MemoryStore, StoreError

if TYPE_CHECKING:
    from routinebot.agent.executor import AgentBoundary

# notification handler: (job_name, prompt, response)
NotificationHandler = Callable[[str, str, str], Any]
# chat handler: (job_name, prompt, response, session_id, recipient)
ChatHandler = Callable[[str, str, str, str, "str | None"], Any]

DESKTOP_CHANNEL = "desktop"


def _should_skip(response: str) -> bool:
    """Check if the agent asked for the result to be suppressed.

    Routine prompts may tell the agent to answer SKIP when there is
    nothing worth reporting.
    """
    if not response or not response.strip():
        return True
    markers = {"SKIP", "[SKIP]", "[NO_NOTIFY]"}
    upper = response.strip().upper()
    return any(upper.startswith(m) or upper.endswith(m) for m in markers)


def format_context(messages: list[dict[str, Any]], prompt: str) -> str:
    """Prefix ``prompt`` with recent conversation lines."""
    if not messages:
        return prompt
    lines = [f"{m['role']}: {m['content']}" for m in messages]
    return "Recent conversation:\n" + "\n".join(lines) + f"\n\n{prompt}"


async def _call(handler: Callable[..., Any], *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class ExecutionDispatcher:
    """Runs a job against the agent and hands the response to its channel.

    Channel dispatch is a handler table keyed by channel name. ``desktop``
    goes to the notification handler, any other channel to the chat handler
    unless a dedicated handler was registered for it. A channel with no
    handler just records the result.
    """

    def __init__(
        self,
        agent: AgentBoundary | None = None,
        store: MemoryStore | None = None,
    ):
        self.agent = agent
        self.store = store
        self._notification_handler: NotificationHandler | None = None
        self._chat_handler: ChatHandler | None = None
        self._channels: dict[str, ChatHandler] = {}

    # ── Handler table ───────────────────────────────────────

    def set_notification_handler(self, handler: NotificationHandler | None) -> None:
        self._notification_handler = handler

    def set_chat_handler(self, handler: ChatHandler | None) -> None:
        self._chat_handler = handler

    def register_channel(self, name: str, handler: ChatHandler) -> None:
        """Route ``name`` to a dedicated chat-style handler."""
        self._channels[name] = handler

    def has_handler(self, channel: str) -> bool:
        if channel in self._channels:
            return True
        if channel == DESKTOP_CHANNEL:
            return self._notification_handler is not None
        return self._chat_handler is not None

    async def deliver(
        self,
        channel: str,
        job_name: str,
        prompt: str,
        response: str,
        session_id: str,
        recipient: str | None = None,
    ) -> bool:
        """Hand a response to the channel's handler. Returns False if none is set."""
        handler = self._channels.get(channel)
        if handler is not None:
            await _call(handler, job_name, prompt, response, session_id, recipient)
            return True
        if channel == DESKTOP_CHANNEL:
            if self._notification_handler is None:
                logger.debug(f"No notification handler, {job_name} not delivered")
                return False
            await _call(self._notification_handler, job_name, prompt, response)
            return True
        if self._chat_handler is None:
            logger.debug(f"No chat handler for {channel}, {job_name} not delivered")
            return False
        await _call(self._chat_handler, job_name, prompt, response, session_id, recipient)
        return True

    # ── Execution ───────────────────────────────────────────

    async def dispatch(self, job: ScheduledJob) -> JobRunResult:
        """Execute ``job`` once inside its session and record the outcome.

        Never raises: agent, context and delivery failures come back as
        ``status="error"``.
        """
        logger.info(f"Cron trigger: {job.name} → session={job.session_id}")
        with session_scope(job.session_id):
            result = await self._execute(job)
        self._record(job, result)
        return result

    async def _execute(self, job: ScheduledJob) -> JobRunResult:
        start = time.time()
        try:
            context: list[dict[str, Any]] = []
            if job.context_messages > 0 and self.store is not None:
                context = self.store.get_recent_messages(
                    job.session_id, job.context_messages
                )
            prompt = format_context(context, job.prompt)

            if self.agent is None:
                raise RuntimeError("No agent configured")
            reply = await self.agent.execute(prompt, job.session_id, context)
            response = reply.response
            duration_ms = int((time.time() - start) * 1000)

            if _should_skip(response):
                logger.debug(f"Cron {job.name} skipped (SKIP marker in response)")
                return JobRunResult(
                    status="skipped", duration_ms=duration_ms, response=response
                )

            sent = await self.deliver(
                job.channel, job.name, job.prompt, response,
                job.session_id, job.recipient,
            )
            if sent:
                logger.info(f"Cron job {job.name} → sent to {job.channel}")
            else:
                logger.info(f"Cron job {job.name} completed: {response[:100]}")
            return JobRunResult(
                status="ok",
                duration_ms=int((time.time() - start) * 1000),
                response=response,
            )
        except Exception as e:
            duration_ms = int((time.time() - start) * 1000)
            logger.error(f"Cron job {job.name} failed: {e}")
            return JobRunResult(status="error", duration_ms=duration_ms, error=str(e))

    def _record(self, job: ScheduledJob, result: JobRunResult) -> None:
        if self.store is None:
            return
        try:
            self.store.record_run(
                job.name,
                result.status,
                result.duration_ms,
                error=result.error,
                result=result.response,
                session_id=job.session_id,
            )
        except StoreError as e:
            logger.error(f"Could not record run of {job.name}: {e}")
