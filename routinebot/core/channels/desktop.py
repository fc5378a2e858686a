"""Desktop channel — notifications queued in SQLite for the GUI shell."""

from __future__ import annotations

from loguru import logger

from routinebot.core.session import get_current_session_id
from routinebot.memory.store import MemoryStore


class DesktopNotifier:
    """Notification handler for the ``desktop`` channel.

    The GUI polls ``notifications`` and shows whatever is undelivered; this
    side only writes the row.
    """

    def __init__(self, db: MemoryStore):
        self.db = db

    def __call__(self, job_name: str, prompt: str, response: str) -> None:
        session_id = get_current_session_id()
        notification_id = self.db.add_notification(
            title=job_name, body=response, session_id=session_id, source="cron",
        )
        logger.info(
            f"Desktop notification {notification_id} queued: {job_name}"
            f" (session={session_id})"
        )
