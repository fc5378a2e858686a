"""Channel base — wiring of delivery handlers onto the scheduler."""

from __future__ import annotations

from loguru import logger

from routinebot.core.channels.desktop import DesktopNotifier
from routinebot.core.channels.telegram import TelegramChatHandler
from routinebot.core.config.schema import Config
from routinebot.core.cron.scheduler import CronScheduler
from routinebot.memory.store import MemoryStore


def register_channels(
    scheduler: CronScheduler, config: Config, db: MemoryStore
) -> list[str]:
    """Attach the configured channel handlers. Returns the enabled channel names."""
    scheduler.set_notification_handler(DesktopNotifier(db))
    enabled = ["desktop"]

    telegram = config.channels.telegram
    if telegram.enabled:
        scheduler.set_chat_handler(TelegramChatHandler(telegram))
        enabled.append("telegram")

    logger.info(f"Channels registered: {', '.join(enabled)}")
    return enabled
