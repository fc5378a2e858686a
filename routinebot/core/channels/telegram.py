"""Telegram channel — Bot API send helper and chat handler."""

from __future__ import annotations

import re

import httpx
from loguru import logger

from routinebot.core.config.schema import TelegramChannelConfig

TELEGRAM_API = "https://api.telegram.org/bot{token}"


async def send_message(token: str, chat_id: int | str, text: str) -> None:
    """Send a message via Telegram Bot API."""
    url = f"{TELEGRAM_API.format(token=token)}/sendMessage"
    html_text = md_to_html(text)

    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
        resp = await client.post(
            url,
            json={
                "chat_id": chat_id,
                "text": html_text,
                "parse_mode": "HTML",
            },
        )
        # Fallback to plain text if HTML parsing fails
        if resp.status_code != 200:
            resp = await client.post(
                url,
                json={"chat_id": chat_id, "text": text},
            )
        resp.raise_for_status()


def md_to_html(text: str) -> str:
    """Convert basic markdown to Telegram-compatible HTML.

    Handles: **bold**, *italic*, `code`, ```code blocks```, [links](url)
    """
    blocks: list[str] = []

    def save_block(m: re.Match) -> str:
        blocks.append(m.group(1))
        return f"%%CODEBLOCK{len(blocks) - 1}%%"

    text = re.sub(r"```(?:\w*\n)?(.*?)```", save_block, text, flags=re.DOTALL)
    text = _escape(text)
    text = re.sub(r"`([^`]+)`", r"<code>\1</code>", text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"\*(.+?)\*", r"<i>\1</i>", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2">\1</a>', text)

    for i, block in enumerate(blocks):
        text = text.replace(f"%%CODEBLOCK{i}%%", f"<pre>{_escape(block)}</pre>")
    return text


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class TelegramChatHandler:
    """Chat handler that delivers routine results to a Telegram chat.

    The job's ``recipient`` (from an ``@chat_id:`` prompt prefix) wins over
    the configured default chat.
    """

    def __init__(self, config: TelegramChannelConfig):
        self.config = config

    async def __call__(
        self,
        job_name: str,
        prompt: str,
        response: str,
        session_id: str,
        recipient: str | None = None,
    ) -> None:
        chat_id = recipient or self.config.chat_id
        if not self.config.token or not chat_id:
            logger.warning(
                f"Telegram not configured (token/chat_id missing), {job_name} not sent"
            )
            return
        await send_message(self.config.token, chat_id, response)
        logger.info(f"Telegram: {job_name} sent to chat {chat_id} (session={session_id})")
