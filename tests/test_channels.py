"""Tests for channel handlers (desktop + Telegram) and their wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from routinebot.core.channels import register_channels
from routinebot.core.channels.desktop import DesktopNotifier
from routinebot.core.channels.telegram import (
    TelegramChatHandler,
    md_to_html,
    send_message,
)
from routinebot.core.config import Config
from routinebot.core.config.schema import TelegramChannelConfig
from routinebot.core.cron.scheduler import CronScheduler
from routinebot.core.session import session_scope
from routinebot.memory.store import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path / "test.db"))


# ── Desktop ────────────────────────────────────────────────


def test_desktop_notifier_queues_notification(store):
    notifier = DesktopNotifier(store)
    with session_scope("home"):
        notifier("daily-report", "Generate daily report", "Report ready")

    pending = store.get_undelivered_notifications("home")
    assert len(pending) == 1
    assert pending[0]["title"] == "daily-report"
    assert pending[0]["body"] == "Report ready"
    assert pending[0]["source"] == "cron"


# ── Telegram ───────────────────────────────────────────────


def test_md_to_html():
    assert md_to_html("**bold** and *it*") == "<b>bold</b> and <i>it</i>"
    assert md_to_html("`x < y`") == "<code>x &lt; y</code>"
    assert md_to_html("[site](https://a.b)") == '<a href="https://a.b">site</a>'
    assert md_to_html("```py\na<b\n```") == "<pre>a&lt;b\n</pre>"


@pytest.mark.asyncio
async def test_telegram_handler_prefers_recipient():
    handler = TelegramChatHandler(TelegramChannelConfig(enabled=True, token="tok", chat_id="999"))
    with patch(
        "routinebot.core.channels.telegram.send_message", new_callable=AsyncMock
    ) as mock_send:
        await handler("hello", "@123: hi", "Hi there", "default", "123")
        mock_send.assert_awaited_once_with("tok", "123", "Hi there")


@pytest.mark.asyncio
async def test_telegram_handler_falls_back_to_default_chat():
    handler = TelegramChatHandler(TelegramChannelConfig(enabled=True, token="tok", chat_id="999"))
    with patch(
        "routinebot.core.channels.telegram.send_message", new_callable=AsyncMock
    ) as mock_send:
        await handler("report", "Report", "Done", "default", None)
        mock_send.assert_awaited_once_with("tok", "999", "Done")


@pytest.mark.asyncio
async def test_telegram_handler_unconfigured_sends_nothing():
    handler = TelegramChatHandler(TelegramChannelConfig(enabled=True))
    with patch(
        "routinebot.core.channels.telegram.send_message", new_callable=AsyncMock
    ) as mock_send:
        await handler("report", "Report", "Done", "default", None)
        mock_send.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_message_falls_back_to_plain_text():
    calls = []

    def respond(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400 if len(calls) == 1 else 200, json={"ok": len(calls) > 1})

    transport = httpx.MockTransport(respond)
    real_client = httpx.AsyncClient

    with patch(
        "routinebot.core.channels.telegram.httpx.AsyncClient",
        lambda **kw: real_client(transport=transport, **kw),
    ):
        await send_message("tok", 42, "**hi**")

    assert len(calls) == 2
    assert calls[0].url.path == "/bottok/sendMessage"
    assert b'"parse_mode":"HTML"' in calls[0].content.replace(b" ", b"")
    assert b"parse_mode" not in calls[1].content


# ── Wiring ─────────────────────────────────────────────────


def test_register_channels_desktop_only(store):
    sched = CronScheduler(store)
    enabled = register_channels(sched, Config(), store)
    assert enabled == ["desktop"]
    assert sched.dispatcher.has_handler("desktop")
    assert not sched.dispatcher.has_handler("telegram")


def test_register_channels_with_telegram(store):
    sched = CronScheduler(store)
    cfg = Config(channels={"telegram": {"enabled": True, "token": "tok", "chat_id": "1"}})
    enabled = register_channels(sched, cfg, store)
    assert enabled == ["desktop", "telegram"]
    assert sched.dispatcher.has_handler("telegram")


@pytest.mark.asyncio
async def test_routed_job_reaches_telegram(store):
    agent = MagicMock()
    agent.execute = AsyncMock(return_value=MagicMock(response="Hello!"))
    sched = CronScheduler(store, agent)
    cfg = Config(channels={"telegram": {"enabled": True, "token": "tok", "chat_id": "1"}})
    register_channels(sched, cfg, store)
    sched.create_job("greet", "0 9 * * *", "@555: Say hello", "telegram")

    with patch(
        "routinebot.core.channels.telegram.send_message", new_callable=AsyncMock
    ) as mock_send:
        result = await sched.run_job_now("greet")

    assert result.status == "ok"
    mock_send.assert_awaited_once_with("tok", "555", "Hello!")
