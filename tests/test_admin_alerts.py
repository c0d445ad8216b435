# tests/test_admin_alerts.py

from unittest.mock import AsyncMock, MagicMock

from parrainage.bot.services import notification as bot_notification
from parrainage.core import events
from parrainage.core.config import settings
from parrainage.core.events import EventBus


async def test_alert_without_bot_is_only_logged(mocker, monkeypatch):
    mocker.patch("parrainage.bot.services.notification.get_bot", return_value=None)
    monkeypatch.setattr(settings, "ADMIN_CHAT_ID", 42)

    assert await bot_notification.send_admin_alert("test") is False


async def test_processing_failure_alert_is_sent(mocker, monkeypatch):
    bot = MagicMock()
    bot.send_message = AsyncMock()
    mocker.patch("parrainage.bot.services.notification.get_bot", return_value=bot)
    monkeypatch.setattr(settings, "ADMIN_CHAT_ID", 42)

    await bot_notification.on_processing_failed(
        {"order_id": 9001, "subscription_id": 9100, "attempt": 3, "error": "No eligible <product>"}
    )

    kwargs = bot.send_message.await_args.kwargs
    assert kwargs["chat_id"] == 42
    assert "#9001" in kwargs["text"]
    assert "&lt;product&gt;" in kwargs["text"]


async def test_bot_error_does_not_propagate(mocker, monkeypatch):
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=RuntimeError("blocked"))
    mocker.patch("parrainage.bot.services.notification.get_bot", return_value=bot)
    monkeypatch.setattr(settings, "ADMIN_CHAT_ID", 42)

    assert await bot_notification.send_admin_alert("x" * 5000) is False
    assert len(bot.send_message.await_args.kwargs["text"]) == bot_notification.TELEGRAM_MESSAGE_LIMIT


def test_alert_listeners_registered():
    bus = EventBus()
    bot_notification.register_alert_listeners(bus)

    for event_name in (events.PROCESSING_FAILED, events.CRON_FAILURE, events.FILLEUL_DISCOUNT_EXPIRED):
        assert len(bus._listeners[event_name]) == 1
