# parrainage/bot/core.py
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from parrainage.core.config import settings

default_properties = DefaultBotProperties(parse_mode=ParseMode.HTML)

_bot: Bot | None = None


def get_bot() -> Bot | None:
    """
    Бот нужен только для служебных сообщений администраторам.
    Без TELEGRAM_BOT_TOKEN возвращает None, и оповещения просто пишутся в лог.
    """
    global _bot
    if _bot is None and settings.TELEGRAM_BOT_TOKEN:
        _bot = Bot(token=settings.TELEGRAM_BOT_TOKEN, default=default_properties)
    return _bot
