# parrainage/bot/services/notification.py
import asyncio
import html
import logging
from typing import Any, Dict

from parrainage.bot.core import get_bot
from parrainage.core import events
from parrainage.core.config import settings
from parrainage.core.events import EventBus

logger = logging.getLogger(__name__)

TELEGRAM_MESSAGE_LIMIT = 4096


def _truncate(text: str) -> str:
    # Лимит Telegram 4096 символов
    if len(text) > TELEGRAM_MESSAGE_LIMIT:
        return text[:TELEGRAM_MESSAGE_LIMIT - 6] + "\n[...]"
    return text


async def send_admin_alert(text: str) -> bool:
    """Отправляет сообщение в админский чат. Без бота или чата только пишет в лог."""
    bot = get_bot()
    if bot is None or not settings.ADMIN_CHAT_ID:
        logger.warning(f"Admin alert not delivered (bot or ADMIN_CHAT_ID not configured): {text}")
        return False
    try:
        await bot.send_message(chat_id=settings.ADMIN_CHAT_ID, text=_truncate(text))
        return True
    except Exception as e:
        logger.error(f"Failed to send admin alert: {e}")
        return False


async def send_error_to_super_admins(error_message: str):
    """
    Отправляет сообщение о критической ошибке всем супер-админам в личные сообщения.
    """
    if not settings.SUPER_ADMIN_IDS:
        logger.warning("SUPER_ADMIN_IDS is not set. Critical error cannot be sent.")
        return
    bot = get_bot()
    if bot is None:
        logger.warning("TELEGRAM_BOT_TOKEN is not set. Critical error cannot be sent.")
        return

    error_message = _truncate(error_message)
    tasks = [bot.send_message(chat_id=admin_id, text=error_message) for admin_id in settings.SUPER_ADMIN_IDS]
    # return_exceptions=True, чтобы не упасть, если один из админов заблокировал бота
    await asyncio.gather(*tasks, return_exceptions=True)


# --- Подписчики шины событий ---

async def on_processing_failed(payload: Dict[str, Any]) -> None:
    await send_admin_alert(
        f"🚨 <b>Remise parrainage en échec définitif</b>\n\n"
        f"Commande filleul: #{payload.get('order_id')}\n"
        f"Abonnement filleul: #{payload.get('subscription_id')}\n"
        f"Tentatives: {payload.get('attempt')}\n"
        f"Erreur: <code>{html.escape(str(payload.get('error')))}</code>"
    )


async def on_cron_failure(payload: Dict[str, Any]) -> None:
    await send_admin_alert(
        f"⚠️ <b>Programmation de la remise impossible</b>\n\n"
        f"Commande filleul: #{payload.get('order_id')}\n"
        f"Abonnement filleul: #{payload.get('subscription_id')}\n"
        f"Relancer la commande depuis l'API d'administration."
    )


async def on_filleul_discount_expired(payload: Dict[str, Any]) -> None:
    await send_admin_alert(
        f"ℹ️ Remise filleul expirée sur l'abonnement #{payload.get('subscription_id')} "
        f"après {payload.get('facturation_count')} facturations: "
        f"{payload.get('price_before')}€ → {payload.get('price_after')}€"
    )


def register_alert_listeners(bus: EventBus) -> None:
    bus.subscribe(events.PROCESSING_FAILED, on_processing_failed)
    bus.subscribe(events.CRON_FAILURE, on_cron_failure)
    bus.subscribe(events.FILLEUL_DISCOUNT_EXPIRED, on_filleul_discount_expired)
    logger.info("Admin alert listeners registered.")
