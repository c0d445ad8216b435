# parrainage/services/woocommerce_sync.py

import logging
from typing import Any, Dict

import httpx

from parrainage.clients.woocommerce import WooCommerceClient, wc_client
from parrainage.core import events
from parrainage.core.audit import audit_log
from parrainage.core.events import EventBus

logger = logging.getLogger(__name__)

CHANNEL = "woocommerce-sync"


class PriceSync:
    """Отправляет в WooCommerce цену абонемента после каждого изменения в локальном зеркале."""

    def __init__(self, client: WooCommerceClient):
        self.client = client

    async def on_price_updated(self, payload: Dict[str, Any]) -> None:
        subscription_id = payload.get("subscription_id")
        try:
            await self.client.update_subscription_items(subscription_id, payload.get("items", []))
            audit_log.info(
                "Subscription price pushed to WooCommerce",
                {"subscription_id": subscription_id, "new_total": payload.get("new_total")},
                CHANNEL,
            )
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            # Локальное состояние уже записано, расхождение видно в логе
            audit_log.error(
                "Price push to WooCommerce failed",
                {"subscription_id": subscription_id, "new_total": payload.get("new_total"), "error": str(e)},
                CHANNEL,
            )


price_sync = PriceSync(wc_client)


def register_listeners(bus: EventBus, sync: PriceSync = price_sync) -> None:
    bus.subscribe(events.SUBSCRIPTION_PRICE_UPDATED, sync.on_price_updated)
    logger.info("WooCommerce price sync listener registered.")
