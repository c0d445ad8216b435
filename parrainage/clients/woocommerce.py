# parrainage/clients/woocommerce.py

import logging
from decimal import Decimal
from typing import Iterable

import httpx

from parrainage.core.config import settings

logger = logging.getLogger(__name__)


class WooCommerceClient:
    """
    Асинхронный клиент REST API WooCommerce (Application Passwords).
    Используется для отправки измененных цен абонементов обратно в магазин.
    """
    def __init__(self, base_url: str, app_user: str, app_pass: str, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = f"{base_url}/wp-json"
        self.auth = (app_user, app_pass)
        timeouts = httpx.Timeout(20.0, read=60.0)
        self.async_client = httpx.AsyncClient(
            auth=self.auth,
            base_url=self.base_url,
            timeout=timeouts,
            transport=transport,
        )

    async def put(self, endpoint: str, json: dict) -> dict:
        """
        PUT-запрос (обновление ресурса). Возвращает JSON-ответ.
        """
        try:
            response = await self.async_client.put(endpoint, json=json)
            response.raise_for_status()
            return response.json()
        except httpx.RequestError as e:
            logger.error(f"Network error during PUT request to {e.request.url!r}.", exc_info=True)
            raise
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error during PUT request to {e.request.url!r}: {e.response.text}", exc_info=True)
            raise

    async def update_subscription_items(self, subscription_id: int, items: Iterable[dict]) -> dict:
        """
        Записывает новые суммы строк абонемента.
        items: [{"wc_item_id": ..., "total": ...}], строки без wc_item_id пропускаются.
        """
        line_items = [
            {"id": item["wc_item_id"], "total": str(Decimal(str(item["total"]))), "subtotal": str(Decimal(str(item["total"])))}
            for item in items
            if item.get("wc_item_id")
        ]
        if not line_items:
            logger.warning(f"Subscription {subscription_id} has no WooCommerce line item ids, nothing to push.")
            return {}
        return await self.put(f"wc/v3/subscriptions/{subscription_id}", json={"line_items": line_items})

    async def close(self) -> None:
        await self.async_client.aclose()


# Создаем синглтон
wc_client = WooCommerceClient(
    base_url=settings.WP_URL,
    app_user=settings.WP_APP_USER,
    app_pass=settings.WP_APP_PASSWORD
)
