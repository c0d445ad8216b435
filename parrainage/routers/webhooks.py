# parrainage/routers/webhooks.py

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from parrainage.core import constants as c
from parrainage.core.audit import audit_log
from parrainage.core.config import settings
from parrainage.crud import record as crud_record
from parrainage.services.container import ServiceContainer, get_services

logger = logging.getLogger(__name__)

CHANNEL = "webhooks"

# --- Роутер для WooCommerce ---
# Подключается в main.py с префиксом /internal/webhooks
wc_router = APIRouter()

# Из метаданных WooCommerce в зеркало попадает только код parrain,
# остальное состояние скидки принадлежит этому сервису
SYNCED_META_KEYS = (c.META_REFERRAL_CODE,)

PAID_ORDER_STATUSES = ("processing", "completed")
RENEWAL_META_KEY = "_subscription_renewal"


# --- Зависимость для проверки подписи WooCommerce ---
async def verify_webhook_signature(
    request: Request,
    x_wc_webhook_signature: str | None = Header(None)
):
    """
    Зависимость для проверки подписи. Пропускает запросы без подписи.
    """
    raw_body = await request.body()

    # Если это "пинг" от WooCommerce (пустое тело), подписи не будет. Пропускаем.
    if not raw_body:
        return

    # Если секрет не настроен или не пришел заголовок, тоже пропускаем.
    if not settings.WP_WEBHOOK_SECRET or not x_wc_webhook_signature:
        logger.warning("Webhook secret not configured or signature header missing. Skipping verification.")
        return

    expected_signature = base64.b64encode(hmac.new(settings.WP_WEBHOOK_SECRET.encode('utf-8'), raw_body, hashlib.sha256).digest()).decode()

    if not hmac.compare_digest(expected_signature, x_wc_webhook_signature):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )
    logger.debug("Webhook signature verified successfully.")


async def _read_payload(request: Request) -> Dict[str, Any] | None:
    raw_body = await request.body()
    if not raw_body:
        return None
    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _meta_dict(payload: Dict[str, Any]) -> Dict[str, Any]:
    meta = {}
    for entry in payload.get("meta_data") or []:
        if isinstance(entry, dict) and entry.get("key") in SYNCED_META_KEYS:
            meta[entry["key"]] = entry.get("value")
    return meta


def _record_data(payload: Dict[str, Any], kind: str) -> Dict[str, Any]:
    """Приводит объект WooCommerce (заказ или абонемент) к формату crud_record.upsert_record."""
    return {
        "id": int(payload["id"]),
        "kind": kind,
        "status": payload.get("status"),
        "customer_id": payload.get("customer_id"),
        "parent_id": payload.get("parent_id"),
        "currency": payload.get("currency"),
        "total": payload.get("total"),
        "line_items": payload.get("line_items") or [],
        "meta": _meta_dict(payload),
    }


def _renewal_subscription_id(payload: Dict[str, Any]) -> int | None:
    if payload.get("subscription_id"):
        return int(payload["subscription_id"])
    for entry in payload.get("meta_data") or []:
        if isinstance(entry, dict) and entry.get("key") == RENEWAL_META_KEY and entry.get("value"):
            return int(entry["value"])
    return None


# --- Эндпоинты для WooCommerce ---

@wc_router.post("/order-created", dependencies=[Depends(verify_webhook_signature)])
async def order_created_webhook(request: Request, services: ServiceContainer = Depends(get_services)):
    """Оформление заказа filleul: пометка для отложенной скидки parrain и фиксация стандартной цены."""
    payload = await _read_payload(request)
    if payload is None:
        return {"status": "ok", "message": "Empty or invalid payload."}
    if not payload.get("id"):
        return {"status": "ok", "message": "Order ID not found in payload"}

    order_id = int(payload["id"])
    try:
        crud_record.upsert_record(services.store.db, _record_data(payload, "order"))
        order = services.store.get(order_id)
        if not order.get_meta(c.META_REFERRAL_CODE):
            return {"status": "ok", "message": f"Order {order_id} has no referral code"}

        # Повторная доставка вебхука не должна сбрасывать уже идущий воркфлоу
        marked = False
        if order.get_meta(c.META_WORKFLOW_STATUS) is None:
            marked = services.processor.mark_parrainage_order(order_id)
        services.filleul_expiration.store_standard_price(order_id)

        audit_log.info("Order webhook processed", {"order_id": order_id, "marked": marked}, CHANNEL)
        return {"status": "ok", "message": f"Order {order_id} processed", "marked": marked}
    except Exception as e:
        # Ошибка логики скидки не должна ломать вызов WooCommerce
        services.store.db.rollback()
        logger.error(f"Error during order webhook processing for order {order_id}", exc_info=True)
        audit_log.error("Order webhook failed", {"order_id": order_id, "error": str(e)}, CHANNEL)
        return {"status": "ok", "message": "Processing error logged"}


@wc_router.post("/subscription-updated", dependencies=[Depends(verify_webhook_signature)])
async def subscription_updated_webhook(request: Request, services: ServiceContainer = Depends(get_services)):
    """
    Смена статуса абонемента. Для filleul:
    active - планирование скидки parrain или ее возобновление,
    cancelled / on-hold / expired / pending-cancel - приостановка.
    """
    payload = await _read_payload(request)
    if payload is None:
        return {"status": "ok", "message": "Empty or invalid payload."}
    if not payload.get("id"):
        return {"status": "ok", "message": "Subscription ID not found in payload"}

    subscription_id = int(payload["id"])
    try:
        record, previous_status = crud_record.upsert_record(services.store.db, _record_data(payload, "subscription"))
        if previous_status is None:
            services.filleul_expiration.initialize_subscription(subscription_id)

        new_status = record.status
        if previous_status == new_status:
            return {"status": "ok", "message": f"Subscription {subscription_id} status unchanged"}

        result: Dict[str, Any] = {"previous_status": previous_status, "new_status": new_status}
        if new_status == c.REACTIVATION_TRIGGER_STATUS:
            result["scheduled"] = services.processor.schedule_parrain_discount(subscription_id)
            reactivation = services.reactivation_manager.handle_subscription_reactivation(subscription_id, new_status)
            if reactivation is not None:
                result["reactivation"] = reactivation.success
        elif new_status in c.SUSPENSION_TRIGGER_STATUSES:
            suspension = services.suspension_manager.handle_subscription_status_change(subscription_id, new_status)
            if suspension is not None:
                result["suspension"] = suspension.success

        audit_log.info("Subscription webhook processed", {"subscription_id": subscription_id, **result}, CHANNEL)
        return {"status": "ok", "message": f"Subscription {subscription_id} processed", **result}
    except Exception as e:
        services.store.db.rollback()
        logger.error(f"Error during subscription webhook processing for subscription {subscription_id}", exc_info=True)
        audit_log.error("Subscription webhook failed", {"subscription_id": subscription_id, "error": str(e)}, CHANNEL)
        return {"status": "ok", "message": "Processing error logged"}


@wc_router.post("/subscription-renewal", dependencies=[Depends(verify_webhook_signature)])
async def subscription_renewal_webhook(request: Request, services: ServiceContainer = Depends(get_services)):
    """Оплаченное продление: увеличивает счетчик оплат абонемента filleul."""
    payload = await _read_payload(request)
    if payload is None:
        return {"status": "ok", "message": "Empty or invalid payload."}

    try:
        subscription_id = _renewal_subscription_id(payload)
        if subscription_id is None:
            return {"status": "ok", "message": "Renewal subscription not found in payload"}
        if payload.get("status") and payload.get("status") not in PAID_ORDER_STATUSES:
            return {"status": "ok", "message": f"Renewal order not paid ({payload.get('status')})"}

        result = services.filleul_expiration.track_renewal(subscription_id)
        return {"status": "ok", "message": f"Renewal of subscription {subscription_id} processed", **result}
    except Exception as e:
        services.store.db.rollback()
        logger.error("Error during renewal webhook processing", exc_info=True)
        audit_log.error("Renewal webhook failed", {"payload_id": payload.get("id"), "error": str(e)}, CHANNEL)
        return {"status": "ok", "message": "Processing error logged"}


@wc_router.post("/product-updated", dependencies=[Depends(verify_webhook_signature)])
async def product_updated_webhook(request: Request, services: ServiceContainer = Depends(get_services)):
    """Изменение товара в WooCommerce: сбрасываем кеш конфигураций скидок."""
    payload = await _read_payload(request)
    if payload is None:
        return {"status": "ok", "message": "Empty or invalid payload."}

    product_id = payload.get("id")
    if not product_id:
        return {"status": "ok", "message": "Product ID not found in payload"}

    services.calculator.clear_config_cache()
    logger.info(f"Discount config cache invalidated after update of product ID: {product_id}")
    return {"status": "ok", "message": f"Cache invalidated for product {product_id}"}
