# tests/test_webhooks.py

import base64
import hashlib
import hmac
import json
from decimal import Decimal

from httpx import AsyncClient

from parrainage.core import constants as c
from parrainage.core.config import settings
from parrainage.core.scheduler import PROCESS_DISCOUNT_HOOK

ORDER_PAYLOAD = {
    "id": 9001,
    "status": "processing",
    "customer_id": 2,
    "currency": "EUR",
    "total": "25.00",
    "line_items": [{"id": 90010, "product_id": 500, "quantity": 1, "subtotal": "25.00", "total": "25.00"}],
    "meta_data": [
        {"id": 1, "key": "_billing_parrain_code", "value": "4521"},
        {"id": 2, "key": "_some_plugin_flag", "value": "x"},
    ],
}


def subscription_payload(status: str, subscription_id: int = 9100, parent_id: int = 9001) -> dict:
    return {
        "id": subscription_id,
        "status": status,
        "customer_id": 2,
        "parent_id": parent_id,
        "currency": "EUR",
        "total": "25.00",
        "line_items": [{"id": 91000, "product_id": 500, "quantity": 1, "total": "25.00"}],
        "meta_data": [],
    }


async def test_order_created_marks_order(client: AsyncClient, services, configure_product, make_record, fake_scheduler):
    configure_product(500, "percentage", "0.10", standard_price="35.00")
    make_record(4521, "subscription", "active", "30.00", customer_id=1)

    response = await client.post("/internal/webhooks/order-created", json=ORDER_PAYLOAD)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["marked"] is True

    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_PENDING
    assert order.get_meta(c.META_PENDING_DISCOUNT) == "4521"
    assert order.get_meta(c.META_STANDARD_PRICE) == "35.00"
    assert order.get_meta("_some_plugin_flag") is None
    # Пометка ничего не планирует
    assert fake_scheduler.calls == []


async def test_redelivered_order_webhook_keeps_workflow(client: AsyncClient, services, configure_product, fake_scheduler):
    configure_product(500)
    await client.post("/internal/webhooks/order-created", json=ORDER_PAYLOAD)
    await client.post("/internal/webhooks/subscription-updated", json=subscription_payload("active"))
    assert services.store.get(9001).get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_SCHEDULED

    response = await client.post("/internal/webhooks/order-created", json=ORDER_PAYLOAD)

    assert response.json()["marked"] is False
    assert services.store.get(9001).get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_SCHEDULED


async def test_order_without_code(client: AsyncClient, services):
    payload = {**ORDER_PAYLOAD, "id": 9010, "meta_data": []}

    response = await client.post("/internal/webhooks/order-created", json=payload)

    assert response.status_code == 200
    assert "no referral code" in response.json()["message"]
    assert services.store.get(9010).get_meta(c.META_WORKFLOW_STATUS) is None


async def test_invalid_payloads_are_acknowledged(client: AsyncClient):
    bad_json = await client.post(
        "/internal/webhooks/order-created", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    ping = await client.post("/internal/webhooks/subscription-updated", content=b"")
    no_id = await client.post("/internal/webhooks/order-created", json={"status": "processing"})

    for response in (bad_json, ping, no_id):
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


async def test_activation_schedules_discount(client: AsyncClient, services, configure_product, fake_scheduler):
    configure_product(500, standard_price="35.00")
    await client.post("/internal/webhooks/order-created", json=ORDER_PAYLOAD)

    created = await client.post("/internal/webhooks/subscription-updated", json=subscription_payload("pending"))
    activated = await client.post("/internal/webhooks/subscription-updated", json=subscription_payload("active"))
    repeated = await client.post("/internal/webhooks/subscription-updated", json=subscription_payload("active"))

    assert created.status_code == 200
    # Новый абонемент получает зафиксированную стандартную цену с заказа
    assert services.store.get(9100).get_meta(c.META_STANDARD_PRICE) == "35.00"

    assert activated.json()["scheduled"] is True
    assert activated.json()["previous_status"] == "pending"
    assert "unchanged" in repeated.json()["message"]
    calls = fake_scheduler.calls_for(PROCESS_DISCOUNT_HOOK)
    assert len(calls) == 1
    assert calls[0]["args"] == [9001, 9100, 1]


async def test_cancellation_suspends_parrain_discount(client: AsyncClient, services, referral_setup):
    services.processor.mark_parrainage_order(9001)
    services.processor.schedule_parrain_discount(9100)
    services.processor.process_parrain_discount(9001, 9100, 1)
    assert services.store.get(4521).get_total() == Decimal("27.00")

    cancelled = await client.post("/internal/webhooks/subscription-updated", json=subscription_payload("cancelled"))

    assert cancelled.json()["suspension"] is True
    assert services.store.get(4521).get_total() == Decimal("30.00")

    reactivated = await client.post("/internal/webhooks/subscription-updated", json=subscription_payload("active"))

    assert reactivated.json()["reactivation"] is True
    assert reactivated.json()["scheduled"] is False
    assert services.store.get(4521).get_total() == Decimal("27.00")


async def test_paid_renewal_is_tracked(client: AsyncClient, services, referral_setup):
    services.filleul_expiration.store_standard_price(9001)

    paid = await client.post(
        "/internal/webhooks/subscription-renewal",
        json={"id": 9600, "status": "completed", "subscription_id": 9100},
    )
    via_meta = await client.post(
        "/internal/webhooks/subscription-renewal",
        json={"id": 9601, "status": "processing", "meta_data": [{"key": "_subscription_renewal", "value": "9100"}]},
    )
    unpaid = await client.post(
        "/internal/webhooks/subscription-renewal",
        json={"id": 9602, "status": "failed", "subscription_id": 9100},
    )

    assert paid.json()["facturation_count"] == 1
    assert via_meta.json()["facturation_count"] == 2
    assert "not paid" in unpaid.json()["message"]
    assert services.store.get(9100).get_meta(c.META_BILLING_COUNT) == 2


async def test_product_update_clears_config_cache(client: AsyncClient, services, mocker):
    spy = mocker.spy(services.calculator, "clear_config_cache")

    response = await client.post("/internal/webhooks/product-updated", json={"id": 500})

    assert response.status_code == 200
    spy.assert_called_once()


async def test_signature_is_verified(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "WP_WEBHOOK_SECRET", "wc-secret")
    body = json.dumps({"id": 500}).encode()
    signature = base64.b64encode(hmac.new(b"wc-secret", body, hashlib.sha256).digest()).decode()

    rejected = await client.post(
        "/internal/webhooks/product-updated",
        content=body,
        headers={"Content-Type": "application/json", "X-WC-Webhook-Signature": "forged"},
    )
    accepted = await client.post(
        "/internal/webhooks/product-updated",
        content=body,
        headers={"Content-Type": "application/json", "X-WC-Webhook-Signature": signature},
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 200
