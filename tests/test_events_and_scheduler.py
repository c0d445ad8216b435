# tests/test_events_and_scheduler.py

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx

from parrainage.clients.woocommerce import WooCommerceClient
from parrainage.core import events
from parrainage.core.events import EventBus
from parrainage.core.scheduler import PROCESS_DISCOUNT_HOOK, DelayedTaskScheduler
from parrainage.services.woocommerce_sync import PriceSync, register_listeners
from parrainage.tasks_registry import register_hooks


def test_listener_failure_does_not_reach_emitter():
    bus = EventBus()
    received = []

    def broken(payload):
        raise RuntimeError("listener down")

    bus.subscribe(events.DISCOUNT_APPLIED, broken)
    bus.subscribe(events.DISCOUNT_APPLIED, received.append)

    assert bus.emit(events.DISCOUNT_APPLIED, {"parrain_id": 4521}) == 2
    assert received == [{"parrain_id": 4521}]


def test_subscribe_is_idempotent_and_unsubscribe_works():
    bus = EventBus()
    listener = MagicMock()
    bus.subscribe(events.DISCOUNT_REMOVED, listener)
    bus.subscribe(events.DISCOUNT_REMOVED, listener)

    assert bus.emit(events.DISCOUNT_REMOVED) == 1
    bus.unsubscribe(events.DISCOUNT_REMOVED, listener)
    assert bus.emit(events.DISCOUNT_REMOVED) == 0
    listener.assert_called_once_with({})


def test_async_listener_runs_without_loop():
    bus = EventBus()
    listener = AsyncMock()
    bus.subscribe(events.CRON_FAILURE, listener)

    bus.emit(events.CRON_FAILURE, {"order_id": 9001})

    listener.assert_awaited_once_with({"order_id": 9001})


async def test_async_listener_is_scheduled_on_running_loop():
    bus = EventBus()
    listener = AsyncMock()
    bus.subscribe(events.CRON_FAILURE, listener)

    bus.emit(events.CRON_FAILURE, {"order_id": 9001})
    await asyncio.sleep(0)

    listener.assert_awaited_once_with({"order_id": 9001})


def test_scheduler_rejects_unknown_hook():
    backend = MagicMock()
    task_scheduler = DelayedTaskScheduler(backend)

    assert task_scheduler.schedule(datetime.now(timezone.utc), "unknown_hook", [1]) is False
    backend.add_job.assert_not_called()


def test_scheduler_adds_date_job_for_registered_hook():
    backend = MagicMock()
    task_scheduler = DelayedTaskScheduler(backend)
    register_hooks(task_scheduler)
    run_at = datetime.now(timezone.utc) + timedelta(minutes=5)

    assert task_scheduler.schedule(run_at, PROCESS_DISCOUNT_HOOK, [9001, 9100, 1]) is True

    kwargs = backend.add_job.call_args.kwargs
    assert backend.add_job.call_args.args[1] == "date"
    assert kwargs["run_date"] == run_at
    assert kwargs["args"] == [9001, 9100, 1]
    assert kwargs["id"] == f"{PROCESS_DISCOUNT_HOOK}:9001:9100:1"
    assert kwargs["replace_existing"] is True


def test_scheduler_reports_backend_failure():
    backend = MagicMock()
    backend.add_job.side_effect = RuntimeError("job store unavailable")
    task_scheduler = DelayedTaskScheduler(backend)
    register_hooks(task_scheduler)

    assert task_scheduler.schedule(datetime.now(timezone.utc), PROCESS_DISCOUNT_HOOK, [9001, 9100, 1]) is False


async def test_price_sync_pushes_line_items():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": 4521})

    client = WooCommerceClient("http://shop.test", "api", "secret", transport=httpx.MockTransport(handler))
    sync = PriceSync(client)

    await sync.on_price_updated({
        "subscription_id": 4521,
        "new_total": "27.00",
        "items": [
            {"id": 1, "wc_item_id": 45210, "product_id": 500, "total": "27.00"},
            {"id": 2, "wc_item_id": None, "product_id": 501, "total": "0.00"},
        ],
    })
    await client.close()

    assert len(requests) == 1
    assert requests[0].method == "PUT"
    assert requests[0].url.path.endswith("/wc/v3/subscriptions/4521")
    assert json.loads(requests[0].content) == {
        "line_items": [{"id": 45210, "total": "27.00", "subtotal": "27.00"}],
    }


async def test_price_sync_failure_is_logged_not_raised():
    client = WooCommerceClient("http://shop.test", "api", "secret", transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    sync = PriceSync(client)

    await sync.on_price_updated({"subscription_id": 4521, "items": [{"wc_item_id": 45210, "total": "27.00"}]})
    await client.close()


def test_register_listeners_subscribes_price_sync():
    bus = EventBus()
    client = AsyncMock()
    register_listeners(bus, sync=PriceSync(client))
    items = [{"wc_item_id": 45210, "total": "27.00"}]

    assert bus.emit(events.SUBSCRIPTION_PRICE_UPDATED, {"subscription_id": 4521, "items": items}) == 1
    client.update_subscription_items.assert_awaited_once_with(4521, items)
