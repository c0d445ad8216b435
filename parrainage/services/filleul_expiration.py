# parrainage/services/filleul_expiration.py

import logging
from decimal import Decimal
from typing import Any, Dict

from parrainage.core import constants as c
from parrainage.core import events
from parrainage.core.audit import audit_log
from parrainage.core.config import settings
from parrainage.core.events import EventBus
from parrainage.services.discount_calculator import DiscountCalculator
from parrainage.services.record_store import RecordHandle, RecordStore
from parrainage.services.subscription_discount import SubscriptionDiscountManager, to_money
from parrainage.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)

CHANNEL = "filleul-discount-expiration"

EXPIRED_FLAG = "yes"


class FilleulExpirationManager:
    """
    Скидка самого filleul: после N успешных оплат абонемент возвращается к стандартной цене.
    Два входа (оплата продления и ежедневная проверка) ведут в один
    идемпотентный переход expire_filleul_discount.
    """

    def __init__(
        self,
        store: RecordStore,
        calculator: DiscountCalculator,
        discount_manager: SubscriptionDiscountManager,
        event_bus: EventBus,
        billing_cycles: int | None = None,
    ):
        self.store = store
        self.calculator = calculator
        self.discount_manager = discount_manager
        self.event_bus = event_bus
        self.billing_cycles = billing_cycles or settings.FILLEUL_DISCOUNT_BILLING_CYCLES

    # --- Фиксация стандартной цены ---

    def store_standard_price(self, order_id: int) -> bool:
        """При оформлении заказа filleul запоминает стандартную цену на заказе и абонементе."""
        order = self.store.get(order_id)
        if order is None or not order.get_meta(c.META_REFERRAL_CODE):
            return False
        if order.get_meta(c.META_STANDARD_PRICE) is not None:
            return False

        try:
            standard_price = self._standard_price_from_config(order)
            subscriptions = self.store.subscriptions_for_order(order_id)

            if standard_price is None:
                fallback = subscriptions[0].get_total() if subscriptions else order.get_total()
                standard_price = to_money(fallback)
                audit_log.warning(
                    "Standard price not configured, falling back to current total",
                    {"order_id": order_id, "fallback_price": str(standard_price)},
                    CHANNEL,
                )

            order.update_meta(c.META_STANDARD_PRICE, str(standard_price))
            order.save()

            for subscription in subscriptions[:1]:
                self._init_counter(subscription, standard_price)

            audit_log.info(
                "Filleul standard price stored",
                {"order_id": order_id, "standard_price": str(standard_price),
                 "subscription_id": subscriptions[0].get_id() if subscriptions else None},
                CHANNEL,
            )
            return True
        except Exception as e:
            logger.error(f"Failed to store standard price for order {order_id}", exc_info=True)
            audit_log.error("Filleul standard price storage failed", {"order_id": order_id, "error": str(e)}, CHANNEL)
            return False

    def initialize_subscription(self, subscription_id: int) -> bool:
        """Абонемент мог прийти позже заказа: переносим зафиксированную цену с родительского заказа."""
        subscription = self.store.get(subscription_id)
        if subscription is None or subscription.get_meta(c.META_STANDARD_PRICE) is not None:
            return False
        order = self.store.get(subscription.get_parent_id())
        if order is None or order.get_meta(c.META_STANDARD_PRICE) is None:
            return False

        self._init_counter(subscription, to_money(order.get_meta(c.META_STANDARD_PRICE)))
        audit_log.info(
            "Filleul counter initialized from parent order",
            {"subscription_id": subscription_id, "order_id": order.get_id()},
            CHANNEL,
        )
        return True

    def _init_counter(self, subscription: RecordHandle, standard_price: Decimal) -> None:
        subscription.update_meta(c.META_STANDARD_PRICE, str(standard_price))
        subscription.update_meta(c.META_FIRST_BILLING_DATE, to_iso(utcnow()))
        subscription.update_meta(c.META_BILLING_COUNT, 0)
        subscription.save()

    def _standard_price_from_config(self, order: RecordHandle) -> Decimal | None:
        total = Decimal("0")
        for item in order.get_items():
            config = self.calculator.get_product_config(item.product_id)
            if config is None or config.standard_price is None:
                continue
            total += Decimal(str(config.standard_price)) * (item.quantity or 1)
        return to_money(total) if total > 0 else None

    # --- Счетчик оплат ---

    def is_filleul(self, subscription: RecordHandle) -> bool:
        if subscription.get_meta(c.META_STANDARD_PRICE) is not None or subscription.get_meta(c.META_REFERRAL_CODE):
            return True
        parent = self.store.get(subscription.get_parent_id())
        return bool(parent and parent.get_meta(c.META_REFERRAL_CODE))

    def track_renewal(self, subscription_id: int) -> Dict[str, Any]:
        subscription = self.store.get(subscription_id)
        if subscription is None or not self.is_filleul(subscription):
            return {"tracked": False, "reason": "not_filleul"}
        if subscription.get_meta(c.META_FILLEUL_DISCOUNT_EXPIRED) == EXPIRED_FLAG:
            return {"tracked": False, "reason": "already_expired"}

        try:
            count = int(subscription.get_meta(c.META_BILLING_COUNT) or 0) + 1
            subscription.update_meta(c.META_BILLING_COUNT, count)
            subscription.save()
            audit_log.info("Filleul billing tracked", {"subscription_id": subscription_id, "facturation_count": count}, CHANNEL)

            expired = False
            if count >= self.billing_cycles:
                expired = self.expire_filleul_discount(subscription, count)
            return {"tracked": True, "facturation_count": count, "expired": expired}
        except Exception as e:
            logger.error(f"Failed to track renewal of subscription {subscription_id}", exc_info=True)
            audit_log.error("Filleul billing tracking failed", {"subscription_id": subscription_id, "error": str(e)}, CHANNEL)
            return {"tracked": False, "reason": "error", "error": str(e)}

    def check_filleul_expirations(self) -> Dict[str, Any]:
        """Ежедневная страховка на случай пропущенного события продления."""
        audit_log.info("Daily filleul expiration check started", channel=CHANNEL)
        checked = expired = 0

        for subscription_id in self.store.find_ids_by_meta(c.META_STANDARD_PRICE, kind="subscription"):
            subscription = self.store.get(subscription_id)
            if subscription is None or subscription.get_status() != "active":
                continue
            if subscription.get_meta(c.META_FILLEUL_DISCOUNT_EXPIRED) == EXPIRED_FLAG:
                continue
            checked += 1
            count = int(subscription.get_meta(c.META_BILLING_COUNT) or 0)
            if count >= self.billing_cycles and self.expire_filleul_discount(subscription, count):
                expired += 1

        stats = {"checked": checked, "expired": expired, "check_time": to_iso(utcnow())}
        audit_log.info("Daily filleul expiration check finished", stats, CHANNEL)
        return stats

    def expire_filleul_discount(self, subscription: RecordHandle, facturation_count: int) -> bool:
        """Единственный переход в состояние "скидка filleul истекла". Повторный вызов ничего не делает."""
        subscription_id = subscription.get_id()
        if subscription.get_meta(c.META_FILLEUL_DISCOUNT_EXPIRED) == EXPIRED_FLAG:
            return False

        try:
            standard_raw = subscription.get_meta(c.META_STANDARD_PRICE)
            standard_price = to_money(standard_raw) if standard_raw is not None else None
            if standard_price is None or standard_price <= 0:
                standard_price = self._standard_price_from_config(subscription)
                audit_log.warning(
                    "Historical standard price missing, using current configuration",
                    {"subscription_id": subscription_id, "fallback_price": str(standard_price)},
                    CHANNEL,
                )
            if standard_price is None or standard_price <= 0:
                raise ValueError(f"Standard price not found for subscription {subscription_id}")

            price_before = subscription.get_total()
            self.discount_manager.update_subscription_price(subscription, standard_price)

            expiration_date = to_iso(utcnow())
            subscription.update_meta(c.META_FILLEUL_DISCOUNT_EXPIRED, EXPIRED_FLAG)
            subscription.update_meta(c.META_FILLEUL_EXPIRATION_DATE, expiration_date)
            subscription.save()

            subscription.add_note(
                f"Remise filleul expirée après {facturation_count} facturations. "
                f"Prix modifié : {price_before}€ → {standard_price}€"
            )
            audit_log.info(
                "Filleul discount expired",
                {"subscription_id": subscription_id, "facturation_count": facturation_count,
                 "price_before": str(price_before), "price_after": str(standard_price)},
                CHANNEL,
            )
            self.event_bus.emit(events.FILLEUL_DISCOUNT_EXPIRED, {
                "subscription_id": subscription_id,
                "facturation_count": facturation_count,
                "price_before": str(price_before),
                "price_after": str(standard_price),
                "expiration_date": expiration_date,
            })
            return True
        except Exception as e:
            logger.error(f"Failed to expire filleul discount on subscription {subscription_id}", exc_info=True)
            audit_log.error(
                "Filleul discount expiration failed",
                {"subscription_id": subscription_id, "facturation_count": facturation_count, "error": str(e)},
                CHANNEL,
            )
            return False
