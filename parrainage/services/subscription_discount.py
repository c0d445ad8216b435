# parrainage/services/subscription_discount.py

import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

from parrainage.core import constants as c
from parrainage.core import events
from parrainage.core.audit import audit_log
from parrainage.core.config import settings
from parrainage.core.events import EventBus
from parrainage.core.exceptions import DiscountApplicationError, RecordNotFoundError
from parrainage.schemas.discount import DiscountCalculation, DiscountOperationResult
from parrainage.services.notification import NotificationService
from parrainage.services.record_store import RecordHandle, RecordStore
from parrainage.utils.dates import discount_end_date, parse_datetime, to_iso, utcnow

logger = logging.getLogger(__name__)

CHANNEL = "subscription-discount-manager"

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _failure(error: Exception | str, error_type: str, parrain_id: int | None = None) -> DiscountOperationResult:
    return DiscountOperationResult(success=False, parrain_id=parrain_id, error=str(error), error_type=error_type)


class SubscriptionDiscountManager:
    """
    Применение и снятие скидки parrain на абонементе.
    Обе операции идемпотентны: повторный вызов не меняет цену второй раз.
    """

    def __init__(
        self,
        store: RecordStore,
        event_bus: EventBus,
        notifier: NotificationService | None = None,
        duration_months: int | None = None,
        grace_days: int | None = None,
    ):
        self.store = store
        self.event_bus = event_bus
        self.notifier = notifier
        self.duration_months = duration_months if duration_months is not None else settings.PARRAINAGE_DISCOUNT_DURATION_MONTHS
        self.grace_days = grace_days if grace_days is not None else settings.PARRAINAGE_DISCOUNT_GRACE_DAYS

    # --- Применение ---

    def apply_discount(
        self,
        parrain_id: int,
        discount: DiscountCalculation | Decimal,
        filleul_subscription_id: int,
        filleul_order_id: int,
    ) -> DiscountOperationResult:
        try:
            amount = to_money(discount.discount_amount if isinstance(discount, DiscountCalculation) else discount)
            if amount <= 0:
                return _failure(f"Discount amount must be positive, got {amount}", "validation", parrain_id)

            parrain = self.store.get(parrain_id)
            if parrain is None:
                raise RecordNotFoundError(f"Parrain subscription {parrain_id} not found")

            if parrain.get_meta(c.META_DISCOUNT_ACTIVE) and parrain.get_meta(c.META_DISCOUNT_STATUS) in c.OPEN_DISCOUNT_STATUSES:
                audit_log.info(
                    "Discount already active, apply skipped",
                    {"parrain_id": parrain_id, "status": parrain.get_meta(c.META_DISCOUNT_STATUS),
                     "filleul_id": parrain.get_meta(c.META_DISCOUNT_FILLEUL_ID)},
                    CHANNEL,
                )
                return DiscountOperationResult(
                    success=True,
                    noop=True,
                    reason="discount_already_active",
                    parrain_id=parrain_id,
                    discount_amount=self._meta_money(parrain, c.META_DISCOUNT_AMOUNT),
                    new_price=parrain.get_total(),
                )

            # Исходная цена фиксируется один раз на линию скидки
            captured = parrain.get_meta(c.META_ORIGINAL_PRICE)
            if captured is None:
                original_price = to_money(parrain.get_total())
                parrain.update_meta(c.META_ORIGINAL_PRICE, str(original_price))
                parrain.update_meta(c.META_ORIGINAL_PRICE_DATE, to_iso(utcnow()))
            else:
                original_price = to_money(captured)

            start = utcnow()
            end_date = discount_end_date(start, self.duration_months, self.grace_days)
            parrain.update_meta(c.META_DISCOUNT_ACTIVE, True)
            parrain.update_meta(c.META_DISCOUNT_STATUS, c.DISCOUNT_APPLIED)
            parrain.update_meta(c.META_DISCOUNT_AMOUNT, str(amount))
            parrain.update_meta(c.META_DISCOUNT_START, to_iso(start))
            parrain.update_meta(c.META_DISCOUNT_END_DATE, to_iso(end_date))
            parrain.update_meta(c.META_DISCOUNT_FILLEUL_ID, filleul_subscription_id)
            parrain.update_meta(c.META_DISCOUNT_FILLEUL_ORDER_ID, filleul_order_id)

            # Новая цена и запись о скидке попадают в БД одним коммитом внутри update_subscription_price
            new_price = max(Decimal("0.00"), to_money(original_price - amount))
            self.update_subscription_price(parrain, new_price)

            parrain.add_note(
                f"Remise parrainage appliquée : -{amount}€/mois (Filleul #{filleul_subscription_id}, "
                f"Commande #{filleul_order_id}) - Fin prévue : {end_date.strftime('%d/%m/%Y')}"
            )

            result = DiscountOperationResult(
                success=True,
                parrain_id=parrain_id,
                original_price=original_price,
                discount_amount=amount,
                new_price=new_price,
                end_date=end_date,
            )
            audit_log.info(
                "Parrain discount applied",
                {**result.model_dump(mode="json"), "filleul_id": filleul_subscription_id, "filleul_order_id": filleul_order_id},
                CHANNEL,
            )
            self.event_bus.emit(events.DISCOUNT_APPLIED, {
                "parrain_id": parrain_id,
                "filleul_id": filleul_subscription_id,
                "filleul_order_id": filleul_order_id,
                "discount_amount": str(amount),
                "new_price": str(new_price),
                "end_date": to_iso(end_date),
            })
            self._notify_applied(parrain_id, discount, result, filleul_subscription_id, filleul_order_id)
            return result

        except RecordNotFoundError as e:
            audit_log.error("Apply discount failed: parrain not found", {"parrain_id": parrain_id}, CHANNEL)
            return _failure(e, "not_found", parrain_id)
        except DiscountApplicationError as e:
            audit_log.error("Apply discount failed", {"parrain_id": parrain_id, "error": str(e)}, CHANNEL)
            return _failure(e, "application", parrain_id)
        except Exception as e:
            self.store.db.rollback()
            logger.error(f"Unexpected error while applying discount to subscription {parrain_id}", exc_info=True)
            audit_log.error("Apply discount failed with system error", {"parrain_id": parrain_id, "error": str(e)}, CHANNEL)
            return _failure(e, "system", parrain_id)

    def _notify_applied(self, parrain_id, discount, result: DiscountOperationResult, filleul_id, filleul_order_id) -> None:
        if self.notifier is None:
            return
        data: Dict[str, Any] = {
            "filleul_subscription_id": filleul_id,
            "filleul_order_id": filleul_order_id,
            "discount_amount": str(result.discount_amount),
            "new_price": str(result.new_price),
            "end_date": result.end_date.strftime("%d/%m/%Y") if result.end_date else None,
        }
        if isinstance(discount, DiscountCalculation):
            data["formatted_amount"] = discount.formatted_amount
        try:
            if not self.notifier.send_discount_applied(parrain_id, data):
                audit_log.warning("Discount applied notification not delivered", {"parrain_id": parrain_id}, CHANNEL)
        except Exception as e:
            # Уведомление не должно откатывать изменение цены
            audit_log.warning("Discount applied notification failed", {"parrain_id": parrain_id, "error": str(e)}, CHANNEL)

    # --- Снятие ---

    def remove_discount(self, parrain_id: int, filleul_id: int | None = None, reason: str = "expired") -> DiscountOperationResult:
        try:
            parrain = self.store.get(parrain_id)
            if parrain is None:
                raise RecordNotFoundError(f"Parrain subscription {parrain_id} not found")

            status = parrain.get_meta(c.META_DISCOUNT_STATUS)
            if not parrain.get_meta(c.META_DISCOUNT_ACTIVE) or status not in c.OPEN_DISCOUNT_STATUSES:
                audit_log.info("No active discount to remove", {"parrain_id": parrain_id, "status": status}, CHANNEL)
                return DiscountOperationResult(success=True, noop=True, reason="no_active_discount", parrain_id=parrain_id)

            record_filleul = parrain.get_meta(c.META_DISCOUNT_FILLEUL_ID)
            if filleul_id and record_filleul and int(record_filleul) != int(filleul_id):
                # Задача от предыдущей линии скидки не должна закрывать текущую
                audit_log.warning(
                    "Remove skipped: discount belongs to another filleul",
                    {"parrain_id": parrain_id, "requested_filleul": filleul_id, "record_filleul": record_filleul},
                    CHANNEL,
                )
                return DiscountOperationResult(success=True, noop=True, reason="filleul_mismatch", parrain_id=parrain_id)

            original_raw = parrain.get_meta(c.META_ORIGINAL_PRICE)
            original_price = to_money(original_raw) if original_raw is not None else None
            current_discount = self._meta_money(parrain, c.META_DISCOUNT_AMOUNT)
            previous_price = parrain.get_total()

            if status in c.PRICE_REDUCED_STATUSES:
                if original_price is None:
                    raise DiscountApplicationError(f"Original price missing on subscription {parrain_id}")
                self.update_subscription_price(parrain, original_price)
            # Для suspended цена уже восстановлена при приостановке

            now = utcnow()
            parrain.delete_meta(c.META_DISCOUNT_ACTIVE)
            parrain.update_meta(c.META_DISCOUNT_STATUS, c.DISCOUNT_EXPIRED)
            parrain.update_meta(c.META_DISCOUNT_REMOVED_DATE, to_iso(now))
            parrain.update_meta(c.META_DISCOUNT_REMOVAL_REASON, reason)
            if original_price is not None:
                parrain.update_meta(c.META_LAST_ORIGINAL_PRICE, str(original_price))
            parrain.delete_meta(c.META_ORIGINAL_PRICE)
            parrain.delete_meta(c.META_ORIGINAL_PRICE_DATE)
            parrain.save()

            parrain.add_note(
                f"Remise parrainage terminée (Filleul #{record_filleul}, motif : {reason}) - "
                f"Prix restauré : {parrain.get_total()}€/mois (était : {previous_price}€/mois)"
            )

            result = DiscountOperationResult(
                success=True,
                reason=reason,
                parrain_id=parrain_id,
                original_price=original_price,
                discount_amount=current_discount,
                new_price=parrain.get_total(),
            )
            audit_log.info("Parrain discount removed", {**result.model_dump(mode="json"), "previous_status": status}, CHANNEL)
            self.event_bus.emit(events.DISCOUNT_REMOVED, {
                "parrain_id": parrain_id,
                "filleul_id": record_filleul,
                "reason": reason,
                "restored_price": str(parrain.get_total()),
            })
            return result

        except RecordNotFoundError as e:
            audit_log.error("Remove discount failed: parrain not found", {"parrain_id": parrain_id}, CHANNEL)
            return _failure(e, "not_found", parrain_id)
        except DiscountApplicationError as e:
            audit_log.error("Remove discount failed", {"parrain_id": parrain_id, "error": str(e)}, CHANNEL)
            return _failure(e, "application", parrain_id)
        except Exception as e:
            logger.error(f"Unexpected error while removing discount from subscription {parrain_id}", exc_info=True)
            audit_log.error("Remove discount failed with system error", {"parrain_id": parrain_id, "error": str(e)}, CHANNEL)
            return _failure(e, "system", parrain_id)

    # --- Изменение цены ---

    def update_subscription_price(self, record: RecordHandle, new_total) -> Decimal:
        """
        Записывает новую цену в строки абонемента и пересчитывает итог.
        Несколько строк: цена распределяется пропорционально, round(item * new / old, 2).
        Остаток от округления не перераспределяется, сумма строк может отличаться на копейки.
        Возвращает итог после пересчета.
        """
        new_total = to_money(new_total)
        if new_total < 0:
            raise DiscountApplicationError(f"Negative price {new_total} for record {record.get_id()}")

        items = record.get_items()
        if not items:
            raise DiscountApplicationError(f"Record {record.get_id()} has no line items")

        old_total = record.get_total()
        if len(items) == 1:
            record.set_item_total(items[0], new_total, new_total)
        else:
            items_total = sum((Decimal(str(item.total or 0)) for item in items), Decimal("0"))
            if items_total <= 0:
                raise DiscountApplicationError(f"Cannot allocate price on record {record.get_id()}: items total is {items_total}")
            ratio = new_total / items_total
            for item in items:
                item_total = to_money(Decimal(str(item.total or 0)) * ratio)
                record.set_item_total(item, item_total, item_total)

        final_total = record.calculate_totals()
        record.save()

        logger.info(f"Price of record {record.get_id()} updated: {old_total} -> {final_total}")
        self.event_bus.emit(events.SUBSCRIPTION_PRICE_UPDATED, {
            "subscription_id": record.get_id(),
            "old_total": str(old_total),
            "new_total": str(final_total),
            "items": [
                {"id": item.id, "wc_item_id": item.wc_item_id, "product_id": item.product_id, "total": str(item.total)}
                for item in record.get_items()
            ],
        })
        return final_total

    # --- Обслуживание ---

    def check_expired_discounts(self) -> Dict[str, Any]:
        """Снимает открытые скидки, у которых прошла дата окончания."""
        now = utcnow()
        total_expired = processed = errors = 0

        for subscription_id in self.store.find_ids_by_meta(c.META_DISCOUNT_ACTIVE, True, kind="subscription"):
            record = self.store.get(subscription_id)
            if record is None:
                continue
            end_date = parse_datetime(record.get_meta(c.META_DISCOUNT_END_DATE))
            if end_date is None or end_date >= now:
                continue

            total_expired += 1
            result = self.remove_discount(subscription_id, record.get_meta(c.META_DISCOUNT_FILLEUL_ID), reason="expired")
            if result.success:
                processed += 1
            else:
                errors += 1

        stats = {
            "total_expired": total_expired,
            "successfully_processed": processed,
            "errors": errors,
            "check_time": to_iso(now),
        }
        audit_log.info("Expired discounts check finished", stats, CHANNEL)
        return stats

    def get_active_discounts_stats(self) -> Dict[str, Any]:
        now = utcnow()
        by_status: Dict[str, int] = {}
        total_monthly_discount = Decimal("0.00")
        expiring_soon = 0

        for subscription_id in self.store.find_ids_by_meta(c.META_DISCOUNT_ACTIVE, True, kind="subscription"):
            record = self.store.get(subscription_id)
            if record is None:
                continue
            status = record.get_meta(c.META_DISCOUNT_STATUS) or "unknown"
            by_status[status] = by_status.get(status, 0) + 1
            if status in c.PRICE_REDUCED_STATUSES:
                total_monthly_discount += self._meta_money(record, c.META_DISCOUNT_AMOUNT) or Decimal("0")
            end_date = parse_datetime(record.get_meta(c.META_DISCOUNT_END_DATE))
            if end_date and now <= end_date <= now + timedelta(days=30):
                expiring_soon += 1

        return {
            "active_discounts": sum(by_status.values()),
            "by_status": by_status,
            "total_monthly_discount": str(total_monthly_discount),
            "expiring_within_30_days": expiring_soon,
            "generated_at": to_iso(now),
        }

    @staticmethod
    def _meta_money(record: RecordHandle, key: str) -> Decimal | None:
        value = record.get_meta(key)
        return to_money(value) if value is not None else None
