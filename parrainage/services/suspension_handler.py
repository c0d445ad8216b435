# parrainage/services/suspension_handler.py

import logging
import time
from decimal import Decimal
from typing import List

from parrainage.core import constants as c
from parrainage.core import events
from parrainage.core.audit import audit_log
from parrainage.core.events import EventBus
from parrainage.schemas.discount import LifecycleResult, StepResult
from parrainage.services.notification import NotificationService
from parrainage.services.record_store import RecordHandle, RecordStore
from parrainage.services.subscription_discount import SubscriptionDiscountManager, to_money
from parrainage.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)

CHANNEL = "suspension-handler"


class SuspensionHandler:
    """
    Приостановка скидки: снимок состояния, возврат цены без скидки,
    статус suspended и заметка. Каждый шаг возвращает StepResult,
    при первой неудаче обработка прерывается.
    """

    def __init__(
        self,
        store: RecordStore,
        discount_manager: SubscriptionDiscountManager,
        event_bus: EventBus,
        notifier: NotificationService | None = None,
    ):
        self.store = store
        self.discount_manager = discount_manager
        self.event_bus = event_bus
        self.notifier = notifier

    def process_suspension(self, parrain_id: int, filleul_id: int, filleul_new_status: str) -> LifecycleResult:
        started = time.monotonic()
        steps: List[StepResult] = []
        context = {"parrain_id": parrain_id, "filleul_id": filleul_id, "filleul_new_status": filleul_new_status}
        audit_log.info("Suspension processing started", context, CHANNEL)

        def fail(step: StepResult) -> LifecycleResult:
            steps.append(step)
            audit_log.error("Suspension processing failed", {**context, "step": step.step, "error": step.error}, CHANNEL)
            return LifecycleResult(
                success=False, action="suspension", filleul_id=filleul_id, parrain_id=parrain_id,
                reason=step.step, error=step.error, error_type="handler", steps=steps,
            )

        parrain = self.store.get(parrain_id)
        if parrain is None:
            return fail(StepResult(success=False, step="load_parrain", error=f"Parrain subscription {parrain_id} not found"))

        state = self._capture_state(parrain)
        if not state.success:
            return fail(state)
        steps.append(state)

        restoration = self._restore_undiscounted_price(parrain, state.data["price_without_discount"])
        if not restoration.success:
            return fail(restoration)
        steps.append(restoration)

        metadata = self._write_suspension_metadata(parrain, filleul_new_status, state)
        if not metadata.success:
            return fail(metadata)
        steps.append(metadata)

        parrain.add_note(
            f"Remise parrainage suspendue : abonnement filleul #{filleul_id} passé en '{filleul_new_status}'. "
            f"Prix restauré : {restoration.data['new_price']}€/mois (remise de {state.data['discount_amount']}€ mise en attente)"
        )

        self.event_bus.emit(events.DISCOUNT_SUSPENDED, {
            "parrain_id": parrain_id,
            "filleul_id": filleul_id,
            "cause": filleul_new_status,
            "discount_amount": state.data["discount_amount"],
            "restored_price": restoration.data["new_price"],
        })
        if self.notifier is not None:
            self.notifier.send_discount_suspended(parrain_id, filleul_id)

        execution_ms = round((time.monotonic() - started) * 1000, 2)
        audit_log.info("Suspension processing succeeded", {**context, "execution_time_ms": execution_ms}, CHANNEL)
        return LifecycleResult(success=True, action="suspension", filleul_id=filleul_id, parrain_id=parrain_id, steps=steps)

    def _capture_state(self, parrain: RecordHandle) -> StepResult:
        try:
            current_total = to_money(parrain.get_total())
            discount_raw = parrain.get_meta(c.META_DISCOUNT_AMOUNT)
            discount_amount = to_money(discount_raw) if discount_raw is not None else Decimal("0.00")

            # Точная цена до скидки, если она зафиксирована; иначе текущая цена + скидка
            original_raw = parrain.get_meta(c.META_ORIGINAL_PRICE)
            if original_raw is not None:
                price_without_discount = to_money(original_raw)
            else:
                price_without_discount = to_money(current_total + discount_amount)

            if price_without_discount <= 0:
                return StepResult(success=False, step="capture_state", error=f"Invalid undiscounted price {price_without_discount}")

            return StepResult(success=True, step="capture_state", data={
                "current_total_with_discount": str(current_total),
                "discount_amount": str(discount_amount),
                "price_without_discount": str(price_without_discount),
            })
        except Exception as e:
            logger.error(f"Failed to capture discount state of subscription {parrain.get_id()}", exc_info=True)
            return StepResult(success=False, step="capture_state", error=str(e))

    def _restore_undiscounted_price(self, parrain: RecordHandle, price_without_discount: str) -> StepResult:
        try:
            new_total = self.discount_manager.update_subscription_price(parrain, Decimal(price_without_discount))
            return StepResult(success=True, step="restore_price", data={"new_price": str(new_total)})
        except Exception as e:
            logger.error(f"Failed to restore undiscounted price on subscription {parrain.get_id()}", exc_info=True)
            return StepResult(success=False, step="restore_price", error=str(e))

    def _write_suspension_metadata(self, parrain: RecordHandle, cause: str, state: StepResult) -> StepResult:
        try:
            now = to_iso(utcnow())
            parrain.update_meta(c.META_SUSPENDED_DISCOUNT, state.data["discount_amount"])
            parrain.update_meta(c.META_PRICE_BEFORE_SUSPENSION, state.data["price_without_discount"])
            parrain.update_meta(c.META_DISCOUNTED_TOTAL_AT_SUSPENSION, state.data["current_total_with_discount"])
            parrain.update_meta(c.META_SUSPENSION_DATE, now)
            parrain.update_meta(c.META_SUSPENSION_CAUSE, cause)
            parrain.update_meta(c.META_DISCOUNT_STATUS, c.DISCOUNT_SUSPENDED)
            parrain.save()
            return StepResult(success=True, step="update_metadata", data={"suspension_date": now})
        except Exception as e:
            logger.error(f"Failed to write suspension metadata on subscription {parrain.get_id()}", exc_info=True)
            parrain.discard_changes()
            parrain.db.rollback()
            return StepResult(success=False, step="update_metadata", error=str(e))
