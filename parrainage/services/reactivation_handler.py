# parrainage/services/reactivation_handler.py

import logging
from decimal import Decimal

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

CHANNEL = "reactivation-handler"


class ReactivationHandler:
    """Возвращает скидку по снимку, сделанному при приостановке, и удаляет снимок."""

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

    def process_reactivation(self, parrain_id: int, filleul_id: int) -> LifecycleResult:
        steps = []
        context = {"parrain_id": parrain_id, "filleul_id": filleul_id}
        audit_log.info("Reactivation processing started", context, CHANNEL)

        def fail(step: StepResult) -> LifecycleResult:
            steps.append(step)
            audit_log.error("Reactivation processing failed", {**context, "step": step.step, "error": step.error}, CHANNEL)
            return LifecycleResult(
                success=False, action="reactivation", filleul_id=filleul_id, parrain_id=parrain_id,
                reason=step.step, error=step.error, error_type="handler", steps=steps,
            )

        parrain = self.store.get(parrain_id)
        if parrain is None:
            return fail(StepResult(success=False, step="load_parrain", error=f"Parrain subscription {parrain_id} not found"))

        price = self._compute_price(parrain)
        if not price.success:
            return fail(price)
        steps.append(price)

        try:
            new_total = self.discount_manager.update_subscription_price(parrain, Decimal(price.data["new_price"]))
        except Exception as e:
            logger.error(f"Failed to apply reactivated price on subscription {parrain_id}", exc_info=True)
            return fail(StepResult(success=False, step="apply_price", error=str(e)))
        steps.append(StepResult(success=True, step="apply_price", data={"new_price": str(new_total)}))

        metadata = self._write_reactivation_metadata(parrain)
        if not metadata.success:
            return fail(metadata)
        steps.append(metadata)

        parrain.add_note(
            f"Remise parrainage réactivée : abonnement filleul #{filleul_id} de nouveau actif. "
            f"Nouveau prix : {new_total}€/mois (remise de {price.data['discount_amount']}€)"
        )

        self.event_bus.emit(events.DISCOUNT_REACTIVATED, {
            "parrain_id": parrain_id,
            "filleul_id": filleul_id,
            "discount_amount": price.data["discount_amount"],
            "new_price": str(new_total),
        })
        if self.notifier is not None:
            self.notifier.send_discount_reactivated(parrain_id, filleul_id)

        audit_log.info("Reactivation processing succeeded", {**context, "new_price": str(new_total)}, CHANNEL)
        return LifecycleResult(success=True, action="reactivation", filleul_id=filleul_id, parrain_id=parrain_id, steps=steps)

    def _compute_price(self, parrain: RecordHandle) -> StepResult:
        try:
            base_price = to_money(parrain.get_meta(c.META_PRICE_BEFORE_SUSPENSION))
            discount_amount = to_money(parrain.get_meta(c.META_SUSPENDED_DISCOUNT))
            new_price = max(Decimal("0.00"), base_price - discount_amount)
            return StepResult(success=True, step="compute_price", data={
                "price_before_suspension": str(base_price),
                "discount_amount": str(discount_amount),
                "new_price": str(new_price),
            })
        except Exception as e:
            return StepResult(success=False, step="compute_price", error=str(e))

    def _write_reactivation_metadata(self, parrain: RecordHandle) -> StepResult:
        try:
            now = to_iso(utcnow())
            parrain.update_meta(c.META_DISCOUNT_STATUS, c.DISCOUNT_REACTIVATED)
            parrain.update_meta(c.META_REACTIVATION_DATE, now)
            for key in c.SNAPSHOT_KEYS:
                parrain.delete_meta(key)
            parrain.save()
            return StepResult(success=True, step="update_metadata", data={"reactivation_date": now})
        except Exception as e:
            logger.error(f"Failed to write reactivation metadata on subscription {parrain.get_id()}", exc_info=True)
            parrain.discard_changes()
            parrain.db.rollback()
            return StepResult(success=False, step="update_metadata", error=str(e))
