# parrainage/services/discount_processor.py

import logging
import re
from datetime import datetime, timedelta
from typing import List

from sqlalchemy.exc import SQLAlchemyError

from parrainage.core import constants as c
from parrainage.core import events
from parrainage.core.audit import audit_log
from parrainage.core.config import settings
from parrainage.core.events import EventBus
from parrainage.core.exceptions import ParrainageError, RecordNotFoundError, TransientInfrastructureError
from parrainage.core.scheduler import (
    DelayedTaskScheduler,
    END_DISCOUNT_HOOK,
    PROCESS_DISCOUNT_HOOK,
    RETRY_DISCOUNT_HOOK,
)
from parrainage.schemas.discount import DiscountCalculation, DiscountOperationResult, ProcessingResult
from parrainage.services.discount_calculator import DiscountCalculator
from parrainage.services.discount_validator import DiscountValidator
from parrainage.services.record_store import RecordHandle, RecordStore
from parrainage.services.subscription_discount import SubscriptionDiscountManager
from parrainage.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)

CHANNEL = "discount-processor"

REFERRAL_CODE_PATTERN = re.compile(r"^\d{4}$")

# Время последнего запуска отложенной обработки, для проверки здоровья планировщика
last_processing_run: dict = {"at": None}


class NoEligibleProductError(ParrainageError):
    """Ни один товар заказа не дает права на скидку parrain."""


class DiscountProcessor:
    """
    Асинхронный сценарий скидки parrain:
    пометка заказа -> планирование при активации абонемента filleul ->
    отложенная обработка с повторами -> плановое окончание скидки.
    Повторные и устаревшие задачи отсекаются метками на заказе.
    """

    def __init__(
        self,
        store: RecordStore,
        validator: DiscountValidator,
        calculator: DiscountCalculator,
        discount_manager: SubscriptionDiscountManager,
        scheduler: DelayedTaskScheduler,
        event_bus: EventBus,
        simulation_mode: bool | None = None,
    ):
        self.store = store
        self.validator = validator
        self.calculator = calculator
        self.discount_manager = discount_manager
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.simulation_mode = settings.PARRAINAGE_SIMULATION_MODE if simulation_mode is None else simulation_mode

    # --- Этап 1: пометка при оформлении ---

    def mark_parrainage_order(self, order_id: int) -> bool:
        """Только локальная запись на заказе, никаких внешних вызовов."""
        try:
            order = self.store.get(order_id)
            if order is None:
                return False

            code = str(order.get_meta(c.META_REFERRAL_CODE) or "").strip()
            if not code:
                return False
            if not REFERRAL_CODE_PATTERN.match(code):
                audit_log.warning("Malformed referral code, order not marked", {"order_id": order_id, "code": code}, CHANNEL)
                return False

            marked_at = to_iso(utcnow())
            order.update_meta(c.META_PENDING_DISCOUNT, code)
            order.update_meta(c.META_WORKFLOW_STATUS, c.WORKFLOW_PENDING)
            order.update_meta(c.META_MARKED_DATE, marked_at)
            order.save()

            audit_log.info(
                "Order marked for deferred parrain discount",
                {"order_id": order_id, "parrain_code": code, "marked_at": marked_at},
                CHANNEL,
            )
            return True
        except Exception as e:
            logger.error(f"Failed to mark order {order_id} for parrainage", exc_info=True)
            audit_log.error("Order marking failed", {"order_id": order_id, "error": str(e)}, CHANNEL)
            return False

    # --- Этап 2: планирование при активации абонемента filleul ---

    def schedule_parrain_discount(self, subscription_id: int) -> bool:
        try:
            subscription = self.store.get(subscription_id)
            if subscription is None:
                return False
            order = self.store.get(subscription.get_parent_id())
            if order is None:
                return False
            if not order.get_meta(c.META_PENDING_DISCOUNT) or order.get_meta(c.META_WORKFLOW_STATUS) != c.WORKFLOW_PENDING:
                return False

            run_at = utcnow() + timedelta(seconds=max(0, settings.PARRAINAGE_ASYNC_DELAY_SECONDS))
            scheduled = self.scheduler.schedule(run_at, PROCESS_DISCOUNT_HOOK, [order.get_id(), subscription_id, 1])
            if not scheduled:
                self.handle_cron_failure(order, subscription_id)
                return False

            order.update_meta(c.META_SCHEDULED_TIME, to_iso(run_at))
            order.update_meta(c.META_WORKFLOW_STATUS, c.WORKFLOW_SCHEDULED)
            order.save()

            audit_log.info(
                "Parrain discount scheduled",
                {"filleul_order_id": order.get_id(), "filleul_subscription_id": subscription_id,
                 "scheduled_time": to_iso(run_at), "delay_seconds": settings.PARRAINAGE_ASYNC_DELAY_SECONDS},
                CHANNEL,
            )
            return True
        except Exception as e:
            logger.error(f"Failed to schedule parrain discount for subscription {subscription_id}", exc_info=True)
            audit_log.error("Discount scheduling failed", {"subscription_id": subscription_id, "error": str(e)}, CHANNEL)
            return False

    def handle_cron_failure(self, order: RecordHandle, subscription_id: int) -> None:
        """Задачу не удалось поставить: заказ ждет ручного вмешательства, немедленного запуска нет."""
        audit_log.error(
            "Delayed task could not be scheduled",
            {"order_id": order.get_id(), "subscription_id": subscription_id,
             "recommendation": "Check scheduler job store and requeue the order"},
            CHANNEL,
        )
        order.update_meta(c.META_WORKFLOW_STATUS, c.WORKFLOW_CRON_FAILED)
        order.update_meta(c.META_CRON_FAILURE_DATE, to_iso(utcnow()))
        order.save()
        self.event_bus.emit(events.CRON_FAILURE, {"order_id": order.get_id(), "subscription_id": subscription_id})

    # --- Этап 3: отложенная обработка ---

    def process_parrain_discount(self, order_id: int, subscription_id: int, attempt: int = 1) -> ProcessingResult:
        last_processing_run["at"] = utcnow()
        audit_log.info(
            "Deferred parrain discount processing started",
            {"order_id": order_id, "subscription_id": subscription_id, "attempt": attempt},
            CHANNEL,
        )

        try:
            skip_reason = self._check_processing_conditions(order_id, subscription_id)
            if skip_reason:
                return ProcessingResult(
                    success=True, order_id=order_id, subscription_id=subscription_id,
                    attempt=attempt, skipped=True, reason=skip_reason,
                )

            order = self.store.get(order_id)
            parrain_id = int(str(order.get_meta(c.META_REFERRAL_CODE)).strip())
            product_ids = [item.product_id for item in order.get_items()]

            eligible_products = []
            for product_id in product_ids:
                eligibility = self.validator.validate_discount_eligibility(parrain_id, order_id, product_id)
                audit_log.debug(
                    "Product eligibility",
                    {"product_id": product_id, "is_eligible": eligibility.is_eligible, "errors": eligibility.errors},
                    CHANNEL,
                )
                if eligibility.is_eligible:
                    eligible_products.append(product_id)

            if not eligible_products:
                audit_log.error(
                    "No eligible product for parrain discount",
                    {"order_id": order_id, "product_ids": product_ids, "parrain_id": parrain_id},
                    CHANNEL,
                )
                raise NoEligibleProductError("No eligible product for parrain discount")

            parrain = self.store.get(parrain_id)
            current_price = parrain.get_total() if parrain else 0
            calculations: List[DiscountCalculation] = []
            for product_id in eligible_products:
                calculation = self.calculator.calculate_parrain_discount(product_id, current_price, parrain_id)
                if calculation is not None:
                    calculations.append(calculation)

            if not calculations:
                raise RuntimeError("Discount calculation failed for all eligible products")

            if self.simulation_mode:
                status = self._store_simulation(order, calculations)
            else:
                status = self._apply(order, parrain_id, subscription_id, calculations[0])

            order.update_meta(c.META_WORKFLOW_STATUS, status)
            order.update_meta(c.META_PROCESSED, to_iso(utcnow()))
            try:
                order.save()
            except SQLAlchemyError as e:
                raise TransientInfrastructureError(f"Workflow state of order {order_id} could not be saved") from e
            self.cleanup_temporary_metadata(order)

            self.event_bus.emit(events.DISCOUNT_PROCESSED, {
                "order_id": order_id,
                "subscription_id": subscription_id,
                "status": status,
                "calculations": [calc.model_dump(mode="json") for calc in calculations],
            })
            audit_log.info(
                "Deferred parrain discount processing finished",
                {"order_id": order_id, "subscription_id": subscription_id, "status": status, "attempt": attempt},
                CHANNEL,
            )
            return ProcessingResult(
                success=status != c.WORKFLOW_APPLICATION_FAILED,
                order_id=order_id, subscription_id=subscription_id, attempt=attempt,
                status=status, calculations=calculations,
            )

        except Exception as e:
            return self.handle_processing_error(order_id, subscription_id, attempt, e)

    def _check_processing_conditions(self, order_id: int, subscription_id: int) -> str | None:
        """Причина пропуска задачи или None, если задачу нужно выполнить."""
        subscription = self.store.get(subscription_id)
        if subscription is None or subscription.get_status() != "active":
            audit_log.warning(
                "Filleul subscription not active, processing abandoned",
                {"subscription_id": subscription_id, "status": subscription.get_status() if subscription else "not_found"},
                CHANNEL,
            )
            return "filleul_not_active"

        order = self.store.get(order_id)
        if order is None:
            raise RecordNotFoundError(f"Filleul order {order_id} not found")
        if order.get_meta(c.META_PROCESSED) or order.get_meta(c.META_CALCULATED) or order.get_meta(c.META_APPLIED):
            audit_log.info("Discount already processed, processing abandoned", {"order_id": order_id}, CHANNEL)
            return "already_processed"
        return None

    def _store_simulation(self, order: RecordHandle, calculations: List[DiscountCalculation]) -> str:
        now = to_iso(utcnow())
        order.update_meta(c.META_CALCULATED_DISCOUNTS, [calc.model_dump(mode="json") for calc in calculations])
        order.update_meta(c.META_CALCULATION_DATE, now)
        order.update_meta(c.META_CALCULATED, now)
        for calc in calculations:
            order.add_note(f"Remise parrain calculée : {calc.discount_amount} {calc.currency} (simulation)")
        return c.WORKFLOW_SIMULATED

    def _apply(self, order: RecordHandle, parrain_id: int, subscription_id: int, calculation: DiscountCalculation) -> str:
        result: DiscountOperationResult = self.discount_manager.apply_discount(
            parrain_id, calculation, subscription_id, order.get_id()
        )
        if not result.success:
            if result.error_type == "system":
                # Сбой хранилища: путь повторов, затем error и оповещение администратора
                raise TransientInfrastructureError(
                    f"Discount application for parrain {parrain_id} failed: {result.error}"
                )
            order.update_meta(c.META_APPLICATION_ERROR, result.error or "unknown")
            return c.WORKFLOW_APPLICATION_FAILED

        if result.end_date is not None:
            self._schedule_end(order, parrain_id, subscription_id, result.end_date)
        order.update_meta(c.META_APPLIED, to_iso(utcnow()))
        return c.WORKFLOW_APPLIED

    def _schedule_end(self, order: RecordHandle, parrain_id: int, subscription_id: int, end_date: datetime) -> None:
        if self.scheduler.schedule(end_date, END_DISCOUNT_HOOK, [parrain_id, subscription_id]):
            order.update_meta(c.META_END_SCHEDULED, to_iso(end_date))
        else:
            # Ежедневная проверка истекших скидок снимет ее и без этой задачи
            audit_log.warning(
                "End of discount could not be scheduled",
                {"order_id": order.get_id(), "parrain_id": parrain_id, "end_date": to_iso(end_date)},
                CHANNEL,
            )

    def cleanup_temporary_metadata(self, order: RecordHandle) -> None:
        order.delete_meta(c.META_PENDING_DISCOUNT)
        order.delete_meta(c.META_SCHEDULED_TIME)
        order.update_meta(c.META_CLEANUP_DATE, to_iso(utcnow()))
        order.save()
        audit_log.debug("Temporary metadata cleaned", {"order_id": order.get_id()}, CHANNEL)

    # --- Повторы и ошибки ---

    def retry_failed_discount(self, order_id: int, subscription_id: int, attempt: int, previous_error: str | None = None) -> ProcessingResult:
        audit_log.info(
            "Retrying parrain discount processing",
            {"order_id": order_id, "subscription_id": subscription_id, "attempt": attempt, "previous_error": previous_error},
            CHANNEL,
        )
        return self.process_parrain_discount(order_id, subscription_id, attempt)

    def handle_processing_error(self, order_id: int, subscription_id: int, attempt: int, error: Exception) -> ProcessingResult:
        logger.error(f"Parrain discount processing failed for order {order_id} (attempt {attempt})", exc_info=error)
        audit_log.error(
            "Deferred parrain discount processing error",
            {"order_id": order_id, "subscription_id": subscription_id, "attempt": attempt, "error": str(error)},
            CHANNEL,
        )
        # Сессия могла остаться в состоянии ошибки после сбоя записи
        self.store.db.rollback()

        if attempt < settings.PARRAINAGE_MAX_RETRY:
            retry_at = utcnow() + timedelta(seconds=settings.PARRAINAGE_RETRY_DELAY_SECONDS)
            scheduled = self.scheduler.schedule(
                retry_at, RETRY_DISCOUNT_HOOK, [order_id, subscription_id, attempt + 1, str(error)]
            )
            audit_log.info(
                "Retry scheduled for parrain discount" if scheduled else "Retry could not be scheduled",
                {"order_id": order_id, "retry_attempt": attempt + 1, "retry_time": to_iso(retry_at)},
                CHANNEL,
            )
            if scheduled:
                return ProcessingResult(
                    success=False, order_id=order_id, subscription_id=subscription_id,
                    attempt=attempt, reason="retry_scheduled", error=str(error),
                )

        order = self.store.get(order_id)
        if order is not None:
            order.update_meta(c.META_WORKFLOW_STATUS, c.WORKFLOW_ERROR)
            order.update_meta(c.META_FINAL_ERROR, str(error))
            order.save()

        self.event_bus.emit(events.PROCESSING_FAILED, {
            "order_id": order_id,
            "subscription_id": subscription_id,
            "attempt": attempt,
            "error": str(error),
        })
        return ProcessingResult(
            success=False, order_id=order_id, subscription_id=subscription_id,
            attempt=attempt, status=c.WORKFLOW_ERROR, reason="max_retries_reached", error=str(error),
        )

    # --- Окончание и ручное вмешательство ---

    def end_parrain_discount(self, parrain_id: int, filleul_id: int) -> DiscountOperationResult:
        audit_log.info("Scheduled end of parrain discount", {"parrain_id": parrain_id, "filleul_id": filleul_id}, CHANNEL)
        return self.discount_manager.remove_discount(parrain_id, filleul_id, reason="expired")

    def requeue_order(self, order_id: int) -> bool:
        """Оператор возвращает заказ в error/cron_failed/application_failed к повторной обработке."""
        order = self.store.get(order_id)
        if order is None:
            return False
        status = order.get_meta(c.META_WORKFLOW_STATUS)
        if status not in c.REQUEUE_ALLOWED_STATUSES:
            audit_log.warning("Order not eligible for requeue", {"order_id": order_id, "status": status}, CHANNEL)
            return False

        code = order.get_meta(c.META_PENDING_DISCOUNT) or order.get_meta(c.META_REFERRAL_CODE)
        order.update_meta(c.META_PENDING_DISCOUNT, str(code))
        order.update_meta(c.META_WORKFLOW_STATUS, c.WORKFLOW_PENDING)
        order.update_meta(c.META_REQUEUED_DATE, to_iso(utcnow()))
        order.delete_meta(c.META_FINAL_ERROR)
        order.delete_meta(c.META_CRON_FAILURE_DATE)
        # Иначе отложенная обработка примет заказ за уже обработанный
        order.delete_meta(c.META_PROCESSED)
        order.delete_meta(c.META_APPLICATION_ERROR)
        order.save()
        audit_log.info("Order requeued by operator", {"order_id": order_id, "previous_status": status}, CHANNEL)

        subscriptions = self.store.subscriptions_for_order(order_id)
        if not subscriptions:
            return True
        return self.schedule_parrain_discount(subscriptions[0].get_id())
