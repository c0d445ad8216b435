# parrainage/services/discount_validator.py

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Tuple

from parrainage.core.audit import audit_log
from parrainage.core.config import settings
from parrainage.core import constants as c
from parrainage.schemas.discount import EligibilityResult
from parrainage.services.discount_calculator import DiscountCalculator, SUPPORTED_DISCOUNT_TYPES
from parrainage.services.record_store import RecordStore, RecordHandle

logger = logging.getLogger(__name__)

CHANNEL = "discount-validator"

PARRAIN_VALID_STATUSES = ("active", "pending")
FILLEUL_ORDER_VALID_STATUSES = ("processing", "completed", "active")


def has_open_discount(parrain: RecordHandle) -> bool:
    """Открыта ли у абонемента parrain линия скидки (применена, приостановлена или возобновлена)."""
    return bool(parrain.get_meta(c.META_DISCOUNT_ACTIVE)) and parrain.get_meta(c.META_DISCOUNT_STATUS) in c.OPEN_DISCOUNT_STATUSES


class DiscountValidator:
    """
    Проверка права на скидку parrain. Все проверки независимы, ошибки накапливаются.
    Ожидаемая неприменимость никогда не бросает исключение.
    Результаты кешируются на экземпляре по (parrain, заказ, товар),
    поэтому валидатор создается на один запрос или одну задачу.
    """

    def __init__(self, store: RecordStore, calculator: DiscountCalculator, max_discounts_per_parrain: int | None = None):
        self.store = store
        self.calculator = calculator
        self.max_discounts_per_parrain = max_discounts_per_parrain or settings.PARRAINAGE_MAX_DISCOUNTS_PER_PARRAIN
        self._cache: Dict[Tuple[int, int, int], EligibilityResult] = {}

    def validate_discount_eligibility(self, parrain_id: int, filleul_order_id: int, product_id: int) -> EligibilityResult:
        cache_key = (int(parrain_id or 0), int(filleul_order_id or 0), int(product_id or 0))
        if cache_key in self._cache:
            return self._cache[cache_key]

        result = EligibilityResult(is_eligible=True)
        try:
            parrain = self.store.get(parrain_id)
            order = self.store.get(filleul_order_id)

            self._check_parrain(parrain, parrain_id, result)
            self._check_filleul_order(order, filleul_order_id, result)
            self._check_product(product_id, result)
            self._check_business_rules(parrain, order, parrain_id, result)

            audit_log.info(
                "Discount eligibility validated",
                {
                    "parrain_id": parrain_id,
                    "filleul_order_id": filleul_order_id,
                    "product_id": product_id,
                    "is_eligible": result.is_eligible,
                    "errors": result.errors,
                    "warnings_count": len(result.warnings),
                },
                CHANNEL,
            )
        except Exception as e:
            logger.error(f"Unexpected error during eligibility validation for parrain {parrain_id}", exc_info=True)
            result.is_eligible = False
            result.errors.append("validation_exception")
            result.details["exception"] = str(e)
            audit_log.error(
                "System error during eligibility validation",
                {"parrain_id": parrain_id, "filleul_order_id": filleul_order_id, "product_id": product_id, "error": str(e)},
                CHANNEL,
            )

        self._cache[cache_key] = result
        return result

    def clear_validation_cache(self) -> None:
        self._cache.clear()
        audit_log.debug("Validation cache cleared", channel=CHANNEL)

    # --- Отдельные проверки ---

    def _fail(self, result: EligibilityResult, code: str) -> None:
        result.is_eligible = False
        result.errors.append(code)

    def _check_parrain(self, parrain: RecordHandle | None, parrain_id: int, result: EligibilityResult) -> None:
        if parrain is None or parrain.get_kind() != "subscription":
            self._fail(result, "parrain_not_found")
            result.details["parrain_id"] = parrain_id
            return

        status = parrain.get_status()
        if status not in PARRAIN_VALID_STATUSES:
            self._fail(result, "parrain_invalid_status")
        elif status == "pending":
            result.warnings.append("parrain_subscription_pending")

        if has_open_discount(parrain):
            self._fail(result, "discount_already_applied")

        result.details["parrain_status"] = status
        result.details["parrain_total"] = str(parrain.get_total())
        result.details["existing_discount_status"] = parrain.get_meta(c.META_DISCOUNT_STATUS)

    def _check_filleul_order(self, order: RecordHandle | None, order_id: int, result: EligibilityResult) -> None:
        if order is None:
            self._fail(result, "filleul_order_not_found")
            result.details["filleul_order_id"] = order_id
            return

        status = order.get_status()
        if status not in FILLEUL_ORDER_VALID_STATUSES:
            self._fail(result, "filleul_order_invalid_status")

        code = order.get_meta(c.META_REFERRAL_CODE)
        if not code or not str(code).strip():
            self._fail(result, "missing_referral_code")

        result.details["order_status"] = status
        result.details["parrain_code"] = code
        result.details["order_total"] = str(order.get_total())

    def _check_product(self, product_id: int, result: EligibilityResult) -> None:
        config = self.calculator.get_product_config(int(product_id)) if product_id else None
        if config is None:
            self._fail(result, "product_not_configured")
            result.details["product_id"] = product_id
            return

        if config.discount_type not in SUPPORTED_DISCOUNT_TYPES:
            self._fail(result, "invalid_discount_type")
        try:
            Decimal(str(config.discount_value))
        except (InvalidOperation, TypeError):
            self._fail(result, "invalid_discount_value")

        result.details["discount_type"] = config.discount_type
        result.details["discount_value"] = str(config.discount_value)

    def _check_business_rules(self, parrain: RecordHandle | None, order: RecordHandle | None, parrain_id: int, result: EligibilityResult) -> None:
        parrain_customer = parrain.get_customer_id() if parrain else None
        filleul_customer = order.get_customer_id() if order else None
        if parrain_customer and filleul_customer and parrain_customer == filleul_customer:
            self._fail(result, "self_referral")

        active_count = self.count_active_discounts_for_parrain(parrain_id)
        if active_count >= self.max_discounts_per_parrain:
            self._fail(result, "max_discounts_reached")

        result.details["parrain_customer_id"] = parrain_customer
        result.details["filleul_customer_id"] = filleul_customer
        result.details["active_discounts_count"] = active_count
        result.details["max_discounts_allowed"] = self.max_discounts_per_parrain

    def count_active_discounts_for_parrain(self, parrain_id: int) -> int:
        """
        Количество одновременно действующих скидок parrain: заказы filleul со статусом applied,
        линия скидки которых все еще открыта на абонементе parrain.
        Закрытые линии (истекшие, снятые) в лимит не входят.
        """
        parrain = self.store.get(parrain_id)
        if parrain is None or not has_open_discount(parrain):
            return 0

        open_order_id = parrain.get_meta(c.META_DISCOUNT_FILLEUL_ORDER_ID)
        if open_order_id is None:
            return 0

        order_ids = self.store.find_ids_by_meta(c.META_REFERRAL_CODE, str(parrain_id), kind="order")
        applied_ids = set(self.store.find_ids_by_meta(c.META_WORKFLOW_STATUS, c.WORKFLOW_APPLIED, kind="order"))
        return len([
            order_id for order_id in order_ids
            if order_id in applied_ids and int(order_id) == int(open_order_id)
        ])
