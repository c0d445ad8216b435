# parrainage/services/reactivation_validator.py

import logging
from decimal import Decimal, InvalidOperation

from parrainage.core import constants as c
from parrainage.core.audit import audit_log
from parrainage.schemas.discount import ValidationReport
from parrainage.services.record_store import RecordStore

logger = logging.getLogger(__name__)

CHANNEL = "reactivation-validator"

PRICE_TOLERANCE = Decimal("0.01")
REQUIRED_SNAPSHOT_KEYS = (c.META_SUSPENDED_DISCOUNT, c.META_PRICE_BEFORE_SUSPENSION, c.META_SUSPENSION_DATE)


class ReactivationValidator:
    """Проверяет, можно ли вернуть приостановленную скидку parrain."""

    def __init__(self, store: RecordStore):
        self.store = store

    def validate_reactivation_eligibility(self, filleul_id: int, parrain_id: int | None, new_status: str) -> ValidationReport:
        report = ValidationReport(is_valid=True, parrain_id=parrain_id, filleul_id=filleul_id)
        report.details["new_status"] = new_status

        try:
            if new_status != c.REACTIVATION_TRIGGER_STATUS:
                self._reject(report, "status_not_active")

            if self.store.get(filleul_id) is None:
                self._reject(report, "filleul_not_found")

            parrain = self.store.get(parrain_id) if parrain_id else None
            if parrain is None:
                self._reject(report, "parrain_not_found")
            else:
                report.details["parrain_status"] = parrain.get_status()
                if parrain.get_status() != "active":
                    self._reject(report, "parrain_not_active")

                discount_status = parrain.get_meta(c.META_DISCOUNT_STATUS)
                report.details["discount_status"] = discount_status
                if discount_status != c.DISCOUNT_SUSPENDED or not parrain.get_meta(c.META_DISCOUNT_ACTIVE):
                    self._reject(report, "discount_not_suspended")

                missing = [key for key in REQUIRED_SNAPSHOT_KEYS if parrain.get_meta(key) in (None, "")]
                if missing:
                    self._reject(report, "incomplete_snapshot")
                    report.details["missing_snapshot_fields"] = missing
                else:
                    self._check_price_tolerance(parrain.get_total(), parrain.get_meta(c.META_PRICE_BEFORE_SUSPENSION), report)

        except Exception as e:
            logger.error(f"Unexpected error during reactivation validation for filleul {filleul_id}", exc_info=True)
            self._reject(report, "validation_exception")
            report.details["exception"] = str(e)

        if report.errors:
            report.reason = report.errors[0]

        level = audit_log.info if report.is_valid else audit_log.warning
        level(
            "Reactivation eligibility checked",
            {"filleul_id": filleul_id, "parrain_id": parrain_id, "is_valid": report.is_valid,
             "errors": report.errors, "warnings": report.warnings},
            CHANNEL,
        )
        return report

    def _check_price_tolerance(self, current_total: Decimal, snapshot_price, report: ValidationReport) -> None:
        """Ручная правка цены во время паузы допустима, только предупреждаем."""
        try:
            expected = Decimal(str(snapshot_price))
        except (InvalidOperation, TypeError):
            self._reject(report, "incomplete_snapshot")
            return
        difference = abs(Decimal(str(current_total)) - expected)
        report.details["price_difference"] = str(difference)
        if difference > PRICE_TOLERANCE:
            report.warnings.append("price_mismatch")
            audit_log.warning(
                "Current price differs from suspension snapshot",
                {"parrain_id": report.parrain_id, "current_total": str(current_total),
                 "snapshot_price": str(expected), "difference": str(difference)},
                CHANNEL,
            )

    @staticmethod
    def _reject(report: ValidationReport, code: str) -> None:
        report.is_valid = False
        report.errors.append(code)
