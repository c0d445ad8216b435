# parrainage/services/suspension_validator.py

import logging

from parrainage.core import constants as c
from parrainage.core.audit import audit_log
from parrainage.schemas.discount import ValidationReport
from parrainage.services.record_store import RecordStore

logger = logging.getLogger(__name__)

CHANNEL = "suspension-validator"

PARRAIN_SUSPENDABLE_STATUSES = ("active", "on-hold")
SUSPENDABLE_DISCOUNT_STATUSES = (c.DISCOUNT_APPLIED, c.DISCOUNT_REACTIVATED, c.DISCOUNT_ACTIVE_LEGACY)


class SuspensionValidator:
    """Проверяет, можно ли приостановить скидку parrain из-за смены статуса filleul."""

    def __init__(self, store: RecordStore):
        self.store = store

    def is_trigger_status(self, status: str | None) -> bool:
        return status in c.SUSPENSION_TRIGGER_STATUSES

    def validate_suspension_eligibility(self, filleul_id: int, parrain_id: int | None, new_status: str) -> ValidationReport:
        report = ValidationReport(is_valid=True, parrain_id=parrain_id, filleul_id=filleul_id)
        report.details["new_status"] = new_status

        try:
            if not self.is_trigger_status(new_status):
                self._reject(report, "status_not_suspension_trigger")

            filleul = self.store.get(filleul_id)
            if filleul is None:
                self._reject(report, "filleul_not_found")
            elif filleul.get_status() != new_status:
                # Запись могла обновиться позже события - это не повод отказывать
                report.warnings.append("filleul_status_mismatch")
                report.details["filleul_current_status"] = filleul.get_status()

            parrain = self.store.get(parrain_id) if parrain_id else None
            if parrain is None:
                self._reject(report, "parrain_not_found")
            else:
                parrain_status = parrain.get_status()
                report.details["parrain_status"] = parrain_status
                if parrain_status not in PARRAIN_SUSPENDABLE_STATUSES:
                    self._reject(report, "parrain_invalid_status")

                discount_status = parrain.get_meta(c.META_DISCOUNT_STATUS)
                report.details["discount_status"] = discount_status
                if discount_status == c.DISCOUNT_SUSPENDED:
                    self._reject(report, "already_suspended")
                elif discount_status not in SUSPENDABLE_DISCOUNT_STATUSES or not parrain.get_meta(c.META_DISCOUNT_ACTIVE):
                    self._reject(report, "discount_not_active")

                record_filleul = parrain.get_meta(c.META_DISCOUNT_FILLEUL_ID)
                report.details["record_filleul_id"] = record_filleul
                if record_filleul is not None and int(record_filleul) != int(filleul_id):
                    self._reject(report, "filleul_mismatch")

            if parrain_id and int(parrain_id) == int(filleul_id):
                self._reject(report, "self_reference")

        except Exception as e:
            logger.error(f"Unexpected error during suspension validation for filleul {filleul_id}", exc_info=True)
            self._reject(report, "validation_exception")
            report.details["exception"] = str(e)

        if report.errors:
            report.reason = report.errors[0]

        level = audit_log.info if report.is_valid else audit_log.warning
        level(
            "Suspension eligibility checked",
            {"filleul_id": filleul_id, "parrain_id": parrain_id, "is_valid": report.is_valid,
             "errors": report.errors, "warnings": report.warnings},
            CHANNEL,
        )
        return report

    @staticmethod
    def _reject(report: ValidationReport, code: str) -> None:
        report.is_valid = False
        report.errors.append(code)
