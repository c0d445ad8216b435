# parrainage/services/reactivation_manager.py

import logging
from typing import Dict

from parrainage.core import constants as c
from parrainage.core.audit import audit_log
from parrainage.schemas.discount import LifecycleResult
from parrainage.services.reactivation_handler import ReactivationHandler
from parrainage.services.reactivation_validator import ReactivationValidator
from parrainage.services.record_store import RecordStore
from parrainage.services.suspension_manager import SessionStats

logger = logging.getLogger(__name__)

CHANNEL = "reactivation-manager"

reactivation_stats = SessionStats()


class ReactivationManager:
    """Связывает валидатор и обработчик возобновления, считает попытки."""

    def __init__(
        self,
        store: RecordStore,
        validator: ReactivationValidator,
        handler: ReactivationHandler,
        stats: SessionStats | None = None,
    ):
        self.store = store
        self.validator = validator
        self.handler = handler
        self.stats = stats if stats is not None else reactivation_stats

    def handle_subscription_reactivation(self, filleul_id: int, new_status: str = c.REACTIVATION_TRIGGER_STATUS) -> LifecycleResult | None:
        if new_status != c.REACTIVATION_TRIGGER_STATUS:
            return None

        parrain_id = self.store.find_parrain_for_filleul(filleul_id)
        if parrain_id is None:
            return None

        parrain = self.store.get(parrain_id)
        # Первая активация filleul: скидки еще нет, возобновлять нечего
        if parrain is None or parrain.get_meta(c.META_DISCOUNT_STATUS) != c.DISCOUNT_SUSPENDED:
            audit_log.debug(
                "Parrain discount is not suspended, reactivation not needed",
                {"filleul_id": filleul_id, "parrain_id": parrain_id},
                CHANNEL,
            )
            return None

        result = self.orchestrate_reactivation(parrain_id, filleul_id, new_status)
        audit_log.info(
            "Automatic reactivation triggered by status change",
            {"filleul_id": filleul_id, "parrain_id": parrain_id,
             "result": "SUCCESS" if result.success else "FAILED", "reason": result.reason},
            CHANNEL,
        )
        return result

    def orchestrate_reactivation(self, parrain_id: int, filleul_id: int, new_status: str = c.REACTIVATION_TRIGGER_STATUS) -> LifecycleResult:
        self.stats.attempted += 1
        try:
            validation = self.validator.validate_reactivation_eligibility(filleul_id, parrain_id, new_status)
            if not validation.is_valid:
                self.stats.validation_failures += 1
                return LifecycleResult(
                    success=False, action="reactivation", filleul_id=filleul_id, parrain_id=parrain_id,
                    reason=validation.reason, error_type="validation", validation=validation,
                )

            result = self.handler.process_reactivation(parrain_id, filleul_id)
            result.validation = validation
            if result.success:
                self.stats.successful += 1
            else:
                self.stats.failed += 1
            return result

        except Exception as e:
            self.stats.failed += 1
            logger.error(f"Unexpected error during reactivation of parrain {parrain_id} for filleul {filleul_id}", exc_info=True)
            audit_log.error(
                "Reactivation orchestration crashed",
                {"parrain_id": parrain_id, "filleul_id": filleul_id, "error": str(e)},
                CHANNEL,
            )
            return LifecycleResult(
                success=False, action="reactivation", filleul_id=filleul_id, parrain_id=parrain_id,
                reason="unexpected_exception", error=str(e), error_type=type(e).__name__,
            )

    def get_session_stats(self) -> Dict[str, int]:
        return self.stats.as_dict()
