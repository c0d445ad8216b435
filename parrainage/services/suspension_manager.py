# parrainage/services/suspension_manager.py

import logging
from dataclasses import dataclass, asdict
from typing import Dict

from parrainage.core.audit import audit_log
from parrainage.schemas.discount import LifecycleResult
from parrainage.services.record_store import RecordStore
from parrainage.services.suspension_handler import SuspensionHandler
from parrainage.services.suspension_validator import SuspensionValidator

logger = logging.getLogger(__name__)

CHANNEL = "suspension-manager"


@dataclass
class SessionStats:
    """Счетчики за время жизни процесса, для диагностики."""
    attempted: int = 0
    successful: int = 0
    failed: int = 0
    validation_failures: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    def reset(self) -> None:
        self.attempted = self.successful = self.failed = self.validation_failures = 0


# Общие для всех экземпляров менеджера, которые создаются на каждый вебхук
suspension_stats = SessionStats()


class SuspensionManager:
    """Связывает валидатор и обработчик приостановки, считает попытки."""

    def __init__(
        self,
        store: RecordStore,
        validator: SuspensionValidator,
        handler: SuspensionHandler,
        stats: SessionStats | None = None,
    ):
        self.store = store
        self.validator = validator
        self.handler = handler
        self.stats = stats if stats is not None else suspension_stats

    def handle_subscription_status_change(self, filleul_id: int, new_status: str) -> LifecycleResult | None:
        """
        Точка входа для смены статуса абонемента filleul.
        None - абонемент не участвует в реферальной программе или статус не тот.
        """
        if not self.validator.is_trigger_status(new_status):
            return None

        parrain_id = self.store.find_parrain_for_filleul(filleul_id)
        if parrain_id is None:
            audit_log.debug("No parrain for filleul, nothing to suspend", {"filleul_id": filleul_id}, CHANNEL)
            return None

        result = self.orchestrate_suspension(parrain_id, filleul_id, new_status)
        audit_log.info(
            "Automatic suspension triggered by status change",
            {"filleul_id": filleul_id, "parrain_id": parrain_id, "new_status": new_status,
             "result": "SUCCESS" if result.success else "FAILED", "reason": result.reason},
            CHANNEL,
        )
        return result

    def orchestrate_suspension(self, parrain_id: int, filleul_id: int, new_status: str) -> LifecycleResult:
        self.stats.attempted += 1
        try:
            validation = self.validator.validate_suspension_eligibility(filleul_id, parrain_id, new_status)
            if not validation.is_valid:
                self.stats.validation_failures += 1
                return LifecycleResult(
                    success=False, action="suspension", filleul_id=filleul_id, parrain_id=parrain_id,
                    reason=validation.reason, error_type="validation", validation=validation,
                )

            result = self.handler.process_suspension(parrain_id, filleul_id, new_status)
            result.validation = validation
            if result.success:
                self.stats.successful += 1
            else:
                self.stats.failed += 1
            return result

        except Exception as e:
            self.stats.failed += 1
            logger.error(f"Unexpected error during suspension of parrain {parrain_id} for filleul {filleul_id}", exc_info=True)
            audit_log.error(
                "Suspension orchestration crashed",
                {"parrain_id": parrain_id, "filleul_id": filleul_id, "error": str(e)},
                CHANNEL,
            )
            return LifecycleResult(
                success=False, action="suspension", filleul_id=filleul_id, parrain_id=parrain_id,
                reason="unexpected_exception", error=str(e), error_type=type(e).__name__,
            )

    def get_session_stats(self) -> Dict[str, int]:
        return self.stats.as_dict()
