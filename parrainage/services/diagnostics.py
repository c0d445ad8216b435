# parrainage/services/diagnostics.py

import logging
from datetime import timedelta
from typing import Any, Dict, List

from apscheduler.schedulers.base import BaseScheduler

from parrainage.core import constants as c
from parrainage.core.config import settings
from parrainage.core.scheduler import END_DISCOUNT_HOOK, PROCESS_DISCOUNT_HOOK, RETRY_DISCOUNT_HOOK
from parrainage.services import discount_processor
from parrainage.services.reactivation_manager import reactivation_stats
from parrainage.services.record_store import RecordStore
from parrainage.services.subscription_discount import SubscriptionDiscountManager
from parrainage.services.suspension_manager import suspension_stats
from parrainage.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)

WORKFLOW_HOOKS = (PROCESS_DISCOUNT_HOOK, RETRY_DISCOUNT_HOOK, END_DISCOUNT_HOOK)
STALE_RUN_THRESHOLD = timedelta(hours=1)


class DiagnosticsService:
    """Отчеты о состоянии воркфлоу для админского API."""

    def __init__(self, store: RecordStore, discount_manager: SubscriptionDiscountManager, backend: BaseScheduler):
        self.store = store
        self.discount_manager = discount_manager
        self.backend = backend

    def get_workflow_statistics(self) -> Dict[str, Any]:
        by_status = {}
        for status in c.WORKFLOW_STATUSES:
            count = len(self.store.find_ids_by_meta(c.META_WORKFLOW_STATUS, status, kind="order"))
            if count:
                by_status[status] = count
        return {"by_status": by_status, "total": sum(by_status.values())}

    def get_failed_orders_count(self) -> int:
        return sum(
            len(self.store.find_ids_by_meta(c.META_WORKFLOW_STATUS, status, kind="order"))
            for status in (c.WORKFLOW_ERROR, c.WORKFLOW_CRON_FAILED)
        )

    def check_cron_health(self) -> Dict[str, Any]:
        running = bool(self.backend.running)
        pending_jobs: List[Dict[str, Any]] = []
        if running:
            for job in self.backend.get_jobs():
                if job.id.split(":", 1)[0] in WORKFLOW_HOOKS:
                    pending_jobs.append({
                        "id": job.id,
                        "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                    })

        last_run = discount_processor.last_processing_run["at"]
        failed_orders = self.get_failed_orders_count()
        recommendations = []
        if not running:
            recommendations.append("Scheduler is not running in this process: delayed discounts will not be processed")
        if failed_orders:
            recommendations.append(f"{failed_orders} order(s) need manual intervention (requeue endpoint)")
        if last_run and utcnow() - last_run > STALE_RUN_THRESHOLD and pending_jobs:
            recommendations.append("No delayed processing ran for more than an hour while jobs are pending")

        return {
            "scheduler_running": running,
            "pending_jobs": pending_jobs,
            "pending_jobs_count": len(pending_jobs),
            "last_run": to_iso(last_run) if last_run else None,
            "failed_orders": failed_orders,
            "recommendations": recommendations,
        }

    def generate_diagnostic_report(self) -> Dict[str, Any]:
        return {
            "timestamp": to_iso(utcnow()),
            "cron_health": self.check_cron_health(),
            "workflow_statistics": self.get_workflow_statistics(),
            "active_discounts": self.discount_manager.get_active_discounts_stats(),
            "session_counters": {
                "suspension": suspension_stats.as_dict(),
                "reactivation": reactivation_stats.as_dict(),
            },
            "configuration": {
                "async_delay_seconds": settings.PARRAINAGE_ASYNC_DELAY_SECONDS,
                "max_retry": settings.PARRAINAGE_MAX_RETRY,
                "retry_delay_seconds": settings.PARRAINAGE_RETRY_DELAY_SECONDS,
                "discount_duration_months": settings.PARRAINAGE_DISCOUNT_DURATION_MONTHS,
                "grace_days": settings.PARRAINAGE_DISCOUNT_GRACE_DAYS,
                "simulation_mode": settings.PARRAINAGE_SIMULATION_MODE,
                "filleul_billing_cycles": settings.FILLEUL_DISCOUNT_BILLING_CYCLES,
            },
        }
