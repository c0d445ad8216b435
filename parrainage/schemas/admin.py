# parrainage/schemas/admin.py
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field


class TaskInfo(BaseModel):
    """Описание одной фоновой задачи."""
    task_name: str
    description: str


class TaskRunRequest(BaseModel):
    """Схема для запроса на запуск задачи."""
    # Используем Literal, чтобы ограничить возможные значения
    # и добавить автодополнение в Swagger
    task_name: Literal[
        "all",
        "check_expired_discounts",
        "check_filleul_expirations",
    ]


class SessionCounters(BaseModel):
    attempted: int
    successful: int
    failed: int
    validation_failures: int


class LifecycleCounters(BaseModel):
    suspension: SessionCounters
    reactivation: SessionCounters


class ActiveDiscountStats(BaseModel):
    active_discounts: int
    by_status: Dict[str, int] = Field(default_factory=dict)
    total_monthly_discount: str
    expiring_within_30_days: int
    generated_at: str


class RequeueResponse(BaseModel):
    order_id: int
    requeued: bool
    workflow_status: str | None = None


class DiagnosticReport(BaseModel):
    timestamp: str
    cron_health: Dict[str, Any]
    workflow_statistics: Dict[str, Any]
    active_discounts: ActiveDiscountStats
    session_counters: LifecycleCounters
    configuration: Dict[str, Any]
    recommendations: List[str] = Field(default_factory=list)
