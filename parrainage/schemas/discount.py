# parrainage/schemas/discount.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class EligibilityResult(BaseModel):
    """Итог проверки права на скидку. Все сработавшие ошибки накапливаются."""
    is_eligible: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


class DiscountCalculation(BaseModel):
    product_id: int
    parrain_id: int | None = None
    discount_type: str
    discount_value: Decimal
    original_price: Decimal
    discount_amount: Decimal
    new_price: Decimal
    currency: str = "EUR"
    formatted_amount: str | None = None
    calculated_at: datetime | None = None


class DiscountOperationResult(BaseModel):
    """
    Результат операции над ценой абонемента.
    noop=True означает, что состояние уже было целевым и ничего не изменилось.
    """
    success: bool
    noop: bool = False
    reason: str | None = None
    parrain_id: int | None = None
    original_price: Decimal | None = None
    discount_amount: Decimal | None = None
    new_price: Decimal | None = None
    end_date: datetime | None = None
    error: str | None = None
    error_type: str | None = None


class StepResult(BaseModel):
    """Результат одного подшага обработчика приостановки/возобновления."""
    success: bool
    step: str
    data: Dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class ValidationReport(BaseModel):
    """Результат валидатора приостановки/возобновления."""
    is_valid: bool
    reason: str | None = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    parrain_id: int | None = None
    filleul_id: int | None = None
    details: Dict[str, Any] = Field(default_factory=dict)


class LifecycleResult(BaseModel):
    """Итог работы менеджера приостановки или возобновления."""
    success: bool
    action: str
    filleul_id: int
    parrain_id: int | None = None
    reason: str | None = None
    error: str | None = None
    error_type: str | None = None
    steps: List[StepResult] = Field(default_factory=list)
    validation: ValidationReport | None = None


class ProcessingResult(BaseModel):
    """Итог одного запуска отложенной обработки заказа filleul."""
    success: bool
    order_id: int
    subscription_id: int
    attempt: int = 1
    status: str | None = None
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    calculations: List[DiscountCalculation] = Field(default_factory=list)
