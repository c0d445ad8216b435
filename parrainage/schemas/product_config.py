# parrainage/schemas/product_config.py
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class ProductConfigUpdate(BaseModel):
    """Схема для создания/обновления конфигурации скидки товара."""
    description: str | None = None
    # Неизвестные типы отсекаются уже на входе API, калькулятор все равно их проверяет
    discount_type: Literal["percentage", "fixed"]
    discount_value: Decimal = Field(..., ge=0)
    currency: str = "EUR"
    standard_price: Decimal | None = Field(default=None, ge=0)


class ProductConfig(BaseModel):
    product_id: int
    description: str | None = None
    discount_type: str
    discount_value: Decimal
    currency: str = "EUR"
    standard_price: Decimal | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True
