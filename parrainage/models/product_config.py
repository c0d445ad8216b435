# parrainage/models/product_config.py
from sqlalchemy import Column, Integer, String, DateTime, Numeric
from sqlalchemy.sql import func

from parrainage.db.session import Base


class ProductDiscountConfig(Base):
    __tablename__ = "product_discount_configs"

    product_id = Column(Integer, primary_key=True, autoincrement=False)
    description = Column(String, nullable=True)
    # 'percentage' (доля, 0.10 = 10%) или 'fixed' (сумма в валюте)
    discount_type = Column(String, nullable=False, default="percentage")
    discount_value = Column(Numeric(10, 4), nullable=False)
    currency = Column(String, nullable=False, default="EUR")
    # Стандартная цена без скидки для абонемента filleul
    standard_price = Column(Numeric(10, 2), nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
