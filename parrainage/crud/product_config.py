# parrainage/crud/product_config.py
from typing import List

from sqlalchemy.orm import Session

from parrainage.models.product_config import ProductDiscountConfig
from parrainage.schemas.product_config import ProductConfigUpdate


def get_config(db: Session, product_id: int) -> ProductDiscountConfig | None:
    return db.query(ProductDiscountConfig).filter(ProductDiscountConfig.product_id == product_id).first()


def get_configs(db: Session) -> List[ProductDiscountConfig]:
    return db.query(ProductDiscountConfig).order_by(ProductDiscountConfig.product_id).all()


def upsert_config(db: Session, product_id: int, config_in: ProductConfigUpdate) -> ProductDiscountConfig:
    """Создает или полностью перезаписывает конфигурацию скидки товара."""
    db_config = get_config(db, product_id)
    if db_config is None:
        db_config = ProductDiscountConfig(product_id=product_id)
        db.add(db_config)

    for field, value in config_in.model_dump().items():
        setattr(db_config, field, value)

    db.commit()
    db.refresh(db_config)
    return db_config


def delete_config(db: Session, product_id: int) -> bool:
    deleted = db.query(ProductDiscountConfig).filter(ProductDiscountConfig.product_id == product_id).delete()
    db.commit()
    return deleted > 0
