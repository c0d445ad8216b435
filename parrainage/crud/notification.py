# parrainage/crud/notification.py
from sqlalchemy.orm import Session
from parrainage.models.notification import DiscountNotification


def create_notification(
    db: Session,
    subscription_id: int,
    type: str,
    title: str,
    message: str | None = None,
    related_entity_id: str | None = None,
) -> DiscountNotification:
    """Создает новое уведомление для абонемента."""
    db_notification = DiscountNotification(
        subscription_id=subscription_id,
        type=type,
        title=title,
        message=message,
        related_entity_id=related_entity_id,
    )
    db.add(db_notification)
    db.commit()
    db.refresh(db_notification)
    return db_notification


def get_notification_by_type_and_entity(
    db: Session,
    subscription_id: int,
    type: str,
    related_entity_id: str
) -> DiscountNotification | None:
    """Ищет уведомление, чтобы не создавать дубликаты при повторной доставке события."""
    return db.query(DiscountNotification).filter(
        DiscountNotification.subscription_id == subscription_id,
        DiscountNotification.type == type,
        DiscountNotification.related_entity_id == related_entity_id
    ).first()
