# parrainage/models/notification.py
from sqlalchemy import Column, Integer, String, Text, DateTime, func, Boolean
from parrainage.db.session import Base


class DiscountNotification(Base):
    __tablename__ = "discount_notifications"

    id = Column(Integer, primary_key=True, index=True)
    # Абонемент parrain, которому адресовано уведомление
    subscription_id = Column(Integer, nullable=False, index=True)

    # Тип уведомления: 'discount_applied', 'discount_suspended', etc.
    type = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)

    # ID связанной сущности (например, ID абонемента filleul)
    related_entity_id = Column(String, nullable=True)

    is_read = Column(Boolean, default=False, nullable=False, server_default='false')
    created_at = Column(DateTime(timezone=True), server_default=func.now())
