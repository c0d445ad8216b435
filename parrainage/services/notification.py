# parrainage/services/notification.py

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from parrainage.crud import notification as crud_notification

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Сохраняет уведомления для абонемента parrain (их показывает личный кабинет).
    Доставка best-effort: ошибка логируется и возвращается False, цену не откатываем.
    """

    def __init__(self, db: Session):
        self.db = db

    def _notify(self, subscription_id: int, type: str, title: str, message: str, related_entity_id: str | None, unique: bool = False) -> bool:
        try:
            if unique and related_entity_id and crud_notification.get_notification_by_type_and_entity(
                self.db, subscription_id, type, related_entity_id
            ):
                logger.info(f"Notification '{type}' for subscription {subscription_id} already exists. Skipping.")
                return True
            crud_notification.create_notification(
                self.db,
                subscription_id=subscription_id,
                type=type,
                title=title,
                message=message,
                related_entity_id=related_entity_id,
            )
            return True
        except Exception:
            logger.error(f"Failed to store '{type}' notification for subscription {subscription_id}", exc_info=True)
            self.db.rollback()
            return False

    def send_discount_applied(self, referrer_id: int, discount_data: Dict[str, Any]) -> bool:
        amount = discount_data.get("formatted_amount") or discount_data.get("discount_amount")
        return self._notify(
            referrer_id,
            "discount_applied",
            "Remise parrainage appliquée",
            f"Merci pour votre parrainage ! Votre abonnement bénéficie d'une remise de {amount} "
            f"jusqu'au {discount_data.get('end_date', '-')}.",
            str(discount_data.get("filleul_order_id") or ""),
            unique=True,
        )

    def send_discount_suspended(self, referrer_id: int, filleul_id: int) -> bool:
        return self._notify(
            referrer_id,
            "discount_suspended",
            "Remise parrainage suspendue",
            "L'abonnement de votre filleul n'est plus actif : votre remise est suspendue.",
            str(filleul_id),
        )

    def send_discount_reactivated(self, referrer_id: int, filleul_id: int) -> bool:
        return self._notify(
            referrer_id,
            "discount_reactivated",
            "Remise parrainage réactivée",
            "L'abonnement de votre filleul est de nouveau actif : votre remise est réactivée.",
            str(filleul_id),
        )
