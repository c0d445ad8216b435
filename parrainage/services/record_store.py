# parrainage/services/record_store.py

import logging
from decimal import Decimal
from typing import Any, Dict, List, Set

from sqlalchemy.orm import Session

from parrainage.core.constants import (
    META_DISCOUNT_FILLEUL_ID as DISCOUNT_FILLEUL_KEY,
    META_PENDING_DISCOUNT as PENDING_DISCOUNT_KEY,
    META_REFERRAL_CODE as REFERRAL_CODE_KEY,
)
from parrainage.crud import record as crud_record
from parrainage.models.record import Record, RecordItem

logger = logging.getLogger(__name__)


class RecordHandle:
    """
    Обертка над заказом/абонементом с API в духе WooCommerce:
    get_meta / update_meta / delete_meta копятся в буфере и попадают в БД
    только при save(). Заметки пишутся сразу.
    """

    def __init__(self, db: Session, record: Record):
        self.db = db
        self.record = record
        self._meta_cache: Dict[str, Any] = {
            key: crud_record.decode_meta_value(row.value)
            for key, row in crud_record.get_meta_rows(db, record.id).items()
        }
        self._pending_updates: Dict[str, Any] = {}
        self._pending_deletes: Set[str] = set()

    def __repr__(self) -> str:
        return f"<RecordHandle {self.record.kind} #{self.record.id} status={self.record.status}>"

    # --- Поля записи ---

    def get_id(self) -> int:
        return self.record.id

    def get_kind(self) -> str:
        return self.record.kind

    def get_status(self) -> str:
        return self.record.status

    def get_total(self) -> Decimal:
        return Decimal(str(self.record.total or 0))

    def get_items(self) -> List[RecordItem]:
        return list(self.record.items)

    def get_customer_id(self) -> int | None:
        return self.record.customer_id

    def get_parent_id(self) -> int | None:
        return self.record.parent_id

    # --- Метаданные ---

    def get_meta(self, key: str, default: Any = None) -> Any:
        if key in self._pending_deletes:
            return default
        if key in self._pending_updates:
            return self._pending_updates[key]
        return self._meta_cache.get(key, default)

    def update_meta(self, key: str, value: Any) -> None:
        self._pending_deletes.discard(key)
        self._pending_updates[key] = value

    def delete_meta(self, key: str) -> None:
        self._pending_updates.pop(key, None)
        self._pending_deletes.add(key)

    def discard_changes(self) -> None:
        """Сбрасывает несохраненные изменения метаданных."""
        self._pending_updates.clear()
        self._pending_deletes.clear()

    # --- Цены ---

    def set_item_total(self, item: RecordItem, total: Decimal, subtotal: Decimal | None = None) -> None:
        item.total = total
        item.subtotal = subtotal if subtotal is not None else total

    def calculate_totals(self) -> Decimal:
        total = sum((Decimal(str(item.total or 0)) for item in self.record.items), Decimal("0"))
        self.record.total = total
        return total

    # --- Сохранение ---

    def save(self) -> None:
        for key in self._pending_deletes:
            crud_record.delete_meta(self.db, self.record.id, key)
        for key, value in self._pending_updates.items():
            crud_record.set_meta(self.db, self.record.id, key, value)

        self.db.add(self.record)
        self.db.commit()
        self.db.refresh(self.record)

        for key in self._pending_deletes:
            self._meta_cache.pop(key, None)
        self._meta_cache.update(self._pending_updates)
        self.discard_changes()

    def add_note(self, text: str) -> None:
        crud_record.add_note(self.db, self.record.id, text)
        logger.debug(f"Note added to {self.record.kind} #{self.record.id}: {text}")

    def get_notes(self) -> List[str]:
        return [note.note for note in self.record.notes]


class RecordStore:
    """Доступ к зеркалу заказов и абонементов WooCommerce."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, record_id: int | None) -> RecordHandle | None:
        if not record_id:
            return None
        record = crud_record.get_record(self.db, int(record_id))
        if record is None:
            return None
        return RecordHandle(self.db, record)

    def find_ids_by_meta(self, key: str, value: Any = None, kind: str | None = None) -> List[int]:
        return crud_record.find_record_ids_by_meta(self.db, key, value=value, kind=kind)

    def subscriptions_for_order(self, order_id: int) -> List[RecordHandle]:
        return [RecordHandle(self.db, record) for record in crud_record.get_subscriptions_for_order(self.db, order_id)]


    def find_parrain_for_filleul(self, filleul_subscription_id: int) -> int | None:
        """
        Ищет абонемент parrain для абонемента filleul:
        код на самом абонементе, затем код на родительском заказе,
        затем обратный поиск по записи о скидке.
        """
        filleul = self.get(filleul_subscription_id)
        if filleul is not None:
            for handle in (filleul, self.get(filleul.get_parent_id())):
                if handle is None:
                    continue
                code = handle.get_meta(REFERRAL_CODE_KEY) or handle.get_meta(PENDING_DISCOUNT_KEY)
                if code and str(code).strip().isdigit():
                    return int(str(code).strip())

        parrain_ids = self.find_ids_by_meta(DISCOUNT_FILLEUL_KEY, filleul_subscription_id, kind="subscription")
        if parrain_ids:
            return parrain_ids[0]
        logger.debug(f"No parrain found for filleul subscription {filleul_subscription_id}")
        return None
