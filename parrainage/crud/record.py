# parrainage/crud/record.py
import json
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from parrainage.models.record import Record, RecordItem, RecordMeta, RecordNote


def encode_meta_value(value: Any) -> str:
    """Значения метаданных хранятся как JSON. Decimal и даты сериализуются строкой."""
    return json.dumps(value, default=str, ensure_ascii=False)


def decode_meta_value(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        # Значения, записанные в обход encode_meta_value, отдаем как есть
        return raw


def get_record(db: Session, record_id: int) -> Record | None:
    return db.query(Record).filter(Record.id == record_id).first()


def get_subscriptions_for_order(db: Session, order_id: int) -> List[Record]:
    return db.query(Record).filter(
        Record.kind == "subscription",
        Record.parent_id == order_id
    ).order_by(Record.id).all()


def get_meta_rows(db: Session, record_id: int) -> Dict[str, RecordMeta]:
    rows = db.query(RecordMeta).filter(RecordMeta.record_id == record_id).all()
    return {row.key: row for row in rows}


def set_meta(db: Session, record_id: int, key: str, value: Any) -> RecordMeta:
    """Создает или обновляет метаданные. Коммит остается за вызывающим кодом."""
    row = db.query(RecordMeta).filter(RecordMeta.record_id == record_id, RecordMeta.key == key).first()
    if row is None:
        row = RecordMeta(record_id=record_id, key=key)
        db.add(row)
    row.value = encode_meta_value(value)
    return row


def delete_meta(db: Session, record_id: int, key: str) -> int:
    return db.query(RecordMeta).filter(
        RecordMeta.record_id == record_id,
        RecordMeta.key == key
    ).delete(synchronize_session=False)


def find_record_ids_by_meta(db: Session, key: str, value: Any = None, kind: str | None = None) -> List[int]:
    """
    Ищет ID записей по ключу метаданных (и, опционально, по значению).
    Значение сравнивается в JSON-представлении.
    """
    query = db.query(RecordMeta.record_id).join(Record, Record.id == RecordMeta.record_id).filter(RecordMeta.key == key)
    if value is not None:
        query = query.filter(RecordMeta.value == encode_meta_value(value))
    if kind:
        query = query.filter(Record.kind == kind)
    return [record_id for record_id, in query.order_by(RecordMeta.record_id).all()]


def add_note(db: Session, record_id: int, note: str) -> RecordNote:
    db_note = RecordNote(record_id=record_id, note=note)
    db.add(db_note)
    db.commit()
    db.refresh(db_note)
    return db_note


def upsert_record(db: Session, data: Dict[str, Any]) -> tuple[Record, str | None]:
    """
    Создает или обновляет зеркало записи по данным из WooCommerce.
    Ожидаемые ключи: id, kind, status, customer_id, parent_id, currency, total,
    line_items (список dict с id/product_id/name/quantity/subtotal/total) и meta (dict).
    Строки товаров перезаписываются только для новой записи: после применения
    скидки локальная цена является источником истины.
    Возвращает (запись, предыдущий статус или None для новой записи).
    """
    record = get_record(db, data["id"])
    previous_status = record.status if record else None

    if record is None:
        record = Record(id=data["id"], kind=data["kind"])
        db.add(record)
        for line in data.get("line_items") or []:
            record.items.append(RecordItem(
                wc_item_id=line.get("id"),
                product_id=int(line.get("product_id") or 0),
                name=line.get("name"),
                quantity=int(line.get("quantity") or 1),
                subtotal=Decimal(str(line.get("subtotal") or line.get("total") or "0")),
                total=Decimal(str(line.get("total") or "0")),
            ))
        record.total = Decimal(str(data.get("total") or "0"))

    record.status = data.get("status") or record.status or "pending"
    if data.get("customer_id") is not None:
        record.customer_id = data.get("customer_id")
    if data.get("parent_id"):
        record.parent_id = data.get("parent_id")
    if data.get("currency"):
        record.currency = data["currency"]

    db.flush()
    for key, value in (data.get("meta") or {}).items():
        set_meta(db, record.id, key, value)

    db.commit()
    db.refresh(record)
    return record, previous_status
