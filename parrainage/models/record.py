# parrainage/models/record.py
from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Numeric, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from parrainage.db.session import Base


class Record(Base):
    """
    Локальное зеркало заказа или абонемента WooCommerce.
    id совпадает с ID сущности в WooCommerce.
    """
    __tablename__ = "records"

    id = Column(Integer, primary_key=True, autoincrement=False)
    # 'order' или 'subscription'
    kind = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    customer_id = Column(Integer, nullable=True, index=True)
    # Для абонемента - ID родительского заказа
    parent_id = Column(Integer, nullable=True, index=True)
    currency = Column(String, nullable=False, default="EUR")
    total = Column(Numeric(10, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship("RecordItem", back_populates="record", cascade="all, delete-orphan", order_by="RecordItem.id")
    meta = relationship("RecordMeta", back_populates="record", cascade="all, delete-orphan")
    notes = relationship("RecordNote", back_populates="record", cascade="all, delete-orphan", order_by="RecordNote.id")


class RecordItem(Base):
    __tablename__ = "record_items"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(Integer, ForeignKey("records.id"), nullable=False, index=True)
    # ID строки заказа в WooCommerce, нужен для обратной синхронизации цены
    wc_item_id = Column(Integer, nullable=True)
    product_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    record = relationship("Record", back_populates="items")


class RecordMeta(Base):
    __tablename__ = "record_meta"
    __table_args__ = (UniqueConstraint("record_id", "key", name="uq_record_meta_key"),)

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(Integer, ForeignKey("records.id"), nullable=False, index=True)
    key = Column(String, nullable=False, index=True)
    # Значение хранится как JSON-строка
    value = Column(Text, nullable=True)

    record = relationship("Record", back_populates="meta")


class RecordNote(Base):
    __tablename__ = "record_notes"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(Integer, ForeignKey("records.id"), nullable=False, index=True)
    note = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    record = relationship("Record", back_populates="notes")
