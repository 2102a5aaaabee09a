# medledger/models/pharmacy_inventory.py
from __future__ import annotations

import enum
from datetime import datetime, date

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Numeric,
    ForeignKey, Text, CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from medledger.db.base import Base

Money = Numeric(12, 2)


# -------------------------
# Enums
# -------------------------
class StockTxnType(str, enum.Enum):
    RECEIPT = "RECEIPT"
    DISPENSE = "DISPENSE"
    ADJUSTMENT = "ADJUSTMENT"
    REVERSAL = "REVERSAL"


class AdjustmentReason(str, enum.Enum):
    ADDITION = "Addition"
    CORRECTION = "Correction"
    DAMAGE = "Damage"
    EXPIRY = "Expiry"
    DEDUCTION = "Deduction"


# -------------------------
# Masters
# -------------------------
class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    contact_person = Column(String(255), default="")
    phone = Column(String(50), default="")
    email = Column(String(255), default="")
    address = Column(String(1000), default="")
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    batches = relationship("MedicineBatch", back_populates="supplier")
    purchase_orders = relationship("PurchaseOrder", back_populates="supplier")


class Medicine(Base):
    """
    Catalog entry. Physical quantity lives on batches; stock_quantity is the
    aggregate counter the stock ledger keeps in step with them.
    """
    __tablename__ = "medicines"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_medicines_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    generic_name = Column(String(255), default="")
    category = Column(String(100), default="")
    reorder_level = Column(Integer, nullable=False, default=0)
    prescription_required = Column(Boolean, nullable=False, default=False)
    default_price = Column(Money, default=0)

    stock_quantity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    batches = relationship("MedicineBatch", back_populates="medicine", order_by="MedicineBatch.expiry_date")


class MedicineBatch(Base):
    """
    One receipt of one medicine. Rows are never deleted; an emptied batch
    stays as history with quantity 0.
    """
    __tablename__ = "medicine_batches"
    __table_args__ = (
        UniqueConstraint("medicine_id", "batch_number", name="uq_medicine_batch_number"),
        CheckConstraint("quantity >= 0", name="ck_medicine_batches_qty_non_negative"),
        Index("ix_medicine_batches_med_exp", "medicine_id", "expiry_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True, index=True)

    batch_number = Column(String(100), nullable=False)
    expiry_date = Column(Date, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)

    purchase_price = Column(Money, nullable=False, default=0)
    selling_price = Column(Money, nullable=False, default=0)

    purchase_date = Column(Date, default=date.today, nullable=False)
    received_date = Column(Date, nullable=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    medicine = relationship("Medicine", back_populates="batches")
    supplier = relationship("Supplier", back_populates="batches")
    transactions = relationship("StockTransaction", back_populates="batch", order_by="StockTransaction.id")


class StockTransaction(Base):
    """
    Append-only movement journal. Every stock ledger mutation writes exactly
    one row here, in the same transaction as the quantity change.
    """
    __tablename__ = "stock_transactions"
    __table_args__ = (
        Index("ix_stock_txn_batch", "batch_id", "created_at"),
        Index("ix_stock_txn_ref", "ref_type", "ref_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("medicine_batches.id"), nullable=False)

    txn_type = Column(String(20), nullable=False)  # StockTxnType
    quantity_change = Column(Integer, nullable=False)  # signed
    quantity_after = Column(Integer, nullable=False)

    reason_code = Column(String(20), nullable=True)  # AdjustmentReason
    reason = Column(String(255), default="")
    note = Column(Text, nullable=True)

    ref_type = Column(String(30), default="")  # INVOICE / PURCHASE_ORDER / ...
    ref_id = Column(Integer, nullable=True)

    performed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    batch = relationship("MedicineBatch", back_populates="transactions")
