# medledger/schemas/inventory.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class BatchReceiveIn(BaseModel):
    batch_number: str
    expiry_date: date
    quantity: int
    purchase_price: Decimal = Decimal("0")
    selling_price: Optional[Decimal] = None
    supplier_id: Optional[int] = None
    purchase_date: Optional[date] = None
    purchase_order_id: Optional[int] = None

    @field_validator("batch_number")
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()


class StockAdjustIn(BaseModel):
    delta: int
    reason: str
    note: Optional[str] = None


class BatchSnapshotOut(BaseModel):
    batch_id: int
    medicine_id: int
    batch_number: str
    expiry_date: date
    quantity: int
    medicine_stock: int
    selling_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class BatchOut(BaseModel):
    id: int
    medicine_id: int
    supplier_id: Optional[int] = None
    batch_number: str
    expiry_date: date
    quantity: int
    purchase_price: Decimal
    selling_price: Decimal
    purchase_date: date
    received_date: Optional[date] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class MedicineStockOut(BaseModel):
    id: int
    name: str
    generic_name: Optional[str] = ""
    category: Optional[str] = ""
    stock_quantity: int
    reorder_level: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class StockTransactionOut(BaseModel):
    id: int
    medicine_id: int
    batch_id: int
    txn_type: str
    quantity_change: int
    quantity_after: int
    reason_code: Optional[str] = None
    reason: Optional[str] = ""
    note: Optional[str] = None
    ref_type: Optional[str] = ""
    ref_id: Optional[int] = None
    performed_by: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
