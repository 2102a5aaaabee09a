# medledger/schemas/billing.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------- Create ----------
class CustomerIn(BaseModel):
    customer_type: Optional[str] = None
    patient_id: Optional[int] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class LineItemIn(BaseModel):
    item_kind: str = "Service"
    description: Optional[str] = None
    quantity: int = 1
    unit_price: Optional[Decimal] = None
    tax_rate: Decimal = Decimal("0")

    # Service
    service_type: Optional[str] = None
    # Medicine
    medicine_id: Optional[int] = None
    batch_id: Optional[int] = None
    prescription_item_id: Optional[int] = None
    # Procedure / LabTest
    procedure_code: Optional[str] = None
    test_code: Optional[str] = None


class TaxPolicyIn(BaseModel):
    mode: str = "ITEM"
    rate: Decimal = Decimal("0")

    @field_validator("mode")
    @classmethod
    def _upper(cls, v: str) -> str:
        return (v or "ITEM").strip().upper()


class PaymentIn(BaseModel):
    amount: Decimal
    method: str
    reference: Optional[str] = None
    transaction_id: Optional[str] = None


class InvoiceCreate(BaseModel):
    customer: CustomerIn = Field(default_factory=CustomerIn)
    line_items: List[LineItemIn] = Field(default_factory=list)
    discount: Decimal = Decimal("0")
    tax_policy: Optional[TaxPolicyIn] = None

    practitioner_id: Optional[int] = None
    appointment_id: Optional[int] = None
    prescription_id: Optional[int] = None
    sale_id: Optional[int] = None
    purchase_order_id: Optional[int] = None

    immediate_payment: Optional[PaymentIn] = None
    issue: bool = True
    due_date: Optional[date] = None
    notes: Optional[str] = None


class CancelIn(BaseModel):
    reason: str = ""


class RefundIn(BaseModel):
    reason: Optional[str] = None
    restock: bool = False


# ---------- Out ----------
class LineItemOut(BaseModel):
    id: int
    seq: int
    item_kind: str
    description: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    tax_rate: Decimal
    tax_amount: Decimal

    service_type: Optional[str] = None
    medicine_id: Optional[int] = None
    batch_id: Optional[int] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[date] = None
    prescription_required: bool = False
    prescription_item_id: Optional[int] = None
    procedure_code: Optional[str] = None
    test_code: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentOut(BaseModel):
    id: int
    amount: Decimal
    method: str
    reference: Optional[str] = None
    transaction_id: Optional[str] = None
    status: str
    paid_at: datetime
    collected_by: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class InvoiceOut(BaseModel):
    id: int
    invoice_number: str
    invoice_type: str
    customer_type: str
    patient_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None

    practitioner_id: Optional[int] = None
    appointment_id: Optional[int] = None
    prescription_id: Optional[int] = None
    sale_id: Optional[int] = None
    purchase_order_id: Optional[int] = None

    issue_date: date
    due_date: date

    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    tax_mode: str
    total: Decimal
    amount_paid: Decimal
    balance_due: Decimal

    status: str
    issued_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None

    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    items: List[LineItemOut] = []
    payments: List[PaymentOut] = []

    model_config = ConfigDict(from_attributes=True)


class InvoiceListItemOut(BaseModel):
    id: int
    invoice_number: str
    invoice_type: str
    customer_name: Optional[str] = None
    issue_date: date
    due_date: date
    total: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    status: str

    model_config = ConfigDict(from_attributes=True)
