# medledger/models/billing.py
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    Date,
    DateTime,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Text,
)
from sqlalchemy.orm import relationship

from medledger.db.base import Base
from medledger.services.billing_math import compute_line_amounts

Money = Numeric(12, 2)


class InvoiceType(str, enum.Enum):
    APPOINTMENT = "Appointment"
    PHARMACY = "Pharmacy"
    PROCEDURE = "Procedure"
    LAB_TEST = "LabTest"
    PURCHASE = "Purchase"
    MIXED = "Mixed"


# invoice number prefix per type: {PREFIX}-{YYYYMM}-{seq}
INVOICE_PREFIXES = {
    InvoiceType.APPOINTMENT: "APT",
    InvoiceType.PHARMACY: "PHM",
    InvoiceType.PROCEDURE: "PRC",
    InvoiceType.LAB_TEST: "LAB",
    InvoiceType.PURCHASE: "PUR",
    InvoiceType.MIXED: "MIX",
}


class InvoiceStatus(str, enum.Enum):
    DRAFT = "Draft"
    ISSUED = "Issued"
    PARTIAL = "Partial"
    PAID = "Paid"
    OVERDUE = "Overdue"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


TERMINAL_STATUSES = {InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED}


class CustomerType(str, enum.Enum):
    PATIENT = "Patient"
    WALK_IN = "Walk-in"
    INSURANCE = "Insurance"
    CORPORATE = "Corporate"
    SUPPLIER = "Supplier"
    OTHER = "Other"


class PaymentMethod(str, enum.Enum):
    CASH = "Cash"
    CARD = "Card"
    UPI = "UPI"
    NET_BANKING = "Net Banking"
    INSURANCE = "Insurance"
    GOVERNMENT_SCHEME = "Government Scheme"


class LineItemKind(str, enum.Enum):
    SERVICE = "Service"
    MEDICINE = "Medicine"
    PROCEDURE = "Procedure"
    LAB_TEST = "LabTest"


class ServiceType(str, enum.Enum):
    CONSULTATION = "Consultation"
    PROCEDURE = "Procedure"
    TEST = "Test"
    OTHER = "Other"
    PURCHASE = "Purchase"


class TaxMode(str, enum.Enum):
    ITEM = "ITEM"  # per-line tax_rate
    INVOICE = "INVOICE"  # one rate on (subtotal - discount)
    NONE = "NONE"


class InvoiceNumberSeries(Base):
    """
    Storage-backed counter, one row per (prefix, YYYYMM).
    Incremented with a single UPDATE ... SET last_seq = last_seq + 1.
    """
    __tablename__ = "invoice_number_series"
    __table_args__ = (UniqueConstraint("prefix",
                                       "period_key",
                                       name="uq_invoice_series_prefix_period"), )

    id = Column(Integer, primary_key=True)
    prefix = Column(String(10), nullable=False)
    period_key = Column(String(6), nullable=False)  # YYYYMM
    last_seq = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime,
                        nullable=False,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)


class Invoice(Base):
    """
    Aggregate root for every billable event:
    - Appointment / consultation
    - Pharmacy dispensing (counter sale or prescription)
    - Procedure, Lab test
    - Supplier purchase (payable side)
    - Mixed (medicines + services)

    Totals:
      subtotal    = sum(line.total_price)
      total       = subtotal - discount + tax
      balance_due = total - amount_paid
    """

    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_issue_date_type", "issue_date", "invoice_type"),
        Index("ix_invoices_practitioner", "practitioner_id", "issue_date"),
        CheckConstraint("amount_paid >= 0", name="ck_invoices_paid_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # assigned once at creation: PHM-202401-00001
    invoice_number = Column(String(32), unique=True, index=True, nullable=False)
    invoice_type = Column(String(20), nullable=False, index=True)

    # Customer
    customer_type = Column(String(20), nullable=False, default=CustomerType.PATIENT.value)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True, index=True)
    customer_name = Column(String(200), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_address = Column(String(500), nullable=True)

    # Treating practitioner (commission attribution)
    practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=True)

    # Origin links
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    # no FK: the prescription may be removed once fully converted
    prescription_id = Column(Integer, nullable=True)
    sale_id = Column(Integer, ForeignKey("sales.id"), nullable=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=True)

    # Dates
    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)

    # Totals
    subtotal = Column(Money, nullable=False, default=0)
    discount = Column(Money, nullable=False, default=0)
    tax = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False, default=0)

    tax_mode = Column(String(10), nullable=False, default=TaxMode.ITEM.value)
    invoice_tax_rate = Column(Numeric(6, 2), nullable=False, default=0)

    # Payment tracking
    amount_paid = Column(Money, nullable=False, default=0)
    balance_due = Column(Money, nullable=False, default=0)

    # Status: cached result of derive_status(); only Cancel/Refund set terminal_status
    status = Column(String(16), nullable=False, default=InvoiceStatus.DRAFT.value, index=True)
    terminal_status = Column(String(16), nullable=True)
    issued_at = Column(DateTime, nullable=True)  # NULL -> Draft
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    notes = Column(Text, nullable=True)

    # Pharmacy specific
    is_pharmacy_sale = Column(Boolean, nullable=False, default=False)
    dispensing_date = Column(DateTime, nullable=True)
    dispensed_by = Column(Integer, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.seq",
    )
    payments = relationship(
        "InvoicePayment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoicePayment.id",
    )
    patient = relationship("Patient")
    practitioner = relationship("Practitioner")
    sale = relationship("Sale")

    # ---------- Billing math helpers ----------
    @staticmethod
    def _d(v) -> Decimal:
        if v is None:
            return Decimal("0")
        return Decimal(str(v))

    @staticmethod
    def _q2(v: Decimal) -> Decimal:
        return v.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def recalc(self) -> None:
        """
        Recalculate totals from items.

        Item math:
          total_price = qty * unit_price
          tax_amount  = total_price * tax_rate/100   (ITEM mode only)

        Invoice math:
          subtotal = sum(total_price)
          tax      = sum(tax_amount)                       (ITEM)
                   = (subtotal - discount) * rate/100      (INVOICE)
                   = 0                                     (NONE)
          total    = subtotal - discount + tax
          balance_due = total - amount_paid
        """
        _d = self._d
        _q2 = self._q2
        mode = TaxMode(self.tax_mode or TaxMode.ITEM.value)

        subtotal = Decimal("0")
        item_tax = Decimal("0")

        for it in (self.items or []):
            amounts = compute_line_amounts(
                it.quantity, it.unit_price, it.tax_rate if mode == TaxMode.ITEM else 0)
            line_total = amounts["total_price"]
            tax_amt = amounts["tax_amount"]

            it.total_price = line_total
            it.tax_amount = tax_amt

            subtotal += line_total
            item_tax += tax_amt

        subtotal = _q2(subtotal)
        discount = _q2(_d(self.discount))

        if mode == TaxMode.ITEM:
            tax = _q2(item_tax)
        elif mode == TaxMode.INVOICE:
            tax = _q2((subtotal - discount) * _d(self.invoice_tax_rate) / Decimal("100"))
        else:
            tax = Decimal("0.00")

        total = _q2(subtotal - discount + tax)

        self.subtotal = subtotal
        self.discount = discount
        self.tax = tax
        self.total = total
        self.balance_due = _q2(total - _d(self.amount_paid))


class InvoiceLineItem(Base):
    """
    One priced entry on an invoice. Tagged union on item_kind:

    - Service:   service_type
    - Medicine:  medicine_id, batch_id, batch_number, expiry_date,
                 prescription_required, prescription_item_id
    - Procedure: procedure_code
    - LabTest:   test_code
    """
    __tablename__ = "invoice_line_items"
    __table_args__ = (
        Index("ix_invoice_items_invoice", "invoice_id"),
        Index("ix_invoice_items_batch", "batch_id"),
        CheckConstraint("quantity > 0", name="ck_invoice_items_qty_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    # S.no order for UI/print
    seq = Column(Integer, nullable=False, default=1)
    item_kind = Column(String(16), nullable=False)

    description = Column(String(300), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Money, nullable=False, default=0)
    total_price = Column(Money, nullable=False, default=0)
    tax_rate = Column(Numeric(6, 2), nullable=False, default=0)
    tax_amount = Column(Money, nullable=False, default=0)

    # Service
    service_type = Column(String(20), nullable=True)

    # Medicine
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=True)
    batch_id = Column(Integer, ForeignKey("medicine_batches.id"), nullable=True)
    batch_number = Column(String(100), nullable=True)
    expiry_date = Column(Date, nullable=True)
    prescription_required = Column(Boolean, nullable=False, default=False)
    prescription_item_id = Column(Integer, nullable=True)

    # Procedure / LabTest
    procedure_code = Column(String(50), nullable=True)
    test_code = Column(String(50), nullable=True)

    invoice = relationship("Invoice", back_populates="items")


class InvoicePayment(Base):
    """
    Append-only payments against an invoice. Corrections are new rows,
    never edits.
    """

    __tablename__ = "invoice_payments"
    __table_args__ = (
        Index("ix_invoice_payments_invoice", "invoice_id"),
        CheckConstraint("amount > 0", name="ck_invoice_payments_amount_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount = Column(Money, nullable=False)
    method = Column(String(32), nullable=False)
    reference = Column(String(100), nullable=True)
    transaction_id = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="Completed")
    paid_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    collected_by = Column(Integer, nullable=True)

    invoice = relationship("Invoice", back_populates="payments")
