# medledger/models/clinical.py
"""
Clinical / commercial records that invoices point back to.

These are master-data shapes only; their CRUD lives outside this service.
"""
from __future__ import annotations

import enum
from datetime import datetime, date

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Numeric,
    ForeignKey, Text, CheckConstraint
)
from sqlalchemy.orm import relationship

from medledger.db.base import Base


class PractitionerPaymentType(str, enum.Enum):
    SALARY = "Salary"
    FEE_PER_VISIT = "Fee per Visit"
    PER_HOUR = "Per Hour"
    CONTRACTUAL_SALARY = "Contractual Salary"


class PrescriptionStatus(str, enum.Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class SaleStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class PurchaseOrderStatus(str, enum.Enum):
    DRAFT = "Draft"
    ORDERED = "Ordered"
    RECEIVED = "Received"
    PARTIALLY_RECEIVED = "Partially Received"
    CANCELLED = "Cancelled"


class Department(Base):
    __tablename__ = "departments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False, unique=True)
    description = Column(String(500), default="")

    practitioners = relationship("Practitioner", back_populates="department")


class Practitioner(Base):
    """
    Treating professional. Full-time staff are salaried; everyone else
    earns revenue_percentage of attributable invoice revenue.
    """
    __tablename__ = "practitioners"
    __table_args__ = (
        CheckConstraint(
            "revenue_percentage IS NULL OR (revenue_percentage >= 0 AND revenue_percentage <= 100)",
            name="ck_practitioners_revenue_pct"),
    )

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), default="")
    specialization = Column(String(150), default="")
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=True, index=True)

    is_full_time = Column(Boolean, nullable=False, default=True)
    payment_type = Column(String(30), nullable=False, default=PractitionerPaymentType.SALARY.value)
    # NULL -> DEFAULT_COMMISSION_PERCENT for non full-time staff
    revenue_percentage = Column(Numeric(5, 2), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    joined_at = Column(DateTime, default=datetime.utcnow)

    department = relationship("Department", back_populates="practitioners")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), default="")
    phone = Column(String(50), default="")
    address = Column(String(500), default="")
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=True, index=True)
    scheduled_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    status = Column(String(20), nullable=False, default="Scheduled")
    reason = Column(String(255), default="")

    patient = relationship("Patient")
    practitioner = relationship("Practitioner")


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, index=True)
    prescription_number = Column(String(40), unique=True, nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    practitioner_id = Column(Integer, ForeignKey("practitioners.id"), nullable=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)

    diagnosis = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=PrescriptionStatus.ACTIVE.value, index=True)
    issue_date = Column(Date, nullable=False, default=date.today)
    validity_days = Column(Integer, nullable=False, default=30)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship(
        "PrescriptionItem",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="PrescriptionItem.id",
    )

    @property
    def is_fully_dispensed(self) -> bool:
        return bool(self.items) and all(it.is_dispensed for it in self.items)


class PrescriptionItem(Base):
    __tablename__ = "prescription_items"

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(
        Integer,
        ForeignKey("prescriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    medicine_id = Column(Integer, ForeignKey("medicines.id"), nullable=True)
    medicine_name = Column(String(255), nullable=False)
    dosage = Column(String(100), default="")
    frequency = Column(String(100), default="")
    duration = Column(String(100), default="")
    quantity = Column(Integer, nullable=True)

    is_dispensed = Column(Boolean, nullable=False, default=False)
    dispensed_quantity = Column(Integer, nullable=False, default=0)
    dispensed_date = Column(DateTime, nullable=True)

    # stamped by the invoice builder
    is_billed = Column(Boolean, nullable=False, default=False)
    invoice_id = Column(Integer, nullable=True)

    prescription = relationship("Prescription", back_populates="items")


class Sale(Base):
    """Originating pharmacy sale; Completed once its invoice is Paid."""
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, index=True)
    sale_number = Column(String(40), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    customer_name = Column(String(200), default="")
    customer_phone = Column(String(50), default="")
    sale_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_method = Column(String(30), nullable=False, default="Pending")
    status = Column(String(20), nullable=False, default=SaleStatus.PENDING.value)
    created_by = Column(Integer, nullable=True)


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), unique=True, nullable=False)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False, index=True)
    order_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(String(30), nullable=False, default=PurchaseOrderStatus.DRAFT.value)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    created_by = Column(Integer, nullable=True)

    supplier = relationship("Supplier", back_populates="purchase_orders")
