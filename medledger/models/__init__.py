# medledger/models/__init__.py
from .clinical import (
    Department,
    Practitioner,
    Patient,
    Appointment,
    Prescription,
    PrescriptionItem,
    Sale,
    PurchaseOrder,
)
from .pharmacy_inventory import Supplier, Medicine, MedicineBatch, StockTransaction
from .billing import Invoice, InvoiceLineItem, InvoicePayment, InvoiceNumberSeries

__all__ = [
    "Department",
    "Practitioner",
    "Patient",
    "Appointment",
    "Prescription",
    "PrescriptionItem",
    "Sale",
    "PurchaseOrder",
    "Supplier",
    "Medicine",
    "MedicineBatch",
    "StockTransaction",
    "Invoice",
    "InvoiceLineItem",
    "InvoicePayment",
    "InvoiceNumberSeries",
]
