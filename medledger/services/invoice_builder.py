# medledger/services/invoice_builder.py
"""
Checkout -> Invoice.

One call does, in a single DB transaction:
  1. validate + price every line (Service / Medicine / Procedure / LabTest)
  2. allocate the invoice number for (type, month)
  3. deduct stock for every medicine line that names a batch
  4. convert the prescription (if any), link/create Sale, move the PO
  5. issue + optionally take an immediate payment

Any failure rolls the whole transaction back: stock deductions, the number
and every row written are undone together.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from medledger.core.config import settings
from medledger.core.errors import (
    BatchNotFound,
    InvoiceNotFound,
    MedicineNotFound,
    NotFound,
    ValidationError,
)
from medledger.models.billing import (
    CustomerType,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceType,
    LineItemKind,
    ServiceType,
    TaxMode,
)
from medledger.models.clinical import (
    Appointment,
    Patient,
    Practitioner,
    Prescription,
    PrescriptionStatus,
    PurchaseOrder,
    PurchaseOrderStatus,
    Sale,
    SaleStatus,
)
from medledger.models.pharmacy_inventory import Medicine, MedicineBatch
from medledger.services import stock_ledger
from medledger.services.billing_math import D, money2
from medledger.services.billing_numbers import next_invoice_number
from medledger.services.invoice_status import apply_status
from medledger.services.payment_ledger import apply_payment, sync_sale

logger = logging.getLogger(__name__)


@dataclass
class TaxPolicy:
    mode: TaxMode = TaxMode.ITEM
    rate: Decimal = Decimal("0")  # INVOICE mode only


@dataclass
class InvoiceLinks:
    practitioner_id: Optional[int] = None
    appointment_id: Optional[int] = None
    prescription_id: Optional[int] = None
    sale_id: Optional[int] = None
    purchase_order_id: Optional[int] = None


@dataclass
class _PricedLine:
    kind: LineItemKind
    description: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    fields: Dict[str, Any] = field(default_factory=dict)


def _as_dict(obj) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return dict(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return dict(vars(obj))


def _percent(value, name: str) -> Decimal:
    pct = money2(value)
    if pct < 0 or pct > 100:
        raise ValidationError(f"{name} must be between 0 and 100", **{name: str(pct)})
    return pct


def _tax_policy(tax_policy) -> TaxPolicy:
    if tax_policy is None:
        return TaxPolicy()
    if isinstance(tax_policy, TaxPolicy):
        pol = tax_policy
    elif isinstance(tax_policy, (str, TaxMode)):
        pol = TaxPolicy(mode=tax_policy)
    else:
        data = _as_dict(tax_policy)
        pol = TaxPolicy(mode=data.get("mode") or TaxMode.ITEM, rate=data.get("rate") or 0)
    try:
        mode = TaxMode(getattr(pol.mode, "value", pol.mode))
    except ValueError:
        raise ValidationError(f"Unknown tax mode: {pol.mode}", allowed=[m.value for m in TaxMode])
    return TaxPolicy(mode=mode, rate=_percent(pol.rate, "tax_rate"))


def _links(links) -> InvoiceLinks:
    if isinstance(links, InvoiceLinks):
        return links
    data = _as_dict(links)
    return InvoiceLinks(**{k: data.get(k) for k in InvoiceLinks.__dataclass_fields__})


def infer_invoice_type(kinds: Iterable[LineItemKind]) -> InvoiceType:
    kinds = set(kinds)
    if LineItemKind.MEDICINE in kinds:
        return InvoiceType.PHARMACY if kinds == {LineItemKind.MEDICINE} else InvoiceType.MIXED
    if kinds == {LineItemKind.PROCEDURE}:
        return InvoiceType.PROCEDURE
    if kinds == {LineItemKind.LAB_TEST}:
        return InvoiceType.LAB_TEST
    return InvoiceType.APPOINTMENT


def _resolve_type(invoice_type, kinds: List[LineItemKind]) -> InvoiceType:
    if invoice_type is None or str(getattr(invoice_type, "value", invoice_type)).lower() == "auto":
        return infer_invoice_type(kinds)
    try:
        return InvoiceType(getattr(invoice_type, "value", invoice_type))
    except ValueError:
        raise ValidationError(f"Unknown invoice type: {invoice_type}",
                              allowed=[t.value for t in InvoiceType])


# ---------- line pricing ----------
def _price_line(db: Session, raw, seq: int, today: date) -> _PricedLine:
    data = _as_dict(raw)
    try:
        kind = LineItemKind(data.get("item_kind") or data.get("kind") or LineItemKind.SERVICE.value)
    except ValueError:
        raise ValidationError(f"Line {seq}: unknown item kind {data.get('item_kind')!r}")

    try:
        qty = stock_ledger.positive_qty(data.get("quantity", 1))
    except ValidationError as e:
        raise ValidationError(f"Line {seq}: {e.message}", line=seq, **e.context)

    tax_rate = _percent(data.get("tax_rate") or 0, "tax_rate")
    unit_price = data.get("unit_price")
    description = (data.get("description") or "").strip()
    extra: Dict[str, Any] = {}

    if kind == LineItemKind.MEDICINE:
        medicine_id = data.get("medicine_id")
        if not medicine_id:
            raise ValidationError(f"Line {seq}: medicine_id is required", line=seq)
        med = db.get(Medicine, medicine_id)
        if not med:
            raise MedicineNotFound(f"Medicine {medicine_id} not found", medicine_id=medicine_id, line=seq)

        batch_id = data.get("batch_id")
        batch = None
        if batch_id:
            batch = db.get(MedicineBatch, batch_id)
            if not batch or batch.medicine_id != med.id:
                raise BatchNotFound(f"Batch {batch_id} not found for medicine {med.id}",
                                    medicine_id=med.id,
                                    batch_id=batch_id,
                                    line=seq)
            if batch.expiry_date < today:
                logger.warning("Rejected dispense from expired batch %s (%s, expired %s)",
                               batch.batch_number, med.name, batch.expiry_date)
                raise ValidationError(f"Line {seq}: batch {batch.batch_number} expired on {batch.expiry_date}",
                                      line=seq,
                                      batch_id=batch.id,
                                      expiry_date=batch.expiry_date.isoformat())
        if unit_price is None:
            unit_price = (batch.selling_price if batch is not None else None) or med.default_price or 0
        description = description or med.name
        extra = {
            "medicine_id": med.id,
            "batch_id": batch.id if batch is not None else None,
            "batch_number": batch.batch_number if batch is not None else None,
            "expiry_date": batch.expiry_date if batch is not None else None,
            "prescription_required": bool(med.prescription_required),
            "prescription_item_id": data.get("prescription_item_id"),
        }
    elif kind == LineItemKind.SERVICE:
        st = data.get("service_type") or ServiceType.OTHER.value
        try:
            st = ServiceType(getattr(st, "value", st))
        except ValueError:
            raise ValidationError(f"Line {seq}: unknown service type {st!r}", line=seq)
        extra = {"service_type": st.value}
    elif kind == LineItemKind.PROCEDURE:
        extra = {"procedure_code": data.get("procedure_code")}
    elif kind == LineItemKind.LAB_TEST:
        extra = {"test_code": data.get("test_code")}

    if not description:
        raise ValidationError(f"Line {seq}: description is required", line=seq)
    price = money2(unit_price or 0)
    if price < 0:
        raise ValidationError(f"Line {seq}: unit_price must be >= 0", line=seq, unit_price=str(price))

    return _PricedLine(kind=kind, description=description, quantity=qty,
                       unit_price=price, tax_rate=tax_rate, fields=extra)


# ---------- prescription conversion ----------
def _load_prescription(db: Session, prescription_id: int, today: date) -> Prescription:
    rx = db.get(Prescription, prescription_id)
    if not rx:
        raise NotFound(f"Prescription {prescription_id} not found", prescription_id=prescription_id)
    if rx.status != PrescriptionStatus.ACTIVE.value:
        raise ValidationError(f"Prescription is {rx.status}", prescription_id=rx.id, status=rx.status)
    if rx.issue_date + timedelta(days=int(rx.validity_days or 0)) < today:
        raise ValidationError("Prescription has expired", prescription_id=rx.id)
    return rx


def _convert_prescription(db: Session, rx: Prescription, inv: Invoice, now: datetime) -> None:
    """
    Stamp dispensed/billed prescription items; retire the prescription once complete.

    An item may be filled over several invoices: dispensed_quantity accumulates
    and invoice_id points at the latest invoice that dispensed against it.
    """
    by_id = {it.id: it for it in rx.items}
    used = set()

    for line in inv.items:
        if line.item_kind != LineItemKind.MEDICINE.value:
            continue
        item = None
        if line.prescription_item_id:
            item = by_id.get(line.prescription_item_id)
            if item is None:
                raise ValidationError(
                    f"Prescription item {line.prescription_item_id} is not on prescription {rx.id}",
                    prescription_id=rx.id,
                    prescription_item_id=line.prescription_item_id,
                )
            if item.medicine_id and item.medicine_id != line.medicine_id:
                raise ValidationError(
                    f"Prescription item {item.id} is for {item.medicine_name}, not {line.description}",
                    prescription_item_id=item.id,
                    prescribed_medicine_id=item.medicine_id,
                    medicine_id=line.medicine_id,
                )
        else:
            item = next((it for it in rx.items
                         if it.medicine_id == line.medicine_id and not it.is_dispensed and it.id not in used), None)
            if item is None:
                continue
            line.prescription_item_id = item.id

        if item.is_dispensed:
            raise ValidationError(f"Prescription item {item.id} is already fully dispensed",
                                  prescription_item_id=item.id,
                                  invoice_id=item.invoice_id)
        used.add(item.id)
        item.dispensed_quantity = int(item.dispensed_quantity or 0) + int(line.quantity)
        item.is_dispensed = item.dispensed_quantity >= int(item.quantity or line.quantity)
        item.dispensed_date = now
        item.is_billed = True
        item.invoice_id = inv.id

    db.flush()
    if rx.is_fully_dispensed:
        if settings.PRESCRIPTION_DELETE_ON_CONVERT:
            logger.info("Prescription %s fully converted by %s; removing it", rx.id, inv.invoice_number)
            db.delete(rx)
        else:
            rx.status = PrescriptionStatus.COMPLETED.value
        db.flush()


# ---------- main entry ----------
def create_invoice(
    db: Session,
    *,
    invoice_type=None,
    customer=None,
    line_items=None,
    discount=0,
    tax_policy=None,
    actor_id: int | None = None,
    links=None,
    immediate_payment=None,
    issue: bool = True,
    due_date: date | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Invoice:
    now = now or datetime.utcnow()
    today = now.date()

    if not line_items:
        raise ValidationError("At least one line item is required")

    tax = _tax_policy(tax_policy)
    lk = _links(links)
    cust = _as_dict(customer)

    disc = money2(discount or 0)
    if disc < 0:
        raise ValidationError("discount must be >= 0", discount=str(disc))

    try:
        priced = [_price_line(db, raw, i, today) for i, raw in enumerate(line_items, start=1)]
        itype = _resolve_type(invoice_type, [p.kind for p in priced])

        # ---- customer ----
        patient = None
        patient_id = cust.get("patient_id")
        if patient_id:
            patient = db.get(Patient, patient_id)
            if not patient:
                raise NotFound(f"Patient {patient_id} not found", patient_id=patient_id)

        default_ct = (CustomerType.SUPPLIER if itype == InvoiceType.PURCHASE else
                      CustomerType.PATIENT if patient else CustomerType.WALK_IN)
        try:
            ctype = CustomerType(cust.get("customer_type") or default_ct.value)
        except ValueError:
            raise ValidationError(f"Unknown customer type: {cust.get('customer_type')}",
                                  allowed=[c.value for c in CustomerType])

        # ---- links ----
        rx = _load_prescription(db, lk.prescription_id, today) if lk.prescription_id else None

        appt = None
        if lk.appointment_id:
            appt = db.get(Appointment, lk.appointment_id)
            if not appt:
                raise NotFound(f"Appointment {lk.appointment_id} not found", appointment_id=lk.appointment_id)

        practitioner_id = (lk.practitioner_id or (appt.practitioner_id if appt else None)
                           or (rx.practitioner_id if rx else None))
        if practitioner_id and not db.get(Practitioner, practitioner_id):
            raise NotFound(f"Practitioner {practitioner_id} not found", practitioner_id=practitioner_id)

        if rx is None:
            needs_rx = [p.description for p in priced if p.fields.get("prescription_required")]
            if needs_rx:
                raise ValidationError("Prescription required for: " + ", ".join(needs_rx), medicines=needs_rx)

        po = None
        if lk.purchase_order_id:
            if itype != InvoiceType.PURCHASE:
                raise ValidationError("purchase_order_id is only valid on Purchase invoices")
            po = db.get(PurchaseOrder, lk.purchase_order_id)
            if not po:
                raise NotFound(f"Purchase order {lk.purchase_order_id} not found",
                               purchase_order_id=lk.purchase_order_id)

        sale = None
        if lk.sale_id:
            sale = db.get(Sale, lk.sale_id)
            if not sale:
                raise NotFound(f"Sale {lk.sale_id} not found", sale_id=lk.sale_id)

        # ---- header + totals ----
        if due_date is None:
            days = settings.PURCHASE_DUE_DAYS if itype == InvoiceType.PURCHASE else settings.DEFAULT_DUE_DAYS
            due_date = today + timedelta(days=int(days))

        inv = Invoice(
            invoice_type=itype.value,
            customer_type=ctype.value,
            patient_id=patient.id if patient else None,
            customer_name=cust.get("name") or cust.get("customer_name") or (patient.full_name if patient else None),
            customer_phone=cust.get("phone") or cust.get("customer_phone") or (patient.phone if patient else None),
            customer_address=cust.get("address") or cust.get("customer_address")
            or (patient.address if patient else None),
            practitioner_id=practitioner_id,
            appointment_id=lk.appointment_id,
            prescription_id=lk.prescription_id,
            sale_id=lk.sale_id,
            purchase_order_id=lk.purchase_order_id,
            issue_date=today,
            due_date=due_date,
            discount=disc,
            tax_mode=tax.mode.value,
            invoice_tax_rate=tax.rate,
            amount_paid=Decimal("0"),
            notes=notes,
            is_pharmacy_sale=itype in (InvoiceType.PHARMACY, InvoiceType.MIXED),
            created_by=actor_id,
        )
        for seq, p in enumerate(priced, start=1):
            inv.items.append(
                InvoiceLineItem(
                    seq=seq,
                    item_kind=p.kind.value,
                    description=p.description,
                    quantity=p.quantity,
                    unit_price=p.unit_price,
                    tax_rate=p.tax_rate,
                    **p.fields,
                ))
        inv.recalc()

        if D(inv.discount) > D(inv.subtotal):
            raise ValidationError("discount cannot exceed subtotal",
                                  discount=str(inv.discount),
                                  subtotal=str(inv.subtotal))

        # ---- persist (same transaction) ----
        inv.invoice_number = next_invoice_number(db, itype, now=now)
        db.add(inv)
        db.flush()

        dispensed = False
        for line in inv.items:
            if line.item_kind == LineItemKind.MEDICINE.value and line.batch_id:
                snap = stock_ledger.deduct(
                    db,
                    line.medicine_id,
                    line.batch_id,
                    line.quantity,
                    actor_id=actor_id,
                    ref_type="INVOICE",
                    ref_id=inv.id,
                )
                line.batch_number = snap.batch_number
                line.expiry_date = snap.expiry_date
                dispensed = True
        if dispensed:
            inv.dispensing_date = now
            inv.dispensed_by = actor_id

        if rx is not None:
            _convert_prescription(db, rx, inv, now)

        if inv.is_pharmacy_sale:
            if sale is None:
                sale = Sale(
                    sale_number=f"SALE-{inv.invoice_number}",
                    patient_id=inv.patient_id,
                    customer_name=inv.customer_name or "",
                    customer_phone=inv.customer_phone or "",
                    sale_date=now,
                    status=SaleStatus.PENDING.value,
                    created_by=actor_id,
                )
                db.add(sale)
                db.flush()
                inv.sale_id = sale.id
            sale.total_amount = inv.total

        if po is not None and po.status == PurchaseOrderStatus.DRAFT.value:
            po.status = PurchaseOrderStatus.ORDERED.value

        if issue:
            inv.issued_at = now
        apply_status(inv, now)
        if inv.status == InvoiceStatus.PAID.value:
            # zero total: Paid without any payment row
            sync_sale(db, inv, SaleStatus.COMPLETED)
        db.flush()

        if immediate_payment:
            pay = _as_dict(immediate_payment)
            apply_payment(
                db,
                inv,
                pay.get("amount"),
                pay.get("method"),
                actor_id=actor_id,
                reference=pay.get("reference"),
                transaction_id=pay.get("transaction_id"),
                now=now,
            )

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(inv)
    logger.info("Invoice %s created: type=%s total=%s status=%s",
                inv.invoice_number, inv.invoice_type, inv.total, inv.status)
    return inv


def get_invoice(db: Session, invoice_id: int) -> Invoice:
    inv = db.get(Invoice, invoice_id)
    if not inv:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
    return inv


def list_invoices(
    db: Session,
    *,
    invoice_type: str | None = None,
    status: str | None = None,
    patient_id: int | None = None,
    start: date | None = None,
    end: date | None = None,
    page: int = 1,
    limit: int = 50,
):
    q = db.query(Invoice)
    if invoice_type:
        q = q.filter(Invoice.invoice_type == invoice_type)
    if status:
        q = q.filter(Invoice.status == status)
    if patient_id:
        q = q.filter(Invoice.patient_id == patient_id)
    if start:
        q = q.filter(Invoice.issue_date >= start)
    if end:
        q = q.filter(Invoice.issue_date <= end)

    total = q.count()
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 50), 1), 500)
    rows = q.order_by(Invoice.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, total
