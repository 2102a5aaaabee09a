# medledger/services/payment_ledger.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from medledger.core.errors import (
    InvalidInvoiceState,
    InvoiceNotFound,
    OverpaymentRejected,
    ValidationError,
)
from medledger.models.billing import (
    Invoice,
    InvoicePayment,
    InvoiceStatus,
    LineItemKind,
    PaymentMethod,
)
from medledger.models.clinical import Sale, SaleStatus
from medledger.services import stock_ledger
from medledger.services.billing_math import money2
from medledger.services.invoice_status import apply_status

logger = logging.getLogger(__name__)

# half a cent: amounts are quantized to 0.01 so any real overpayment is above this
_PAID_TOLERANCE = Decimal("0.005")


def _load_locked(db: Session, invoice_id: int) -> Invoice:
    inv = db.execute(
        select(Invoice).where(Invoice.id == invoice_id).with_for_update().execution_options(
            populate_existing=True)).scalar_one_or_none()
    if not inv:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
    return inv


def _payment_method(method) -> PaymentMethod:
    try:
        return PaymentMethod(getattr(method, "value", method))
    except ValueError:
        raise ValidationError(
            f"Unknown payment method: {method}",
            method=str(method),
            allowed=[m.value for m in PaymentMethod],
        )


def _ensure_payable(inv: Invoice) -> None:
    if inv.terminal_status:
        raise InvalidInvoiceState(
            f"Invoice {inv.invoice_number} is {inv.terminal_status}",
            invoice_id=inv.id,
            status=inv.terminal_status,
        )
    if inv.issued_at is None:
        raise InvalidInvoiceState(
            f"Invoice {inv.invoice_number} is still a Draft",
            invoice_id=inv.id,
            status=InvoiceStatus.DRAFT.value,
        )


def sync_sale(db: Session, inv: Invoice, status: SaleStatus, method: Optional[str] = None) -> None:
    if not inv.sale_id:
        return
    sale = db.get(Sale, inv.sale_id)
    if not sale:
        return
    sale.status = status.value
    if method:
        sale.payment_method = method


def apply_payment(
    db: Session,
    inv: Invoice,
    amount,
    method,
    *,
    actor_id: int | None = None,
    reference: str | None = None,
    transaction_id: str | None = None,
    now: datetime | None = None,
) -> InvoicePayment:
    """
    Apply a payment inside the caller's transaction (no commit).

    amount_paid only moves through a guarded UPDATE, so two racing payments
    can never push it past total.
    """
    now = now or datetime.utcnow()
    amt = money2(amount)
    if amt <= 0:
        raise ValidationError("Payment amount must be > 0", amount=str(amount))
    pm = _payment_method(method)
    _ensure_payable(inv)

    res = db.execute(
        update(Invoice).where(
            Invoice.id == inv.id,
            Invoice.amount_paid + amt <= Invoice.total + _PAID_TOLERANCE,
        ).values(amount_paid=Invoice.amount_paid + amt).execution_options(
            synchronize_session=False))

    if res.rowcount != 1:
        current = db.execute(
            select(Invoice.total, Invoice.amount_paid).where(Invoice.id == inv.id)).one()
        logger.warning(
            "Overpayment rejected: invoice=%s total=%s paid=%s attempted=%s",
            inv.invoice_number, current.total, current.amount_paid, amt)
        raise OverpaymentRejected(
            f"Payment of {amt} exceeds balance due on {inv.invoice_number}",
            invoice_id=inv.id,
            total=str(money2(current.total)),
            paid=str(money2(current.amount_paid)),
            attempted=str(amt),
        )

    db.refresh(inv)
    inv.amount_paid = money2(inv.amount_paid)
    inv.balance_due = money2(money2(inv.total) - inv.amount_paid)

    pay = InvoicePayment(
        invoice_id=inv.id,
        amount=amt,
        method=pm.value,
        reference=reference,
        transaction_id=transaction_id,
        status="Completed",
        paid_at=now,
        collected_by=actor_id,
    )
    inv.payments.append(pay)

    st = apply_status(inv, now)
    if st == InvoiceStatus.PAID:
        sync_sale(db, inv, SaleStatus.COMPLETED, pm.value)

    db.flush()
    logger.info("Payment %s (%s) recorded on %s -> %s", amt, pm.value, inv.invoice_number, st.value)
    return pay


def record_payment(
    db: Session,
    invoice_id: int,
    amount,
    method,
    *,
    actor_id: int | None = None,
    reference: str | None = None,
    transaction_id: str | None = None,
    now: datetime | None = None,
) -> Invoice:
    # validate before taking the row lock
    if money2(amount) <= 0:
        raise ValidationError("Payment amount must be > 0", amount=str(amount))
    _payment_method(method)

    try:
        inv = _load_locked(db, invoice_id)
        apply_payment(
            db,
            inv,
            amount,
            method,
            actor_id=actor_id,
            reference=reference,
            transaction_id=transaction_id,
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(inv)
    return inv


def issue_invoice(db: Session, invoice_id: int, *, actor_id: int | None = None, now: datetime | None = None) -> Invoice:
    now = now or datetime.utcnow()
    try:
        inv = _load_locked(db, invoice_id)
        if inv.terminal_status:
            raise InvalidInvoiceState(f"Invoice {inv.invoice_number} is {inv.terminal_status}",
                                      invoice_id=inv.id)
        if inv.issued_at is not None:
            raise InvalidInvoiceState(f"Invoice {inv.invoice_number} is already issued",
                                      invoice_id=inv.id,
                                      status=inv.status)
        inv.issued_at = now
        apply_status(inv, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(inv)
    logger.info("Invoice %s issued by %s", inv.invoice_number, actor_id)
    return inv


def _restock(db: Session, inv: Invoice, *, actor_id: int | None, ref_type: str) -> int:
    n = 0
    for it in inv.items:
        if it.item_kind == LineItemKind.MEDICINE.value and it.batch_id and it.medicine_id:
            stock_ledger.reverse_deduction(
                db,
                it.medicine_id,
                it.batch_id,
                it.quantity,
                actor_id=actor_id,
                ref_type=ref_type,
                ref_id=inv.id,
                reason=f"{ref_type.title()} {inv.invoice_number}",
            )
            n += 1
    return n


def cancel_invoice(
    db: Session,
    invoice_id: int,
    reason: str,
    *,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Invoice:
    """
    Void a non-terminal invoice. Medicine lines go back to their batches.
    A fully paid invoice has to be refunded instead.
    """
    now = now or datetime.utcnow()
    if not (reason or "").strip():
        raise ValidationError("Cancel reason is required")

    try:
        inv = _load_locked(db, invoice_id)
        if inv.terminal_status:
            raise InvalidInvoiceState(f"Invoice {inv.invoice_number} is already {inv.terminal_status}",
                                      invoice_id=inv.id,
                                      status=inv.terminal_status)
        if inv.status == InvoiceStatus.PAID.value:
            raise InvalidInvoiceState(f"Invoice {inv.invoice_number} is paid; refund it instead",
                                      invoice_id=inv.id,
                                      status=inv.status)

        restocked = _restock(db, inv, actor_id=actor_id, ref_type="INVOICE_CANCEL")

        inv.terminal_status = InvoiceStatus.CANCELLED.value
        inv.cancelled_at = now
        inv.cancel_reason = reason.strip()
        apply_status(inv, now)
        sync_sale(db, inv, SaleStatus.CANCELLED)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(inv)
    logger.info("Invoice %s cancelled (%s lines restocked): %s", inv.invoice_number, restocked, reason)
    return inv


def refund_invoice(
    db: Session,
    invoice_id: int,
    *,
    reason: str | None = None,
    restock: bool = False,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> Invoice:
    now = now or datetime.utcnow()
    try:
        inv = _load_locked(db, invoice_id)
        if inv.terminal_status:
            raise InvalidInvoiceState(f"Invoice {inv.invoice_number} is already {inv.terminal_status}",
                                      invoice_id=inv.id,
                                      status=inv.terminal_status)
        if restock:
            _restock(db, inv, actor_id=actor_id, ref_type="INVOICE_REFUND")

        inv.terminal_status = InvoiceStatus.REFUNDED.value
        inv.cancelled_at = now
        inv.cancel_reason = (reason or "").strip() or None
        apply_status(inv, now)
        sync_sale(db, inv, SaleStatus.REFUNDED)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(inv)
    logger.info("Invoice %s refunded (amount paid %s)", inv.invoice_number, inv.amount_paid)
    return inv


def refresh_overdue(db: Session, now: datetime | None = None) -> int:
    """Re-derive status of every open invoice. Returns how many changed."""
    now = now or datetime.utcnow()
    open_invoices = (db.query(Invoice).filter(
        Invoice.terminal_status.is_(None),
        Invoice.issued_at.isnot(None),
        Invoice.status != InvoiceStatus.PAID.value,
    ).all())

    changed = 0
    for inv in open_invoices:
        before = inv.status
        if apply_status(inv, now).value != before:
            changed += 1
    db.commit()
    logger.info("Overdue sweep: %s of %s open invoices changed status", changed, len(open_invoices))
    return changed
