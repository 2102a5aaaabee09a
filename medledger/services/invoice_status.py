# medledger/services/invoice_status.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from medledger.models.billing import InvoiceStatus, TERMINAL_STATUSES
from medledger.services.billing_math import D


def _as_date(x) -> Optional[date]:
    if x is None:
        return None
    if isinstance(x, datetime):
        return x.date()
    return x


def derive_status(
    total,
    amount_paid,
    due_date,
    now,
    *,
    issued: bool = True,
    terminal=None,
) -> InvoiceStatus:
    """
    The only place invoice status is computed.

    terminal (Cancelled/Refunded) wins, then Draft (never issued), then
    Paid, Overdue, Partial, Issued. Same inputs always give the same answer.
    """
    if terminal:
        st = InvoiceStatus(terminal)
        if st not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {terminal}")
        return st
    if not issued:
        return InvoiceStatus.DRAFT

    total = D(total)
    paid = D(amount_paid)
    if paid >= total:
        return InvoiceStatus.PAID

    due = _as_date(due_date)
    today = _as_date(now)
    if due is not None and today is not None and today > due:
        return InvoiceStatus.OVERDUE
    if paid > 0:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.ISSUED


def status_for(invoice, now) -> InvoiceStatus:
    return derive_status(
        invoice.total,
        invoice.amount_paid,
        invoice.due_date,
        now,
        issued=invoice.issued_at is not None,
        terminal=invoice.terminal_status,
    )


def apply_status(invoice, now) -> InvoiceStatus:
    st = status_for(invoice, now)
    invoice.status = st.value
    return st
