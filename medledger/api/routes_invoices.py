# medledger/api/routes_invoices.py
from __future__ import annotations

import logging
from datetime import date, datetime
from io import BytesIO
from typing import Optional

from fastapi import APIRouter, Depends, Path as FPath, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from medledger.api.deps import current_actor, get_db
from medledger.api.response import ok
from medledger.core.errors import ValidationError
from medledger.models.billing import Invoice, InvoiceType
from medledger.schemas.billing import (
    CancelIn,
    InvoiceCreate,
    InvoiceListItemOut,
    InvoiceOut,
    PaymentIn,
    RefundIn,
)
from medledger.services import invoice_builder, payment_ledger
from medledger.services.excel_export import build_invoices_excel
from medledger.services.pdfs.invoice_pdf import build_invoice_pdf

logger = logging.getLogger(__name__)

router = APIRouter()

# URL slug -> invoice type ("auto" infers from line kinds)
TYPE_SLUGS = {
    "appointment": InvoiceType.APPOINTMENT,
    "pharmacy": InvoiceType.PHARMACY,
    "procedure": InvoiceType.PROCEDURE,
    "lab-test": InvoiceType.LAB_TEST,
    "purchase": InvoiceType.PURCHASE,
    "mixed": InvoiceType.MIXED,
    "auto": None,
}


def _out(inv: Invoice) -> dict:
    return InvoiceOut.model_validate(inv).model_dump()


@router.get("/export")
def export_invoices(
        invoice_type: Optional[str] = Query(None, alias="type"),
        status: Optional[str] = Query(None),
        start: Optional[date] = Query(None),
        end: Optional[date] = Query(None),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    rows, _total = invoice_builder.list_invoices(
        db, invoice_type=invoice_type, status=status, start=start, end=end, page=1, limit=500)
    buf = BytesIO()
    build_invoices_excel(buf, rows)
    buf.seek(0)
    filename = f"invoices_{datetime.utcnow():%Y%m%d}.xlsx"
    return StreamingResponse(
        buf,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{invoice_kind}", status_code=201)
def create_invoice(
        payload: InvoiceCreate,
        invoice_kind: str = FPath(...),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    slug = invoice_kind.strip().lower()
    if slug not in TYPE_SLUGS:
        raise ValidationError(f"Unknown invoice type: {invoice_kind}", allowed=sorted(TYPE_SLUGS))

    inv = invoice_builder.create_invoice(
        db,
        invoice_type=TYPE_SLUGS[slug],
        customer=payload.customer,
        line_items=payload.line_items,
        discount=payload.discount,
        tax_policy=payload.tax_policy,
        actor_id=actor_id,
        links={
            "practitioner_id": payload.practitioner_id,
            "appointment_id": payload.appointment_id,
            "prescription_id": payload.prescription_id,
            "sale_id": payload.sale_id,
            "purchase_order_id": payload.purchase_order_id,
        },
        immediate_payment=payload.immediate_payment,
        issue=payload.issue,
        due_date=payload.due_date,
        notes=payload.notes,
    )
    return ok(_out(inv), status_code=201)


@router.get("")
def list_invoices(
        invoice_type: Optional[str] = Query(None, alias="type"),
        status: Optional[str] = Query(None),
        patient_id: Optional[int] = Query(None),
        start: Optional[date] = Query(None),
        end: Optional[date] = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=500),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    rows, total = invoice_builder.list_invoices(
        db,
        invoice_type=invoice_type,
        status=status,
        patient_id=patient_id,
        start=start,
        end=end,
        page=page,
        limit=limit,
    )
    data = [InvoiceListItemOut.model_validate(r).model_dump() for r in rows]
    return ok(data, meta={"total": total, "page": page, "limit": limit})


@router.get("/{invoice_id}")
def get_invoice(
        invoice_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    return ok(_out(invoice_builder.get_invoice(db, invoice_id)))


@router.put("/{invoice_id}/payment")
def record_payment(
        payload: PaymentIn,
        invoice_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    inv = payment_ledger.record_payment(
        db,
        invoice_id,
        payload.amount,
        payload.method,
        actor_id=actor_id,
        reference=payload.reference,
        transaction_id=payload.transaction_id,
    )
    return ok(_out(inv))


@router.post("/{invoice_id}/issue")
def issue_invoice(
        invoice_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    return ok(_out(payment_ledger.issue_invoice(db, invoice_id, actor_id=actor_id)))


@router.post("/{invoice_id}/cancel")
def cancel_invoice(
        payload: CancelIn,
        invoice_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    inv = payment_ledger.cancel_invoice(db, invoice_id, payload.reason, actor_id=actor_id)
    return ok(_out(inv))


@router.post("/{invoice_id}/refund")
def refund_invoice(
        payload: RefundIn,
        invoice_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    inv = payment_ledger.refund_invoice(
        db, invoice_id, reason=payload.reason, restock=payload.restock, actor_id=actor_id)
    return ok(_out(inv))


@router.get("/{invoice_id}/download")
def download_invoice(
        invoice_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    inv = invoice_builder.get_invoice(db, invoice_id)
    buf = build_invoice_pdf(inv)
    filename = f"{inv.invoice_number}.pdf"
    return StreamingResponse(
        buf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )
