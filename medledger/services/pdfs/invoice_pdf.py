# medledger/services/pdfs/invoice_pdf.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from io import BytesIO
from typing import Any, Iterable, Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from medledger.core.config import settings

X0 = 18 * mm


def _fmt_date(d: Any) -> str:
    if not d:
        return ""
    if isinstance(d, (datetime, date)):
        return d.strftime("%d-%m-%Y")
    return str(d)


def _money(x: Any) -> str:
    return f"{Decimal(str(x or 0)):,.2f}"


def _draw_header(c: canvas.Canvas, title: str, sub_title: str = "") -> float:
    w, h = A4
    y = h - 20 * mm

    c.setFont("Helvetica-Bold", 14)
    c.drawString(X0, y, settings.FACILITY_NAME)

    y -= 7 * mm
    c.setFont("Helvetica-Bold", 12)
    c.drawString(X0, y, title)

    if sub_title:
        y -= 5 * mm
        c.setFont("Helvetica", 10)
        c.drawString(X0, y, sub_title)

    y -= 4 * mm
    c.setStrokeColor(colors.grey)
    c.setLineWidth(0.6)
    c.line(X0, y, w - X0, y)
    return y - 6 * mm


def _table_head(c: canvas.Canvas, y: float, headers: Sequence[str], cols: Sequence[float]) -> float:
    c.setFont("Helvetica-Bold", 9)
    for i, htxt in enumerate(headers):
        c.drawString(X0 + sum(cols[:i]), y, htxt)
    y -= 4 * mm
    c.setLineWidth(0.4)
    c.line(X0, y, X0 + sum(cols), y)
    c.setFont("Helvetica", 9)
    return y - 5 * mm


def _table(c: canvas.Canvas, y: float, headers: Sequence[str], rows: Iterable[Sequence[str]],
           col_widths_mm: Sequence[float], title: str) -> float:
    cols = [w * mm for w in col_widths_mm]
    y = _table_head(c, y, headers, cols)
    for row in rows:
        if y < 40 * mm:
            c.showPage()
            y = _draw_header(c, title, "Continued")
            y = _table_head(c, y, headers, cols)
        for i, cell in enumerate(row):
            c.drawString(X0 + sum(cols[:i]), y, (cell or "")[:48])
        y -= 4.5 * mm
    return y


def build_invoice_pdf(inv) -> BytesIO:
    """
    Render a finished invoice (ORM Invoice with items/payments loaded).
    Pure presentation: reads only, never recalculates.
    """
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    title = f"{inv.invoice_type} Invoice"
    y = _draw_header(c, title, f"No. {inv.invoice_number}")

    c.setFont("Helvetica", 9)
    info = [
        f"Customer : {inv.customer_name or '-'} ({inv.customer_type})",
        f"Phone    : {inv.customer_phone or '-'}",
        f"Issued   : {_fmt_date(inv.issue_date)}    Due: {_fmt_date(inv.due_date)}",
        f"Status   : {inv.status}",
    ]
    if inv.practitioner is not None:
        info.append(f"Doctor   : {inv.practitioner.full_name}")
    for line in info:
        c.drawString(X0, y, line)
        y -= 4.5 * mm
    y -= 4 * mm

    headers = ["S.No", "Description", "Batch", "Qty", "Rate", "Tax", "Amount"]
    widths = [10, 70, 25, 12, 22, 18, 25]
    rows = []
    for it in inv.items:
        desc = it.description
        if it.expiry_date:
            desc = f"{desc} (exp {_fmt_date(it.expiry_date)})"
        rows.append([
            str(it.seq),
            desc,
            it.batch_number or "",
            str(it.quantity),
            _money(it.unit_price),
            _money(it.tax_amount),
            _money(it.total_price),
        ])
    y = _table(c, y, headers, rows, widths, title)

    y -= 4 * mm
    right = X0 + 150 * mm
    totals = [
        ("Subtotal", inv.subtotal),
        ("Discount", inv.discount),
        ("Tax", inv.tax),
        ("Total", inv.total),
        ("Paid", inv.amount_paid),
        ("Balance", inv.balance_due),
    ]
    for label, val in totals:
        c.setFont("Helvetica-Bold" if label in ("Total", "Balance") else "Helvetica", 9)
        c.drawRightString(right - 30 * mm, y, label)
        c.drawRightString(right + 20 * mm, y, _money(val))
        y -= 4.5 * mm

    if inv.payments:
        y -= 4 * mm
        y = _table(
            c,
            y,
            ["Paid On", "Method", "Reference", "Amount"],
            [[_fmt_date(p.paid_at), p.method, p.reference or "", _money(p.amount)] for p in inv.payments],
            [30, 35, 60, 25],
            title,
        )

    if inv.notes:
        y -= 4 * mm
        c.setFont("Helvetica-Oblique", 8)
        c.drawString(X0, y, f"Notes: {inv.notes[:120]}")

    c.showPage()
    c.save()
    buf.seek(0)
    return buf
