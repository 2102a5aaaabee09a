from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Iterable

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter


def _money(x) -> float:
    try:
        return float(Decimal(str(x or "0")))
    except (InvalidOperation, ValueError):
        return 0.0


def build_invoices_excel(fp, invoices: Iterable):
    wb = Workbook()
    ws = wb.active
    ws.title = "Invoices"

    headers = [
        "Invoice No", "Type", "Issue Date", "Due Date", "Customer", "Customer Type",
        "Subtotal", "Discount", "Tax", "Total", "Paid", "Balance", "Status",
    ]
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)

    for inv in invoices:
        ws.append([
            inv.invoice_number,
            inv.invoice_type,
            inv.issue_date,
            inv.due_date,
            inv.customer_name or "",
            inv.customer_type,
            _money(inv.subtotal),
            _money(inv.discount),
            _money(inv.tax),
            _money(inv.total),
            _money(inv.amount_paid),
            _money(inv.balance_due),
            inv.status,
        ])

    for col in range(1, len(headers) + 1):
        ws.column_dimensions[get_column_letter(col)].width = 16

    wb.save(fp)
