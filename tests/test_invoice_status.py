# tests/test_invoice_status.py
from datetime import date, datetime
from decimal import Decimal

import pytest

from medledger.models.billing import InvoiceStatus
from medledger.services.invoice_status import derive_status

DUE = date(2024, 1, 22)
BEFORE_DUE = datetime(2024, 1, 20, 18, 0)
ON_DUE = datetime(2024, 1, 22, 23, 59)
AFTER_DUE = datetime(2024, 1, 23, 0, 1)


@pytest.mark.parametrize("total,paid,now,expected", [
    ("200.00", "0", BEFORE_DUE, InvoiceStatus.ISSUED),
    ("200.00", "50", BEFORE_DUE, InvoiceStatus.PARTIAL),
    ("200.00", "200", BEFORE_DUE, InvoiceStatus.PAID),
    ("200.00", "0", ON_DUE, InvoiceStatus.ISSUED),
    ("200.00", "0", AFTER_DUE, InvoiceStatus.OVERDUE),
    ("200.00", "199.99", AFTER_DUE, InvoiceStatus.OVERDUE),
    ("200.00", "200.00", AFTER_DUE, InvoiceStatus.PAID),
    ("0.00", "0", BEFORE_DUE, InvoiceStatus.PAID),
])
def test_derive_status_table(total, paid, now, expected):
    assert derive_status(Decimal(total), Decimal(paid), DUE, now) == expected


def test_draft_until_issued():
    assert derive_status(Decimal("200"), Decimal("0"), DUE, AFTER_DUE, issued=False) == InvoiceStatus.DRAFT


@pytest.mark.parametrize("terminal", ["Cancelled", "Refunded"])
def test_terminal_status_wins(terminal):
    st = derive_status(Decimal("200"), Decimal("200"), DUE, AFTER_DUE, terminal=terminal)
    assert st == InvoiceStatus(terminal)


def test_non_terminal_value_rejected_as_terminal():
    with pytest.raises(ValueError):
        derive_status(Decimal("200"), Decimal("0"), DUE, BEFORE_DUE, terminal="Paid")


def test_same_inputs_same_answer():
    args = (Decimal("120.50"), Decimal("20.50"), DUE, AFTER_DUE)
    assert {derive_status(*args) for _ in range(5)} == {InvoiceStatus.OVERDUE}
