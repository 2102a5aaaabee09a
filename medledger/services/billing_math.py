# medledger/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict

Q2 = Decimal("0.01")
ZERO = Decimal("0")


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x or 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def money2(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def compute_line_amounts(qty, unit_price, tax_rate) -> Dict[str, Decimal]:
    """
    total_price = qty * unit_price (pre-tax)
    tax_amount  = total_price * tax_rate / 100
    """
    qty = D(qty)
    unit_price = D(unit_price)
    tax_rate = D(tax_rate)

    line_total = money2(qty * unit_price)
    tax_amount = money2(line_total * tax_rate / Decimal("100"))

    return {
        "total_price": line_total,
        "tax_amount": tax_amount,
        "net_amount": money2(line_total + tax_amount),
    }


def split_pro_rata(amount, part, whole) -> Decimal:
    """Share of `amount` proportional to part/whole, rounded to 2dp."""
    whole = D(whole)
    if whole <= 0:
        return Decimal("0.00")
    return money2(D(amount) * D(part) / whole)
