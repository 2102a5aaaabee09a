# medledger/services/revenue.py
"""
Revenue reporting. Read-only.

build_revenue_report() loads invoices for a filter and hands plain rows to
fold_invoices(), which is pure. Summaries are immutable and merge_summaries()
combines two of them, so folding a range in pieces gives the same result as
folding it at once.
"""
from __future__ import annotations

import calendar
from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import exists
from sqlalchemy.orm import Session, selectinload

from medledger.core.errors import NotFound, ValidationError
from medledger.models.billing import (
    Invoice,
    InvoicePayment,
    InvoiceStatus,
    InvoiceType,
    LineItemKind,
    PaymentMethod,
)
from medledger.models.clinical import Practitioner
from medledger.services.billing_math import D, money2, split_pro_rata
from medledger.services.commission import CommissionResult, commission

ZERO = Decimal("0.00")

DEFAULT_EXCLUDED_STATUSES = frozenset({
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.CANCELLED.value,
    InvoiceStatus.REFUNDED.value,
})
ALL_STATUSES = frozenset(s.value for s in InvoiceStatus)


@dataclass(frozen=True)
class RevenueFilter:
    start: Optional[date] = None
    end: Optional[date] = None
    practitioner_id: Optional[int] = None
    department_id: Optional[int] = None
    invoice_type: Optional[str] = None
    payment_method: Optional[str] = None
    include_statuses: Optional[FrozenSet[str]] = None

    def statuses(self) -> FrozenSet[str]:
        if self.include_statuses is None:
            return ALL_STATUSES - DEFAULT_EXCLUDED_STATUSES
        return frozenset(getattr(s, "value", s) for s in self.include_statuses)


@dataclass(frozen=True)
class PractitionerInfo:
    id: int
    name: str
    department_id: Optional[int]
    department_name: Optional[str]
    is_full_time: bool
    revenue_percentage: Optional[Decimal]


@dataclass(frozen=True)
class InvoiceRow:
    """What the fold needs to know about one invoice."""
    invoice_id: int
    invoice_number: str
    invoice_type: str
    issue_date: date
    practitioner_id: Optional[int]
    subtotal: Decimal
    medicine_subtotal: Decimal
    total: Decimal
    amount_paid: Decimal
    payments: Tuple[Tuple[str, Decimal], ...] = ()


@dataclass(frozen=True)
class Bucket:
    revenue: Decimal = ZERO
    practitioner_share: Decimal = ZERO
    facility_share: Decimal = ZERO
    collected: Decimal = ZERO
    outstanding: Decimal = ZERO
    count: int = 0

    def __add__(self, other: "Bucket") -> "Bucket":
        return Bucket(
            revenue=self.revenue + other.revenue,
            practitioner_share=self.practitioner_share + other.practitioner_share,
            facility_share=self.facility_share + other.facility_share,
            collected=self.collected + other.collected,
            outstanding=self.outstanding + other.outstanding,
            count=self.count + other.count,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "revenue": self.revenue,
            "practitioner_share": self.practitioner_share,
            "facility_share": self.facility_share,
            "collected": self.collected,
            "outstanding": self.outstanding,
            "count": self.count,
        }


Breakdown = Tuple[Tuple[Any, Bucket], ...]


def _sort_key(k):
    return (k is None, str(k) if k is not None else "")


def _merge_breakdowns(a: Breakdown, b: Breakdown) -> Breakdown:
    acc: Dict[Any, Bucket] = dict(a)
    for k, v in b:
        acc[k] = acc.get(k, Bucket()) + v
    return tuple(sorted(acc.items(), key=lambda kv: _sort_key(kv[0])))


@dataclass(frozen=True)
class RevenueSummary:
    total_revenue: Decimal = ZERO
    practitioner_earnings: Decimal = ZERO
    facility_share: Decimal = ZERO
    collected: Decimal = ZERO
    outstanding: Decimal = ZERO
    invoice_count: int = 0
    purchases_total: Decimal = ZERO
    purchases_count: int = 0
    by_day: Breakdown = ()
    by_type: Breakdown = ()
    by_practitioner: Breakdown = ()
    by_department: Breakdown = ()
    by_payment_method: Breakdown = ()

    def breakdown(self, name: str) -> Dict[Any, Bucket]:
        return dict(getattr(self, name))


@dataclass(frozen=True)
class CommissionRecord:
    invoice_id: int
    invoice_number: str
    practitioner_id: Optional[int]
    gross_amount: Decimal
    rate_applied: Decimal
    commission_amount: Decimal
    facility_share: Decimal
    attribution: str


# ---------------------------------------------------------------------------
# Pure fold
# ---------------------------------------------------------------------------
def _pharmacy_portion(row: InvoiceRow) -> Decimal:
    if row.invoice_type == InvoiceType.PHARMACY.value:
        return money2(row.total)
    if row.invoice_type == InvoiceType.MIXED.value:
        return split_pro_rata(row.total, row.medicine_subtotal, row.subtotal)
    return ZERO


def split_invoice(row: InvoiceRow, practitioner) -> Tuple[Decimal, CommissionResult]:
    """(pharmacy portion, commission on the remaining service portion)."""
    pharmacy = _pharmacy_portion(row)
    service = money2(row.total) - pharmacy
    return pharmacy, commission(practitioner, service, row.invoice_type)


def fold_invoices(rows: Iterable[InvoiceRow], practitioners: Mapping[int, PractitionerInfo]) -> RevenueSummary:
    by_day: Dict[Any, Bucket] = {}
    by_type: Dict[Any, Bucket] = {}
    by_prac: Dict[Any, Bucket] = {}
    by_dept: Dict[Any, Bucket] = {}
    by_method: Dict[Any, Bucket] = {}

    total = earned = facility = collected = outstanding = purchases = ZERO
    count = purchase_count = 0

    for row in rows:
        inv_total = money2(row.total)
        paid = money2(row.amount_paid)

        if row.invoice_type == InvoiceType.PURCHASE.value:
            purchases += inv_total
            purchase_count += 1
            continue

        prac = practitioners.get(row.practitioner_id) if row.practitioner_id else None
        pharmacy, c = split_invoice(row, prac)
        fac = pharmacy + c.facility_share

        b = Bucket(
            revenue=inv_total,
            practitioner_share=c.commission_amount,
            facility_share=fac,
            collected=paid,
            outstanding=inv_total - paid,
            count=1,
        )
        total += inv_total
        earned += c.commission_amount
        facility += fac
        collected += paid
        outstanding += inv_total - paid
        count += 1

        for acc, key in (
            (by_day, row.issue_date),
            (by_type, row.invoice_type),
            (by_prac, row.practitioner_id),
            (by_dept, prac.department_id if prac else None),
        ):
            acc[key] = acc.get(key, Bucket()) + b

        for method, amount in row.payments:
            amt = money2(amount)
            by_method[method] = by_method.get(method, Bucket()) + Bucket(revenue=amt, collected=amt, count=1)

    def _freeze(d: Dict[Any, Bucket]) -> Breakdown:
        return tuple(sorted(d.items(), key=lambda kv: _sort_key(kv[0])))

    return RevenueSummary(
        total_revenue=total,
        practitioner_earnings=earned,
        facility_share=facility,
        collected=collected,
        outstanding=outstanding,
        invoice_count=count,
        purchases_total=purchases,
        purchases_count=purchase_count,
        by_day=_freeze(by_day),
        by_type=_freeze(by_type),
        by_practitioner=_freeze(by_prac),
        by_department=_freeze(by_dept),
        by_payment_method=_freeze(by_method),
    )


def merge_summaries(a: RevenueSummary, b: RevenueSummary) -> RevenueSummary:
    return RevenueSummary(
        total_revenue=a.total_revenue + b.total_revenue,
        practitioner_earnings=a.practitioner_earnings + b.practitioner_earnings,
        facility_share=a.facility_share + b.facility_share,
        collected=a.collected + b.collected,
        outstanding=a.outstanding + b.outstanding,
        invoice_count=a.invoice_count + b.invoice_count,
        purchases_total=a.purchases_total + b.purchases_total,
        purchases_count=a.purchases_count + b.purchases_count,
        by_day=_merge_breakdowns(a.by_day, b.by_day),
        by_type=_merge_breakdowns(a.by_type, b.by_type),
        by_practitioner=_merge_breakdowns(a.by_practitioner, b.by_practitioner),
        by_department=_merge_breakdowns(a.by_department, b.by_department),
        by_payment_method=_merge_breakdowns(a.by_payment_method, b.by_payment_method),
    )


def commission_records(rows: Iterable[InvoiceRow],
                       practitioners: Mapping[int, PractitionerInfo]) -> List[CommissionRecord]:
    out: List[CommissionRecord] = []
    for row in rows:
        if row.invoice_type == InvoiceType.PURCHASE.value:
            continue
        prac = practitioners.get(row.practitioner_id) if row.practitioner_id else None
        pharmacy, c = split_invoice(row, prac)
        out.append(
            CommissionRecord(
                invoice_id=row.invoice_id,
                invoice_number=row.invoice_number,
                practitioner_id=row.practitioner_id,
                gross_amount=money2(row.total),
                rate_applied=c.rate_applied,
                commission_amount=c.commission_amount,
                facility_share=pharmacy + c.facility_share,
                attribution=c.attribution.value,
            ))
    return out


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def _to_row(inv: Invoice) -> InvoiceRow:
    med = sum((D(it.total_price) for it in inv.items if it.item_kind == LineItemKind.MEDICINE.value), Decimal("0"))
    return InvoiceRow(
        invoice_id=inv.id,
        invoice_number=inv.invoice_number,
        invoice_type=inv.invoice_type,
        issue_date=inv.issue_date,
        practitioner_id=inv.practitioner_id,
        subtotal=money2(inv.subtotal),
        medicine_subtotal=money2(med),
        total=money2(inv.total),
        amount_paid=money2(inv.amount_paid),
        payments=tuple((p.method, money2(p.amount)) for p in inv.payments),
    )


def _to_info(p: Practitioner) -> PractitionerInfo:
    return PractitionerInfo(
        id=p.id,
        name=p.full_name,
        department_id=p.department_id,
        department_name=p.department.name if p.department else None,
        is_full_time=bool(p.is_full_time),
        revenue_percentage=D(p.revenue_percentage) if p.revenue_percentage is not None else None,
    )


def _validate_filter(flt: RevenueFilter) -> None:
    if flt.start and flt.end and flt.start > flt.end:
        raise ValidationError("start must be on or before end", start=str(flt.start), end=str(flt.end))
    if flt.invoice_type:
        try:
            InvoiceType(flt.invoice_type)
        except ValueError:
            raise ValidationError(f"Unknown invoice type: {flt.invoice_type}")
    if flt.payment_method:
        try:
            PaymentMethod(flt.payment_method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {flt.payment_method}")


def load_rows(db: Session, flt: RevenueFilter) -> List[InvoiceRow]:
    _validate_filter(flt)
    q = db.query(Invoice).options(selectinload(Invoice.items), selectinload(Invoice.payments))
    if flt.start:
        q = q.filter(Invoice.issue_date >= flt.start)
    if flt.end:
        q = q.filter(Invoice.issue_date <= flt.end)
    if flt.practitioner_id:
        q = q.filter(Invoice.practitioner_id == flt.practitioner_id)
    if flt.department_id:
        q = q.join(Practitioner, Practitioner.id == Invoice.practitioner_id).filter(
            Practitioner.department_id == flt.department_id)
    if flt.invoice_type:
        q = q.filter(Invoice.invoice_type == flt.invoice_type)
    if flt.payment_method:
        q = q.filter(
            exists().where(
                InvoicePayment.invoice_id == Invoice.id,
                InvoicePayment.method == flt.payment_method,
            ))
    q = q.filter(Invoice.status.in_(sorted(flt.statuses())))
    return [_to_row(inv) for inv in q.order_by(Invoice.issue_date.asc(), Invoice.id.asc()).all()]


def load_practitioners(db: Session, ids: Iterable[Optional[int]]) -> Dict[int, PractitionerInfo]:
    ids = {i for i in ids if i}
    if not ids:
        return {}
    rows = (db.query(Practitioner).options(selectinload(Practitioner.department)).filter(
        Practitioner.id.in_(ids)).all())
    return {p.id: _to_info(p) for p in rows}


def build_revenue_report(db: Session, flt: RevenueFilter | None = None) -> Tuple[RevenueSummary, Dict[int, PractitionerInfo]]:
    flt = flt or RevenueFilter()
    rows = load_rows(db, flt)
    pracs = load_practitioners(db, (r.practitioner_id for r in rows))
    return fold_invoices(rows, pracs), pracs


def summary_to_dict(summary: RevenueSummary, practitioners: Mapping[int, PractitionerInfo] | None = None) -> Dict[str, Any]:
    practitioners = practitioners or {}
    dept_names = {p.department_id: p.department_name for p in practitioners.values() if p.department_id}

    def _rows(bd: Breakdown, key_name: str) -> List[Dict[str, Any]]:
        return [{key_name: k, **v.as_dict()} for k, v in bd]

    by_prac = []
    for pid, bucket in summary.by_practitioner:
        info = practitioners.get(pid) if pid else None
        by_prac.append({
            "practitioner_id": pid,
            "name": info.name if info else "Unattributed",
            "department_id": info.department_id if info else None,
            "department_name": info.department_name if info else None,
            **bucket.as_dict(),
        })

    by_dept = []
    for did, bucket in summary.by_department:
        by_dept.append({
            "department_id": did,
            "name": dept_names.get(did) or ("Unassigned" if did is None else str(did)),
            **bucket.as_dict(),
        })

    return {
        "total_revenue": summary.total_revenue,
        "practitioner_earnings": summary.practitioner_earnings,
        "facility_share": summary.facility_share,
        "collected": summary.collected,
        "outstanding": summary.outstanding,
        "invoice_count": summary.invoice_count,
        "purchases_total": summary.purchases_total,
        "purchases_count": summary.purchases_count,
        "by_day": _rows(summary.by_day, "date"),
        "by_type": _rows(summary.by_type, "invoice_type"),
        "by_practitioner": by_prac,
        "by_department": by_dept,
        "by_payment_method": _rows(summary.by_payment_method, "method"),
    }


# ---------------------------------------------------------------------------
# Report wrappers
# ---------------------------------------------------------------------------
def daily_report(db: Session, day: date) -> Dict[str, Any]:
    summary, pracs = build_revenue_report(db, RevenueFilter(start=day, end=day))
    return {"date": day, **summary_to_dict(summary, pracs)}


def monthly_report(db: Session, year: int, month: int) -> Dict[str, Any]:
    if not 1 <= int(month) <= 12:
        raise ValidationError("month must be 1..12", month=month)
    start = date(int(year), int(month), 1)
    end = date(int(year), int(month), calendar.monthrange(int(year), int(month))[1])
    summary, pracs = build_revenue_report(db, RevenueFilter(start=start, end=end))
    return {"year": int(year), "month": int(month), "start": start, "end": end, **summary_to_dict(summary, pracs)}


def practitioner_report(
    db: Session,
    practitioner_id: int,
    start: date | None = None,
    end: date | None = None,
) -> Dict[str, Any]:
    p = db.get(Practitioner, practitioner_id)
    if not p:
        raise NotFound(f"Practitioner {practitioner_id} not found", practitioner_id=practitioner_id)

    flt = RevenueFilter(start=start, end=end, practitioner_id=practitioner_id)
    rows = load_rows(db, flt)
    pracs = {p.id: _to_info(p)}
    summary = fold_invoices(rows, pracs)
    return {
        "practitioner": {
            "id": p.id,
            "name": p.full_name,
            "department_id": p.department_id,
            "is_full_time": bool(p.is_full_time),
            "payment_type": p.payment_type,
            "revenue_percentage": p.revenue_percentage,
        },
        "start": start,
        "end": end,
        **summary_to_dict(summary, pracs),
        "commissions": [asdict(r) for r in commission_records(rows, pracs)],
    }
