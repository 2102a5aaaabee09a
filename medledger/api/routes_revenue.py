# medledger/api/routes_revenue.py
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Path as FPath, Query
from sqlalchemy.orm import Session

from medledger.api.deps import current_actor, get_db
from medledger.api.response import ok
from medledger.services import revenue

router = APIRouter()


@router.get("")
def revenue_report(
        start: Optional[date] = Query(None),
        end: Optional[date] = Query(None),
        doctor_id: Optional[int] = Query(None, alias="doctorId"),
        department_id: Optional[int] = Query(None, alias="departmentId"),
        invoice_type: Optional[str] = Query(None, alias="type"),
        payment_method: Optional[str] = Query(None, alias="paymentMethod"),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    flt = revenue.RevenueFilter(
        start=start,
        end=end,
        practitioner_id=doctor_id,
        department_id=department_id,
        invoice_type=invoice_type,
        payment_method=payment_method,
    )
    summary, pracs = revenue.build_revenue_report(db, flt)
    return ok(revenue.summary_to_dict(summary, pracs), meta={"start": start, "end": end})


@router.get("/daily")
def daily(
        day: Optional[date] = Query(None),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    return ok(revenue.daily_report(db, day or date.today()))


@router.get("/monthly")
def monthly(
        year: int = Query(..., ge=2000, le=2100),
        month: int = Query(..., ge=1, le=12),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    return ok(revenue.monthly_report(db, year, month))


@router.get("/practitioners/{practitioner_id}")
def practitioner(
        practitioner_id: int = FPath(..., gt=0),
        start: Optional[date] = Query(None),
        end: Optional[date] = Query(None),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    return ok(revenue.practitioner_report(db, practitioner_id, start, end))
