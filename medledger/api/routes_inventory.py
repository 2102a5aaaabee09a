# medledger/api/routes_inventory.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path as FPath, Query
from sqlalchemy.orm import Session

from medledger.api.deps import current_actor, get_db
from medledger.api.response import ok
from medledger.schemas.inventory import (
    BatchOut,
    BatchReceiveIn,
    BatchSnapshotOut,
    MedicineStockOut,
    StockAdjustIn,
    StockTransactionOut,
)
from medledger.services import stock_ledger

router = APIRouter()


@router.post("/medicines/{medicine_id}/batches", status_code=201)
def receive_batch(
        payload: BatchReceiveIn,
        medicine_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    try:
        snap = stock_ledger.receive(
            db,
            medicine_id,
            payload.model_dump(exclude={"quantity"}),
            payload.quantity,
            actor_id=actor_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return ok(BatchSnapshotOut.model_validate(snap).model_dump(), status_code=201)


@router.post("/batches/{batch_id}/adjust")
def adjust_batch(
        payload: StockAdjustIn,
        batch_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    try:
        snap = stock_ledger.adjust(
            db, batch_id, payload.delta, payload.reason, actor_id=actor_id, note=payload.note)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return ok(BatchSnapshotOut.model_validate(snap).model_dump())


@router.get("/medicines/low-stock")
def low_stock(
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    rows = stock_ledger.low_stock_medicines(db)
    return ok([MedicineStockOut.model_validate(m).model_dump() for m in rows])


@router.get("/medicines/{medicine_id}/batches")
def list_batches(
        medicine_id: int = FPath(..., gt=0),
        in_stock_only: bool = Query(False),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    rows = stock_ledger.list_batches(db, medicine_id, in_stock_only=in_stock_only)
    return ok([BatchOut.model_validate(b).model_dump() for b in rows])


@router.get("/medicines/{medicine_id}/recommended-batch")
def recommended_batch(
        medicine_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    snap = stock_ledger.recommend_batch(db, medicine_id)
    return ok(BatchSnapshotOut.model_validate(snap).model_dump() if snap else None)


@router.get("/batches/expiring")
def expiring(
        days: Optional[int] = Query(None, ge=0),
        include_expired: bool = Query(True),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    rows = stock_ledger.expiring_batches(db, within_days=days, include_expired=include_expired)
    return ok([BatchOut.model_validate(b).model_dump() for b in rows])


@router.get("/batches/{batch_id}/movements")
def movements(
        batch_id: int = FPath(..., gt=0),
        db: Session = Depends(get_db),
        actor_id: int = Depends(current_actor),
):
    rows = stock_ledger.stock_movements(db, batch_id)
    return ok([StockTransactionOut.model_validate(t).model_dump() for t in rows])
