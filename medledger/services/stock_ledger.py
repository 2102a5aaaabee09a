# medledger/services/stock_ledger.py
"""
Batch-level stock ledger.

Every mutation here:
  - changes MedicineBatch.quantity and Medicine.stock_quantity together
  - writes exactly one StockTransaction journal row
  - flushes but never commits (callers own the transaction)

Quantity decrements are compare-and-swap UPDATEs, so two concurrent
dispenses of the same batch can never both succeed past the on-hand qty.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.orm import Session

from medledger.core.config import settings
from medledger.core.errors import (
    BatchNotFound,
    ConcurrencyConflict,
    InsufficientStock,
    MedicineNotFound,
    ValidationError,
)
from medledger.models.pharmacy_inventory import (
    AdjustmentReason,
    Medicine,
    MedicineBatch,
    StockTransaction,
    StockTxnType,
)

logger = logging.getLogger(__name__)

# reason -> allowed sign of delta (+1 / -1 / 0 = either)
_REASON_SIGN = {
    AdjustmentReason.ADDITION: 1,
    AdjustmentReason.DAMAGE: -1,
    AdjustmentReason.EXPIRY: -1,
    AdjustmentReason.DEDUCTION: -1,
    AdjustmentReason.CORRECTION: 0,
}


@dataclass(frozen=True)
class BatchSnapshot:
    batch_id: int
    medicine_id: int
    batch_number: str
    expiry_date: date
    quantity: int
    medicine_stock: int
    selling_price: Decimal


def positive_qty(value, field: str = "quantity") -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer", **{field: value})
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer", **{field: value})
    if n != value and not (isinstance(value, str) and value.strip() == str(n)):
        raise ValidationError(f"{field} must be a whole number", **{field: value})
    if n <= 0:
        raise ValidationError(f"{field} must be > 0", **{field: n})
    return n


def _reload_batch(db: Session, batch_id: int, *, lock: bool = False) -> Optional[MedicineBatch]:
    stmt = select(MedicineBatch).where(MedicineBatch.id == batch_id)
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def _reload_medicine(db: Session, medicine_id: int, *, lock: bool = False) -> Optional[Medicine]:
    stmt = select(Medicine).where(Medicine.id == medicine_id)
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def _snapshot(batch: MedicineBatch, medicine: Medicine) -> BatchSnapshot:
    return BatchSnapshot(
        batch_id=batch.id,
        medicine_id=batch.medicine_id,
        batch_number=batch.batch_number,
        expiry_date=batch.expiry_date,
        quantity=int(batch.quantity or 0),
        medicine_stock=int(medicine.stock_quantity or 0),
        selling_price=Decimal(str(batch.selling_price or 0)),
    )


def _journal(
    db: Session,
    *,
    batch_id: int,
    medicine_id: int,
    txn_type: StockTxnType,
    qty_delta: int,
    qty_after: int,
    actor_id: int | None = None,
    reason_code: str | None = None,
    reason: str = "",
    note: str | None = None,
    ref_type: str = "",
    ref_id: int | None = None,
) -> StockTransaction:
    """Single writer for StockTransaction so every movement is recorded the same way."""
    st = StockTransaction(
        batch_id=batch_id,
        medicine_id=medicine_id,
        txn_type=txn_type.value,
        quantity_change=int(qty_delta),
        quantity_after=int(qty_after),
        reason_code=reason_code,
        reason=reason or "",
        note=note,
        ref_type=ref_type or "",
        ref_id=ref_id,
        performed_by=actor_id,
    )
    db.add(st)
    return st


def _bump_medicine_counter(db: Session, medicine_id: int, delta: int) -> int:
    """Add delta to the aggregate counter, never below zero. Returns rows updated."""
    res = db.execute(
        update(Medicine).where(Medicine.id == medicine_id).values(
            stock_quantity=case(
                (Medicine.stock_quantity + delta < 0, 0),
                else_=Medicine.stock_quantity + delta,
            ),
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False))
    return res.rowcount


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------
def deduct(
    db: Session,
    medicine_id: int,
    batch_id: int,
    quantity,
    *,
    actor_id: int | None = None,
    ref_type: str = "",
    ref_id: int | None = None,
    reason: str = "",
) -> BatchSnapshot:
    qty = positive_qty(quantity)
    now = datetime.utcnow()

    res = db.execute(
        update(MedicineBatch).where(
            MedicineBatch.id == batch_id,
            MedicineBatch.medicine_id == medicine_id,
            MedicineBatch.quantity >= qty,
        ).values(
            quantity=MedicineBatch.quantity - qty,
            updated_at=now,
        ).execution_options(synchronize_session=False))

    if res.rowcount != 1:
        row = db.execute(
            select(MedicineBatch.medicine_id, MedicineBatch.quantity).where(
                MedicineBatch.id == batch_id)).first()
        if row is None or row.medicine_id != medicine_id:
            raise BatchNotFound(
                f"Batch {batch_id} not found for medicine {medicine_id}",
                medicine_id=medicine_id,
                batch_id=batch_id,
            )
        logger.warning(
            "Insufficient stock: medicine=%s batch=%s requested=%s available=%s",
            medicine_id, batch_id, qty, row.quantity)
        raise InsufficientStock(
            medicine_id=medicine_id,
            batch_id=batch_id,
            requested=qty,
            available=int(row.quantity or 0),
        )

    res = db.execute(
        update(Medicine).where(
            Medicine.id == medicine_id,
            Medicine.stock_quantity >= qty,
        ).values(
            stock_quantity=Medicine.stock_quantity - qty,
            updated_at=now,
        ).execution_options(synchronize_session=False))

    if res.rowcount != 1:
        # counter drifted below the batch total; put the batch back
        db.execute(
            update(MedicineBatch).where(MedicineBatch.id == batch_id).values(
                quantity=MedicineBatch.quantity + qty).execution_options(
                    synchronize_session=False))
        logger.error("Medicine %s stock counter out of step with batch %s", medicine_id, batch_id)
        raise ConcurrencyConflict(
            "Medicine stock counter changed concurrently",
            medicine_id=medicine_id,
            batch_id=batch_id,
            requested=qty,
        )

    batch = _reload_batch(db, batch_id)
    medicine = _reload_medicine(db, medicine_id)

    _journal(
        db,
        batch_id=batch_id,
        medicine_id=medicine_id,
        txn_type=StockTxnType.DISPENSE,
        qty_delta=-qty,
        qty_after=batch.quantity,
        actor_id=actor_id,
        reason=reason or (f"Dispense for {ref_type} {ref_id}" if ref_type else "Dispense"),
        ref_type=ref_type,
        ref_id=ref_id,
    )
    db.flush()
    return _snapshot(batch, medicine)


def reverse_deduction(
    db: Session,
    medicine_id: int,
    batch_id: int,
    quantity,
    *,
    actor_id: int | None = None,
    ref_type: str = "",
    ref_id: int | None = None,
    reason: str = "",
) -> BatchSnapshot:
    """Compensating re-increment for an earlier deduct()."""
    qty = positive_qty(quantity)

    res = db.execute(
        update(MedicineBatch).where(
            MedicineBatch.id == batch_id,
            MedicineBatch.medicine_id == medicine_id,
        ).values(
            quantity=MedicineBatch.quantity + qty,
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False))
    if res.rowcount != 1:
        raise BatchNotFound(
            f"Batch {batch_id} not found for medicine {medicine_id}",
            medicine_id=medicine_id,
            batch_id=batch_id,
        )
    _bump_medicine_counter(db, medicine_id, qty)

    batch = _reload_batch(db, batch_id)
    medicine = _reload_medicine(db, medicine_id)
    _journal(
        db,
        batch_id=batch_id,
        medicine_id=medicine_id,
        txn_type=StockTxnType.REVERSAL,
        qty_delta=qty,
        qty_after=batch.quantity,
        actor_id=actor_id,
        reason=reason or "Reversal",
        ref_type=ref_type,
        ref_id=ref_id,
    )
    db.flush()
    logger.info("Reversed %s units into batch %s (%s %s)", qty, batch_id, ref_type, ref_id)
    return _snapshot(batch, medicine)


def _descriptor_dict(descriptor) -> Dict[str, Any]:
    if descriptor is None:
        return {}
    if isinstance(descriptor, Mapping):
        return dict(descriptor)
    if hasattr(descriptor, "model_dump"):
        return descriptor.model_dump()
    return dict(vars(descriptor))


def receive(
    db: Session,
    medicine_id: int,
    descriptor,
    quantity,
    *,
    actor_id: int | None = None,
) -> BatchSnapshot:
    """
    Book a purchase receipt into a batch.

    descriptor keys: batch_number, expiry_date, purchase_price, selling_price,
    supplier_id, purchase_date, purchase_order_id.
    An existing (medicine, batch_number) is topped up instead of duplicated.
    """
    qty = positive_qty(quantity)
    data = _descriptor_dict(descriptor)

    batch_number = str(data.get("batch_number") or "").strip()
    if not batch_number:
        raise ValidationError("batch_number is required")
    expiry_date = data.get("expiry_date")
    if not expiry_date:
        raise ValidationError("expiry_date is required", batch_number=batch_number)
    if isinstance(expiry_date, str):
        try:
            expiry_date = date.fromisoformat(expiry_date)
        except ValueError:
            raise ValidationError("expiry_date must be YYYY-MM-DD", expiry_date=expiry_date)

    medicine = _reload_medicine(db, medicine_id, lock=True)
    if not medicine:
        raise MedicineNotFound(f"Medicine {medicine_id} not found", medicine_id=medicine_id)

    batch = db.execute(
        select(MedicineBatch).where(
            MedicineBatch.medicine_id == medicine_id,
            MedicineBatch.batch_number == batch_number,
        ).with_for_update().execution_options(populate_existing=True)).scalar_one_or_none()

    if batch is None:
        batch = MedicineBatch(
            medicine_id=medicine_id,
            supplier_id=data.get("supplier_id"),
            batch_number=batch_number,
            expiry_date=expiry_date,
            quantity=qty,
            purchase_price=data.get("purchase_price") or 0,
            selling_price=data.get("selling_price") or medicine.default_price or 0,
            purchase_date=data.get("purchase_date") or date.today(),
            received_date=date.today(),
            purchase_order_id=data.get("purchase_order_id"),
            is_active=True,
        )
        db.add(batch)
        db.flush()
    else:
        if batch.expiry_date != expiry_date:
            raise ValidationError(
                "Batch number already exists with a different expiry date",
                batch_id=batch.id,
                batch_number=batch_number,
            )
        batch.quantity = int(batch.quantity or 0) + qty
        batch.is_active = True
        db.flush()

    _bump_medicine_counter(db, medicine_id, qty)
    medicine = _reload_medicine(db, medicine_id)

    _journal(
        db,
        batch_id=batch.id,
        medicine_id=medicine_id,
        txn_type=StockTxnType.RECEIPT,
        qty_delta=qty,
        qty_after=batch.quantity,
        actor_id=actor_id,
        reason="Purchase receipt",
        ref_type="PURCHASE_ORDER" if data.get("purchase_order_id") else "",
        ref_id=data.get("purchase_order_id"),
    )
    db.flush()
    logger.info("Received %s units of medicine %s into batch %s", qty, medicine_id, batch_number)
    return _snapshot(batch, medicine)


def adjust(
    db: Session,
    batch_id: int,
    delta,
    reason,
    *,
    actor_id: int | None = None,
    note: str | None = None,
) -> BatchSnapshot:
    """
    Manual stock adjustment.

    Addition needs delta > 0; Damage / Expiry / Deduction need delta < 0;
    Correction takes either sign. A reduction past zero is clamped to 0 and
    the journal records the delta actually applied.
    """
    try:
        reason = AdjustmentReason(reason)
    except ValueError:
        raise ValidationError(f"Unknown adjustment reason: {reason}", reason=str(reason))

    try:
        delta = int(delta)
    except (TypeError, ValueError):
        raise ValidationError("delta must be an integer", delta=delta)
    if delta == 0:
        raise ValidationError("delta must be non-zero")

    sign = _REASON_SIGN[reason]
    if sign and (delta > 0) != (sign > 0):
        raise ValidationError(
            f"{reason.value} requires a {'positive' if sign > 0 else 'negative'} delta",
            reason=reason.value,
            delta=delta,
        )

    batch = _reload_batch(db, batch_id, lock=True)
    if not batch:
        raise BatchNotFound(f"Batch {batch_id} not found", batch_id=batch_id)

    current = int(batch.quantity or 0)
    effective = delta
    if current + delta < 0:
        effective = -current
        logger.warning(
            "Adjustment on batch %s clamped: requested %s, applied %s", batch_id, delta, effective)

    batch.quantity = current + effective
    db.flush()
    if effective:
        _bump_medicine_counter(db, batch.medicine_id, effective)
    medicine = _reload_medicine(db, batch.medicine_id)

    _journal(
        db,
        batch_id=batch.id,
        medicine_id=batch.medicine_id,
        txn_type=StockTxnType.ADJUSTMENT,
        qty_delta=effective,
        qty_after=batch.quantity,
        actor_id=actor_id,
        reason_code=reason.value,
        reason=f"Adjustment ({reason.value})",
        note=note,
        ref_type="ADJUSTMENT",
    )
    db.flush()
    return _snapshot(batch, medicine)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def recommend_batch(db: Session, medicine_id: int, *, today: date | None = None) -> Optional[BatchSnapshot]:
    """
    FEFO suggestion: earliest-expiring in-stock, unexpired batch
    (ties -> earliest purchase_date, then id). Advisory only; nothing is reserved.
    """
    today = today or date.today()
    batch = (db.query(MedicineBatch).filter(
        MedicineBatch.medicine_id == medicine_id,
        MedicineBatch.quantity > 0,
        MedicineBatch.is_active.is_(True),
        MedicineBatch.expiry_date >= today,
    ).order_by(
        MedicineBatch.expiry_date.asc(),
        MedicineBatch.purchase_date.asc(),
        MedicineBatch.id.asc(),
    ).first())
    if not batch:
        return None
    medicine = db.get(Medicine, medicine_id)
    return _snapshot(batch, medicine)


def list_batches(db: Session, medicine_id: int, *, in_stock_only: bool = False) -> List[MedicineBatch]:
    if not db.get(Medicine, medicine_id):
        raise MedicineNotFound(f"Medicine {medicine_id} not found", medicine_id=medicine_id)
    q = db.query(MedicineBatch).filter(MedicineBatch.medicine_id == medicine_id)
    if in_stock_only:
        q = q.filter(MedicineBatch.quantity > 0)
    return q.order_by(MedicineBatch.expiry_date.asc(), MedicineBatch.id.asc()).all()


def expiring_batches(
    db: Session,
    *,
    within_days: int | None = None,
    today: date | None = None,
    include_expired: bool = True,
) -> List[MedicineBatch]:
    """In-stock batches expiring on or before today + within_days."""
    today = today or date.today()
    days = settings.EXPIRY_ALERT_DAYS if within_days is None else int(within_days)
    if days < 0:
        raise ValidationError("within_days must be >= 0", within_days=days)

    q = db.query(MedicineBatch).filter(
        MedicineBatch.quantity > 0,
        MedicineBatch.expiry_date <= today + timedelta(days=days),
    )
    if not include_expired:
        q = q.filter(MedicineBatch.expiry_date >= today)
    return q.order_by(MedicineBatch.expiry_date.asc(), MedicineBatch.id.asc()).all()


def low_stock_medicines(db: Session) -> List[Medicine]:
    return (db.query(Medicine).filter(
        Medicine.is_active.is_(True),
        Medicine.stock_quantity <= Medicine.reorder_level,
    ).order_by(Medicine.stock_quantity.asc(), Medicine.name.asc()).all())


def stock_movements(db: Session, batch_id: int) -> List[StockTransaction]:
    if not db.get(MedicineBatch, batch_id):
        raise BatchNotFound(f"Batch {batch_id} not found", batch_id=batch_id)
    return (db.query(StockTransaction).filter(
        StockTransaction.batch_id == batch_id).order_by(StockTransaction.id.asc()).all())


def journal_totals(db: Session, batch_id: int) -> Dict[str, int]:
    """Sum of inbound and outbound journal movements for a batch."""
    inbound = func.coalesce(
        func.sum(case((StockTransaction.quantity_change > 0, StockTransaction.quantity_change), else_=0)), 0)
    outbound = func.coalesce(
        func.sum(case((StockTransaction.quantity_change < 0, -StockTransaction.quantity_change), else_=0)), 0)
    row = db.execute(
        select(inbound.label("inbound"), outbound.label("outbound")).where(
            StockTransaction.batch_id == batch_id)).one()
    return {"inbound": int(row.inbound or 0), "outbound": int(row.outbound or 0)}
