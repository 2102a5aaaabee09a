# medledger/services/billing_numbers.py
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medledger.core.config import settings
from medledger.core.errors import ConcurrencyConflict, ValidationError
from medledger.models.billing import INVOICE_PREFIXES, InvoiceNumberSeries, InvoiceType

logger = logging.getLogger(__name__)


def _period_key(dt: datetime) -> str:
    return dt.strftime("%Y%m")


def _bump(db: Session, prefix: str, pk: str) -> int | None:
    res = db.execute(
        update(InvoiceNumberSeries).where(
            InvoiceNumberSeries.prefix == prefix,
            InvoiceNumberSeries.period_key == pk,
        ).values(
            last_seq=InvoiceNumberSeries.last_seq + 1,
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False))
    if res.rowcount != 1:
        return None
    return int(
        db.execute(
            select(InvoiceNumberSeries.last_seq).where(
                InvoiceNumberSeries.prefix == prefix,
                InvoiceNumberSeries.period_key == pk,
            )).scalar_one())


def next_sequence(db: Session, prefix: str, *, now: datetime | None = None) -> int:
    """
    Atomically take the next number of the (prefix, YYYYMM) series.

    The increment is a single UPDATE, so two transactions can never read the
    same value. The first number of a month inserts the row; losing that
    insert race to another transaction falls back to the UPDATE once.
    """
    now = now or datetime.utcnow()
    pk = _period_key(now)

    seq = _bump(db, prefix, pk)
    if seq is not None:
        return seq

    try:
        with db.begin_nested():
            db.add(InvoiceNumberSeries(prefix=prefix, period_key=pk, last_seq=1))
            db.flush()
        return 1
    except IntegrityError:
        logger.info("Series %s/%s created concurrently, retrying increment", prefix, pk)

    seq = _bump(db, prefix, pk)
    if seq is None:
        raise ConcurrencyConflict("Could not allocate invoice number", prefix=prefix, period=pk)
    return seq


def format_invoice_number(prefix: str, period_key: str, seq: int) -> str:
    return f"{prefix}-{period_key}-{str(seq).zfill(int(settings.INVOICE_SEQ_PADDING))}"


def next_invoice_number(db: Session, invoice_type, *, now: datetime | None = None) -> str:
    try:
        itype = InvoiceType(invoice_type)
    except ValueError:
        raise ValidationError(f"Unknown invoice type: {invoice_type}", invoice_type=str(invoice_type))

    now = now or datetime.utcnow()
    prefix = INVOICE_PREFIXES[itype]
    seq = next_sequence(db, prefix, now=now)
    return format_invoice_number(prefix, _period_key(now), seq)
