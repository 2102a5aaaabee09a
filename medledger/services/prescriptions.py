# medledger/services/prescriptions.py
from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from medledger.models.clinical import Prescription, PrescriptionStatus

logger = logging.getLogger(__name__)


def expire_prescriptions(db: Session, today: date | None = None) -> int:
    """
    Flip lapsed Active prescriptions (issue_date + validity_days < today) to
    Expired. One UPDATE; running it twice changes nothing the second time.
    """
    today = today or date.today()

    # date + per-row interval is not portable between MySQL and SQLite
    candidates = (db.query(Prescription.id, Prescription.issue_date, Prescription.validity_days).filter(
        Prescription.status == PrescriptionStatus.ACTIVE.value,
        Prescription.issue_date < today,
    ).all())
    lapsed = [
        r.id for r in candidates
        if r.issue_date + timedelta(days=int(r.validity_days or 0)) < today
    ]
    if not lapsed:
        logger.info("Prescription sweep: nothing to expire")
        return 0

    res = db.execute(
        update(Prescription).where(
            Prescription.id.in_(lapsed),
            Prescription.status == PrescriptionStatus.ACTIVE.value,
        ).values(status=PrescriptionStatus.EXPIRED.value).execution_options(synchronize_session=False))
    db.commit()
    logger.info("Prescription sweep: %s expired", res.rowcount)
    return int(res.rowcount)
