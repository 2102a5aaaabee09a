# medledger/scripts/run_sweeps.py
"""
Periodic housekeeping, run from cron / a scheduler:

    python -m medledger.scripts.run_sweeps            # both sweeps
    python -m medledger.scripts.run_sweeps --only overdue

Both sweeps are idempotent.
"""
from __future__ import annotations

import argparse
import logging
from datetime import date, datetime
from typing import Dict, Optional, Sequence

from sqlalchemy.orm import Session

from medledger.core.config import settings
from medledger.db.session import SessionLocal
from medledger.services.payment_ledger import refresh_overdue
from medledger.services.prescriptions import expire_prescriptions
from medledger.utils.db_retry import with_db_retry

logger = logging.getLogger(__name__)

SWEEPS = ("prescriptions", "overdue")


def run_sweeps(db: Session, *, only: Optional[str] = None, today: Optional[date] = None) -> Dict[str, int]:
    now = datetime.combine(today, datetime.min.time()) if today else datetime.utcnow()
    result: Dict[str, int] = {}

    if only in (None, "prescriptions"):
        result["prescriptions_expired"] = with_db_retry(
            lambda: expire_prescriptions(db, now.date()), on_retry=db.rollback)
    if only in (None, "overdue"):
        result["invoices_changed"] = with_db_retry(
            lambda: refresh_overdue(db, now), on_retry=db.rollback)
    return result


def _parse_date(s: str) -> date:
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {s!r}, expected YYYY-MM-DD")


def main(argv: Optional[Sequence[str]] = None) -> Dict[str, int]:
    parser = argparse.ArgumentParser(description="Run billing housekeeping sweeps.")
    parser.add_argument("--only", choices=SWEEPS, help="Run a single sweep.")
    parser.add_argument("--today", type=_parse_date, help="Override today's date (YYYY-MM-DD).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = SessionLocal()
    try:
        result = run_sweeps(db, only=args.only, today=args.today)
    finally:
        db.close()

    for k, v in result.items():
        print(f"{k}: {v}")
    return result


if __name__ == "__main__":
    main()
