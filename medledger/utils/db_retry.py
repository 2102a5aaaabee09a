# medledger/utils/db_retry.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError

from medledger.core.config import settings
from medledger.core.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_db_retry(
    fn: Callable[[], T],
    *,
    attempts: Optional[int] = None,
    backoff: float = 0.2,
    on_retry: Optional[Callable[[], None]] = None,
) -> T:
    """
    Run fn(), retrying transient OperationalError (lost connection, lock wait
    timeout, deadlock) up to `attempts` times. Business errors pass straight
    through. on_retry runs between attempts, typically db.rollback.
    """
    n = max(int(attempts or settings.DB_RETRY_ATTEMPTS), 1)
    last: Optional[OperationalError] = None
    for i in range(1, n + 1):
        try:
            return fn()
        except OperationalError as e:
            last = e
            logger.warning("DB operation failed (attempt %s/%s): %s", i, n, e.orig if e.orig else e)
            if on_retry is not None:
                on_retry()
            if i < n:
                time.sleep(backoff * i)
    raise PersistenceError("Database unavailable, please retry", attempts=n) from last
