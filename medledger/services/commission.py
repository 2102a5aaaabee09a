# medledger/services/commission.py
"""
Practitioner / facility revenue split. Pure: no session, no queries.

Rules, first match wins:
  1. pharmacy revenue          -> 0 commission   (PHARMACY)
  2. no practitioner           -> 0 commission   (UNATTRIBUTED)
  3. full-time practitioner    -> 0 commission   (FULL_TIME)
  4. otherwise revenue_percentage (default 30%) of gross (ATTRIBUTED)

commission_amount + facility_share == gross_amount, always.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from medledger.core.config import settings
from medledger.core.errors import ValidationError
from medledger.services.billing_math import D, money2


class Attribution(str, enum.Enum):
    ATTRIBUTED = "ATTRIBUTED"
    FULL_TIME = "FULL_TIME"
    PHARMACY = "PHARMACY"
    UNATTRIBUTED = "UNATTRIBUTED"


# invoice types / line kinds that are always facility revenue
PHARMACY_SERVICE_TYPES = {"Pharmacy", "Medicine"}


@dataclass(frozen=True)
class CommissionResult:
    practitioner_id: Optional[int]
    gross_amount: Decimal
    rate_applied: Decimal
    commission_amount: Decimal
    facility_share: Decimal
    attribution: Attribution


def _type_value(service_type) -> str:
    if service_type is None:
        return ""
    return str(getattr(service_type, "value", service_type))


def effective_rate(practitioner) -> Decimal:
    if practitioner is None or getattr(practitioner, "is_full_time", False):
        return Decimal("0")
    pct = getattr(practitioner, "revenue_percentage", None)
    if pct is None:
        pct = settings.DEFAULT_COMMISSION_PERCENT
    pct = D(pct)
    if pct < 0 or pct > 100:
        raise ValidationError("revenue_percentage must be between 0 and 100",
                              practitioner_id=getattr(practitioner, "id", None),
                              revenue_percentage=str(pct))
    return pct


def commission(practitioner, gross_amount, service_type=None) -> CommissionResult:
    gross = money2(gross_amount)
    if gross < 0:
        raise ValidationError("gross_amount must be >= 0", gross_amount=str(gross))

    pid = getattr(practitioner, "id", None)

    def _result(rate: Decimal, attribution: Attribution) -> CommissionResult:
        amount = money2(gross * rate / Decimal("100"))
        return CommissionResult(
            practitioner_id=pid,
            gross_amount=gross,
            rate_applied=rate,
            commission_amount=amount,
            facility_share=gross - amount,
            attribution=attribution,
        )

    if _type_value(service_type) in PHARMACY_SERVICE_TYPES:
        return _result(Decimal("0"), Attribution.PHARMACY)
    if practitioner is None:
        return _result(Decimal("0"), Attribution.UNATTRIBUTED)
    if practitioner.is_full_time:
        return _result(Decimal("0"), Attribution.FULL_TIME)
    return _result(effective_rate(practitioner), Attribution.ATTRIBUTED)
