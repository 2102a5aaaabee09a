# medledger/core/errors.py
"""
Typed failures raised by the billing / stock services.

Services raise these; routes never catch them. The API layer turns them
into the standard error envelope (see api/exception_handlers.py).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    code: str = "BILLING_ERROR"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {
            k: v
            for k, v in context.items() if v is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "msg": self.message,
            "details": self.context or None,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({ctx})"


class ValidationError(BillingError):
    """Malformed or missing input. Caller error, do not retry."""
    code = "VALIDATION_ERROR"
    status_code = 400


class InsufficientStock(BillingError):
    code = "INSUFFICIENT_STOCK"
    status_code = 400

    def __init__(self,
                 *,
                 medicine_id: int,
                 batch_id: int,
                 requested: int,
                 available: int,
                 message: Optional[str] = None) -> None:
        super().__init__(
            message or (f"Insufficient stock in batch {batch_id}: "
                        f"requested {requested}, available {available}"),
            medicine_id=medicine_id,
            batch_id=batch_id,
            requested=requested,
            available=available,
        )
        self.medicine_id = medicine_id
        self.batch_id = batch_id
        self.requested = requested
        self.available = available


class OverpaymentRejected(BillingError):
    code = "OVERPAYMENT_REJECTED"
    status_code = 400


class NotFound(BillingError):
    code = "NOT_FOUND"
    status_code = 404


class InvoiceNotFound(NotFound):
    code = "INVOICE_NOT_FOUND"


class BatchNotFound(NotFound):
    code = "BATCH_NOT_FOUND"


class MedicineNotFound(NotFound):
    code = "MEDICINE_NOT_FOUND"


class InvalidInvoiceState(BillingError):
    """Operation not allowed in the invoice's current status."""
    code = "INVALID_INVOICE_STATE"
    status_code = 409


class ConcurrencyConflict(BillingError):
    """Lost a race on an atomic counter / quantity update. Safe to retry."""
    code = "CONCURRENCY_CONFLICT"
    status_code = 409
    retryable = True


class PersistenceError(BillingError):
    """Storage layer unavailable after bounded retries."""
    code = "PERSISTENCE_ERROR"
    status_code = 503
    retryable = True
