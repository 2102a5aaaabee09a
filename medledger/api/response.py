# medledger/api/response.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from medledger.core.errors import BillingError


def _json(status_code: int, payload: Dict[str, Any]) -> JSONResponse:
    # Decimal money goes out as float, dates as ISO strings
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def ok(data: Any, *, meta: Optional[Dict[str, Any]] = None, status_code: int = 200) -> JSONResponse:
    """{"ok": true, "data": ..., "meta": {...}}; meta only for paged lists and reports."""
    payload: Dict[str, Any] = {"ok": True, "data": data}
    if meta is not None:
        payload["meta"] = meta
    return _json(status_code, payload)


def err(msg: str, *, status_code: int, code: Optional[str] = None, details: Any = None) -> JSONResponse:
    return _json(status_code, {"ok": False, "error": {"msg": msg, "code": code, "details": details}})


def billing_err(exc: BillingError) -> JSONResponse:
    return err(exc.message, status_code=exc.status_code, code=exc.code, details=exc.context or None)
