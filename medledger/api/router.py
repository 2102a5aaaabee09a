# medledger/api/router.py
from fastapi import APIRouter

from medledger.api import routes_inventory, routes_invoices, routes_revenue

api_router = APIRouter()

api_router.include_router(routes_invoices.router, prefix="/invoices", tags=["invoices"])
api_router.include_router(routes_revenue.router, prefix="/revenue", tags=["revenue"])
api_router.include_router(routes_inventory.router, prefix="/inventory", tags=["inventory"])
