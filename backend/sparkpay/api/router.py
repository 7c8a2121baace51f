"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from sparkpay.api.routes import checkout, payments, orders, tickets, maintenance

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(checkout.router)
api_router.include_router(payments.router)
api_router.include_router(orders.router)
api_router.include_router(tickets.router)
api_router.include_router(maintenance.router)
