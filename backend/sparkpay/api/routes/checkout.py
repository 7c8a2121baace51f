"""
Checkout endpoints: reserve inventory and open a gateway payment session.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.db.session import get_db
from sparkpay.schemas.checkout import CheckoutResponse, ProductCheckoutRequest, TicketCheckoutRequest
from sparkpay.services.checkout_service import create_product_checkout, create_ticket_checkout
from sparkpay.services.cache_service import invalidate_availability_cache
from sparkpay.infrastructure.payment_gateway import MidtransGateway, get_gateway
from sparkpay.core.security import get_current_user_id

router = APIRouter(prefix="/checkout", tags=["Checkout"])


@router.post("/tickets", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout_tickets(
    request: TicketCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: MidtransGateway = Depends(get_gateway),
    origin: Optional[str] = Header(None),
):
    """
    Reserve capacity for the selected sessions and return a payment token.

    409 when any bucket is sold out (no hold is kept), 400 when a selected
    session has already ended, 502 when the gateway rejects the order (the
    order and its holds are rolled back).
    """
    result = await create_ticket_checkout(db, gateway, user_id, request, origin)
    await invalidate_availability_cache()
    return result


@router.post("/products", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout_products(
    request: ProductCheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: MidtransGateway = Depends(get_gateway),
    origin: Optional[str] = Header(None),
):
    """Reserve variant stock for a pickup order and return a payment token."""
    return await create_product_checkout(db, gateway, user_id, request, origin)
