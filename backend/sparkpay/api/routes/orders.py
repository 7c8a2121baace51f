"""
Order actions available to the order owner.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.db.session import get_db
from sparkpay.schemas.payment import CancelResponse
from sparkpay.services.payment_sync import cancel_product_order
from sparkpay.core.security import get_current_user_id

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("/products/{order_number}/cancel", response_model=CancelResponse)
async def cancel_product_order_endpoint(
    order_number: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Cancel an unpaid pickup order. Paid or already closed orders are left untouched."""
    return await cancel_product_order(db, order_number, user_id)
