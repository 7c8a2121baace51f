"""
Scheduled maintenance endpoints, triggered by an external scheduler.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.db.session import get_db
from sparkpay.schemas.payment import ExpireTicketsResponse, ReconcileResponse
from sparkpay.services.reconciliation_service import expire_purchased_tickets, reconcile_payments
from sparkpay.infrastructure.payment_gateway import MidtransGateway, get_gateway
from sparkpay.core.config import get_settings
from sparkpay.core.logging import get_logger

logger = get_logger(__name__)


async def verify_cron_secret(x_cron_secret: Optional[str] = Header(None)) -> None:
    """Require the shared scheduler secret when one is configured."""
    expected = get_settings().CRON_SECRET
    if expected and x_cron_secret != expected:
        logger.warning("maintenance_unauthorized")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


router = APIRouter(
    prefix="/maintenance",
    tags=["Maintenance"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    db: AsyncSession = Depends(get_db),
    gateway: MidtransGateway = Depends(get_gateway),
):
    """Re-drive missed payment side effects and expire abandoned payments."""
    return await reconcile_payments(db, gateway)


@router.post("/expire-tickets", response_model=ExpireTicketsResponse)
async def expire_tickets(db: AsyncSession = Depends(get_db)):
    """Expire purchased tickets whose valid date has passed."""
    return await expire_purchased_tickets(db)
