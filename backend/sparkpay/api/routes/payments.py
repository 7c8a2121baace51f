"""
Payment status endpoints: gateway webhook and client-driven sync.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.db.session import get_db
from sparkpay.schemas.payment import GatewayNotification, SyncRequest, SyncResponse, WebhookAck
from sparkpay.services.payment_sync import process_notification, sync_order_status
from sparkpay.infrastructure.payment_gateway import MidtransGateway, get_gateway
from sparkpay.core.security import get_current_user_id

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/webhook", response_model=WebhookAck)
async def gateway_webhook(
    notification: GatewayNotification,
    db: AsyncSession = Depends(get_db),
):
    """
    Gateway notification. Authenticated only by its signature_key.
    The gateway redelivers on any non-2xx answer, so this is safe to replay.
    """
    return await process_notification(db, notification.model_dump(exclude_none=True))


@router.post("/sync", response_model=SyncResponse)
async def sync_payment_status(
    request: SyncRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: MidtransGateway = Depends(get_gateway),
):
    """Ask the gateway for the current status of one of the caller's orders and apply it."""
    return await sync_order_status(db, gateway, request.order_number, user_id)
