"""
Entry points that feed gateway status into the payment effects engine:

  - process_notification: signed webhook from the gateway (passive)
  - sync_order_status: owner-triggered status poll (active fallback)
  - cancel_product_order: owner gives up on an unpaid product order

All three may run concurrently for the same order; correctness comes from the
stamps and conditional updates in the effects engine, not from locking here.
"""

from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.core.config import get_settings
from sparkpay.core.logging import bind_order_context, get_logger
from sparkpay.core.metrics import record_webhook
from sparkpay.infrastructure.payment_gateway import (
    GatewayConfigError,
    MidtransGateway,
    PaymentGatewayError,
    verify_notification_signature,
)
from sparkpay.models.enums import OrderKind, PaymentStatus, ProductOrderStatus
from sparkpay.models.product import ProductOrder
from sparkpay.services.audit_service import log_webhook_event, log_webhook_exception
from sparkpay.services.cache_service import invalidate_availability_cache
from sparkpay.services.status_mapper import map_gateway_status
from sparkpay.services.strategy_factory import get_effects_handler, resolve_order

logger = get_logger(__name__)


async def process_notification(db: AsyncSession, notification: dict) -> dict:
    """
    Verify and apply one gateway notification.

    Signature mismatch -> 403 before anything is touched. Unknown order -> 404.
    Any failure while applying -> 500 so the gateway redelivers; the raw
    payload is kept in an `exception` audit row.
    """
    order_number = str(notification.get("order_id") or "")
    bind_order_context(order_number or None)

    server_key = get_settings().MIDTRANS_SERVER_KEY
    if not server_key:
        raise GatewayConfigError("MIDTRANS_SERVER_KEY is not configured")

    if not verify_notification_signature(notification, server_key):
        logger.warning("webhook_signature_invalid")
        log_webhook_event(
            db, order_number, "invalid_signature", notification,
            success=False, error_message="Invalid signature",
        )
        await db.commit()
        record_webhook("invalid_signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        resolved = await resolve_order(db, order_number)
        if resolved is None:
            logger.warning("webhook_order_not_found")
            log_webhook_event(
                db, order_number, "order_not_found", notification,
                success=False, error_message="Order not found",
            )
            await db.commit()
            record_webhook("not_found")
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

        handler, order = resolved
        bind_order_context(order_number, handler.kind.value)
        outcome = map_gateway_status(
            notification.get("transaction_status"),
            notification.get("fraud_status"),
        )
        summary = await handler.apply_outcome(db, order, outcome, gateway_payload=notification)

        log_webhook_event(db, order_number, f"{handler.kind.value}_order_processed", notification)
        await db.commit()
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("webhook_processing_failed", error=str(e))
        await log_webhook_exception(db, order_number, notification, e)
        record_webhook("error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        )

    await invalidate_availability_cache()
    record_webhook("processed")
    logger.info("webhook_processed", outcome=outcome.value, **summary)
    return {"status": "ok"}


async def sync_order_status(
    db: AsyncSession,
    gateway: MidtransGateway,
    order_number: str,
    user_id: str,
) -> dict:
    """Poll the gateway for one order the caller owns and apply what it reports."""
    bind_order_context(order_number)

    resolved = await resolve_order(db, order_number)
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    handler, order = resolved
    bind_order_context(order_number, handler.kind.value)
    if handler.owner_id(order) != user_id:
        logger.warning("sync_forbidden", user_id=user_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    try:
        status_payload = await gateway.query_status(order_number)
    except PaymentGatewayError as e:
        logger.warning("sync_gateway_failed", status_code=e.status_code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to fetch payment status", "details": e.payload},
        )

    outcome = map_gateway_status(
        status_payload.get("transaction_status"),
        status_payload.get("fraud_status"),
    )
    summary = await handler.apply_outcome(db, order, outcome, gateway_payload=status_payload)
    await db.commit()
    await invalidate_availability_cache()

    order = await handler.reload(db, order)
    logger.info("order_synced", outcome=outcome.value, **summary)
    return {"status": "ok", "order": handler.serialize(order)}


async def cancel_product_order(db: AsyncSession, order_number: str, user_id: str) -> dict:
    """Cancel an unpaid product order and hand its held stock back."""
    bind_order_context(order_number, OrderKind.PRODUCT.value)
    handler = get_effects_handler(OrderKind.PRODUCT)

    order = await handler.load(db, order_number)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if order.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    def noop(reason: str) -> dict:
        return {"status": "ok", "result": "noop", "reason": reason, "order": {"order_number": order_number}}

    if order.payment_status == PaymentStatus.PAID.value:
        return noop("already_paid")
    if order.status in (ProductOrderStatus.CANCELLED.value, ProductOrderStatus.EXPIRED.value):
        return noop("already_final")

    result = await db.execute(
        update(ProductOrder)
        .where(
            ProductOrder.id == order.id,
            ProductOrder.status.not_in(
                [ProductOrderStatus.CANCELLED.value, ProductOrderStatus.EXPIRED.value]
            ),
            ProductOrder.payment_status != PaymentStatus.PAID.value,
        )
        .values(status=ProductOrderStatus.CANCELLED.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # A webhook or sweep finalized it first
        return noop("already_final")

    order = await handler.reload(db, order)
    await handler.apply_release_effects(db, order, now=datetime.now(timezone.utc))
    await db.commit()

    order = await handler.reload(db, order)
    logger.info("product_order_cancelled")
    return {"status": "ok", "result": "cancelled", "reason": None, "order": handler.serialize(order)}
