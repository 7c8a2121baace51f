"""
Reconciliation sweep and purchased-ticket expiry.

The sweep is the backstop for lost or delayed webhooks. It is safe to run on
any schedule and concurrently with live traffic: every repair goes through the
same stamp-guarded effects as the webhook path, so an order that is already
reconciled costs one read and changes nothing.

Phases:
  1. abandoned payments: unpaid orders past their payment deadline are polled
     at the gateway and the reported status is applied. "Transaction not
     found" (checkout never opened) or still pending counts as expired.
     Gateway errors leave the order for the next sweep.
  2. paid orders missing their paid-path stamp (tickets_issued_at / pickup_code)
  3. failed/expired orders missing their release stamp

Each repaired order is committed on its own so progress survives a later
failure in the same sweep.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.core.logging import bind_order_context, get_logger
from sparkpay.core.metrics import reconciliation_repairs
from sparkpay.infrastructure.payment_gateway import MidtransGateway, PaymentGatewayError
from sparkpay.models.enums import (
    OrderKind,
    PaymentOutcome,
    PaymentStatus,
    ProductOrderStatus,
    PurchasedTicketStatus,
    TicketOrderStatus,
)
from sparkpay.models.order import Order
from sparkpay.models.product import ProductOrder
from sparkpay.models.ticket import PurchasedTicket
from sparkpay.services.audit_service import log_webhook_event
from sparkpay.services.cache_service import invalidate_availability_cache
from sparkpay.services.expiry_policy import business_today
from sparkpay.services.status_mapper import map_gateway_status
from sparkpay.services.strategy_factory import get_effects_handler

logger = get_logger(__name__)

RECONCILE_BATCH_SIZE = 500

_TICKET_FAILURE_STATUSES = [
    TicketOrderStatus.EXPIRED.value,
    TicketOrderStatus.FAILED.value,
    TicketOrderStatus.REFUNDED.value,
]


async def _fetch(db: AsyncSession, stmt) -> list:
    result = await db.execute(
        stmt.limit(RECONCILE_BATCH_SIZE).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _poll_outcome(gateway: MidtransGateway, order_number: str) -> tuple[Optional[PaymentOutcome], Optional[dict]]:
    """Gateway verdict for an order past its deadline, or (None, None) to retry next sweep."""
    try:
        payload = await gateway.query_status(order_number)
    except PaymentGatewayError as e:
        if e.is_not_found:
            return PaymentOutcome.EXPIRED, None
        logger.warning("reconcile_gateway_error", order_number=order_number, status_code=e.status_code)
        return None, None

    outcome = map_gateway_status(payload.get("transaction_status"), payload.get("fraud_status"))
    if outcome == PaymentOutcome.PENDING:
        outcome = PaymentOutcome.EXPIRED
    return outcome, payload


async def _expire_abandoned(db: AsyncSession, gateway: MidtransGateway, kind: OrderKind, now: datetime) -> dict:
    handler = get_effects_handler(kind)
    if kind == OrderKind.TICKET:
        stmt = select(Order).where(
            Order.status == TicketOrderStatus.PENDING.value,
            Order.expires_at.is_not(None),
            Order.expires_at < now,
        ).order_by(Order.id)
    else:
        stmt = select(ProductOrder).where(
            ProductOrder.status == ProductOrderStatus.AWAITING_PAYMENT.value,
            ProductOrder.payment_status == PaymentStatus.UNPAID.value,
            ProductOrder.payment_expired_at.is_not(None),
            ProductOrder.payment_expired_at < now,
        ).order_by(ProductOrder.id)

    counts = {"expired": 0, "paid": 0}
    for order in await _fetch(db, stmt):
        bind_order_context(order.order_number, kind.value)
        outcome, payload = await _poll_outcome(gateway, order.order_number)
        if outcome is None:
            continue

        await handler.apply_outcome(db, order, outcome, gateway_payload=payload, now=now)
        await db.commit()

        if outcome == PaymentOutcome.PAID:
            counts["paid"] += 1
        else:
            counts["expired"] += 1

    return counts


async def reconcile_payments(db: AsyncSession, gateway: MidtransGateway) -> dict:
    """Re-drive missed payment effects. Returns per-category repair counts."""
    now = datetime.now(timezone.utc)
    tickets = get_effects_handler(OrderKind.TICKET)
    products = get_effects_handler(OrderKind.PRODUCT)

    ticket_expired = product_expired = 0
    ticket_late_paid = product_late_paid = 0
    if gateway.server_key:
        ticket_counts = await _expire_abandoned(db, gateway, OrderKind.TICKET, now)
        product_counts = await _expire_abandoned(db, gateway, OrderKind.PRODUCT, now)
        ticket_expired, ticket_late_paid = ticket_counts["expired"], ticket_counts["paid"]
        product_expired, product_late_paid = product_counts["expired"], product_counts["paid"]
    else:
        logger.warning("reconcile_abandoned_skipped", reason="gateway not configured")

    ticket_fix_count = ticket_late_paid
    for order in await _fetch(
        db,
        select(Order)
        .where(Order.status == TicketOrderStatus.PAID.value, Order.tickets_issued_at.is_(None))
        .order_by(Order.id),
    ):
        if not order.items:
            continue
        bind_order_context(order.order_number, OrderKind.TICKET.value)
        await tickets.apply_paid_effects(db, order, now=now)
        await db.commit()
        ticket_fix_count += 1

    ticket_release_count = 0
    for order in await _fetch(
        db,
        select(Order)
        .where(Order.status.in_(_TICKET_FAILURE_STATUSES), Order.capacity_released_at.is_(None))
        .order_by(Order.id),
    ):
        if not order.items:
            continue
        bind_order_context(order.order_number, OrderKind.TICKET.value)
        await tickets.apply_release_effects(db, order, now=now)
        await db.commit()
        ticket_release_count += 1

    product_fix_count = product_late_paid
    for order in await _fetch(
        db,
        select(ProductOrder)
        .where(ProductOrder.payment_status == PaymentStatus.PAID.value, ProductOrder.pickup_code.is_(None))
        .order_by(ProductOrder.id),
    ):
        bind_order_context(order.order_number, OrderKind.PRODUCT.value)
        await products.apply_paid_effects(db, order, now=now)
        await db.commit()
        product_fix_count += 1

    product_release_count = 0
    for order in await _fetch(
        db,
        select(ProductOrder)
        .where(
            or_(
                ProductOrder.payment_status.in_([PaymentStatus.FAILED.value, PaymentStatus.REFUNDED.value]),
                ProductOrder.status.in_([ProductOrderStatus.EXPIRED.value, ProductOrderStatus.CANCELLED.value]),
            ),
            ProductOrder.stock_released_at.is_(None),
        )
        .order_by(ProductOrder.id),
    ):
        bind_order_context(order.order_number, OrderKind.PRODUCT.value)
        await products.apply_release_effects(db, order, now=now)
        await db.commit()
        product_release_count += 1

    counts = {
        "ticket_fix_count": ticket_fix_count,
        "ticket_release_count": ticket_release_count,
        "product_fix_count": product_fix_count,
        "product_release_count": product_release_count,
        "ticket_expired_count": ticket_expired,
        "product_expired_count": product_expired,
    }

    bind_order_context(None)
    log_webhook_event(db, "reconcile", "reconcile_summary", counts)
    await db.commit()

    for category, count in counts.items():
        if count:
            reconciliation_repairs.labels(category=category.removesuffix("_count")).inc(count)

    if any(counts.values()):
        await invalidate_availability_cache()

    logger.info("reconcile_completed", **counts)
    return {"status": "ok", **counts}


async def expire_purchased_tickets(db: AsyncSession, today=None) -> dict:
    """Mark active tickets valid for a past business day as expired."""
    today = today or business_today()
    result = await db.execute(
        update(PurchasedTicket)
        .where(
            PurchasedTicket.status == PurchasedTicketStatus.ACTIVE.value,
            PurchasedTicket.valid_date < today,
        )
        .values(status=PurchasedTicketStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("purchased_tickets_expired", count=result.rowcount, before=str(today))
    return {"status": "ok", "expired_count": result.rowcount}
