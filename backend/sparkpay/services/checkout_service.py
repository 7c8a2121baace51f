"""
Checkout initiators for ticket and product orders.

ORDERING AND ROLLBACK
=====================

  1. validate + resolve items against the catalog   -> 400, nothing created
  2. reserve inventory (ledger, committed)          -> 409, earlier holds released
  3. create order + items (committed)               -> holds released
  4. request gateway token                          -> items, order deleted, holds released
  5. persist token / redirect URL

Holds are committed before the gateway call so a concurrent checkout sees
them and so the slow external call runs without an open transaction. Every
step after 2 has a compensating action; the compensation also runs when the
request task is cancelled mid-flight (client went away), shielded so it
finishes.

The payment deadline (expires_at / payment_expired_at) comes from the
expiry policy; abandoned orders are expired by the reconciliation sweep.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.core.config import get_settings
from sparkpay.core.logging import bind_order_context, get_logger
from sparkpay.core.metrics import checkout_latency, record_checkout
from sparkpay.infrastructure.payment_gateway import (
    MidtransGateway,
    PaymentGatewayError,
    build_transaction_payload,
)
from sparkpay.models.enums import OrderKind, PaymentStatus, ProductOrderStatus, TicketOrderStatus
from sparkpay.models.order import Order, OrderItem
from sparkpay.models.product import ProductOrder, ProductOrderItem
from sparkpay.models.ticket import Ticket
from sparkpay.schemas.checkout import ProductCheckoutRequest, TicketCheckoutRequest
from sparkpay.services.expiry_policy import SessionEndedError, product_payment_window, ticket_payment_window
from sparkpay.services.identifiers import generate_product_order_number, generate_ticket_order_number
from sparkpay.services.inventory_service import (
    aggregate_capacity,
    load_variants,
    release_product_stock,
    release_ticket_capacity,
    reserve_product_stock,
    reserve_ticket_capacity,
)

logger = get_logger(__name__)


def resolve_app_url(origin: Optional[str]) -> str:
    app_url = get_settings().PUBLIC_APP_URL or origin or ""
    if not app_url:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Missing app url",
        )
    return app_url.rstrip("/")


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


async def _release_ticket_holds(db: AsyncSession, holds: list) -> None:
    for key, quantity in holds:
        await release_ticket_capacity(db, key.ticket_id, key.date, key.time_slot, quantity)


async def _release_product_holds(db: AsyncSession, holds: list[tuple[int, int]]) -> None:
    for variant_id, quantity in holds:
        await release_product_stock(db, variant_id, quantity)


async def _rollback_ticket_checkout(db: AsyncSession, order_id: Optional[int], holds: list) -> None:
    await db.rollback()
    if order_id is not None:
        await db.execute(
            delete(OrderItem).where(OrderItem.order_id == order_id).execution_options(synchronize_session=False)
        )
        await db.execute(
            delete(Order).where(Order.id == order_id).execution_options(synchronize_session=False)
        )
    await _release_ticket_holds(db, holds)
    await db.commit()
    logger.info("ticket_checkout_rolled_back", order_id=order_id, holds=len(holds))


async def _rollback_product_checkout(db: AsyncSession, order_id: Optional[int], holds: list[tuple[int, int]]) -> None:
    await db.rollback()
    if order_id is not None:
        await db.execute(
            delete(ProductOrderItem).where(ProductOrderItem.order_product_id == order_id).execution_options(synchronize_session=False)
        )
        await db.execute(
            delete(ProductOrder).where(ProductOrder.id == order_id).execution_options(synchronize_session=False)
        )
    await _release_product_holds(db, holds)
    await db.commit()
    logger.info("product_checkout_rolled_back", order_id=order_id, holds=len(holds))


async def _load_tickets(db: AsyncSession, ticket_ids: set[int]) -> dict[int, Ticket]:
    result = await db.execute(select(Ticket).where(Ticket.id.in_(sorted(ticket_ids))))
    return {t.id: t for t in result.scalars().all()}


async def create_ticket_checkout(
    db: AsyncSession,
    gateway: MidtransGateway,
    user_id: str,
    request: TicketCheckoutRequest,
    origin: Optional[str] = None,
) -> dict:
    """Reserve slot capacity, create a pending ticket order and open a payment session."""
    start = time.perf_counter()
    kind = OrderKind.TICKET.value

    try:
        window = ticket_payment_window((item.date, item.time_slot) for item in request.items)
    except SessionEndedError as e:
        record_checkout(kind, "invalid")
        logger.warning("checkout_session_ended", date=str(e.day), time_slot=e.time_slot)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Session has ended",
                "details": f"{e}. Please select a different time slot.",
            },
        )

    tickets = await _load_tickets(db, {item.ticket_id for item in request.items})
    resolved = []
    for item in request.items:
        ticket = tickets.get(item.ticket_id)
        if ticket is None:
            record_checkout(kind, "invalid")
            raise _bad_request(f"Ticket not found: {item.ticket_id}")
        if not ticket.is_active:
            record_checkout(kind, "invalid")
            raise _bad_request(f"Ticket inactive: {item.ticket_id}")
        if ticket.price is None or ticket.price <= 0:
            record_checkout(kind, "invalid")
            raise _bad_request(f"Invalid ticket price: {item.ticket_id}")
        resolved.append((item, ticket))

    app_url = resolve_app_url(origin)
    total_amount = sum(ticket.price * item.quantity for item, ticket in resolved)

    # Step 2: reserve every bucket or none
    holds = []
    for key, quantity in aggregate_capacity(
        (item.ticket_id, item.date, item.time_slot, item.quantity) for item, _ in resolved
    ):
        if not await reserve_ticket_capacity(db, key.ticket_id, key.date, key.time_slot, quantity):
            # Holds from this loop are uncommitted; rolling back returns them
            await db.rollback()
            record_checkout(kind, "conflict")
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Slot sold out")
        holds.append((key, quantity))
    await db.commit()

    order_id: Optional[int] = None
    try:
        # Step 3: order aggregate
        order_number = generate_ticket_order_number()
        bind_order_context(order_number, kind)
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=window)
        order = Order(
            order_number=order_number,
            user_id=user_id,
            total_amount=total_amount,
            status=TicketOrderStatus.PENDING.value,
            expires_at=expires_at,
        )
        db.add(order)
        await db.flush()
        order_id = order.id
        db.add_all(
            [
                OrderItem(
                    order_id=order.id,
                    ticket_id=item.ticket_id,
                    selected_date=item.date,
                    selected_time_slots=[item.time_slot],
                    quantity=item.quantity,
                    unit_price=ticket.price,
                    subtotal=ticket.price * item.quantity,
                )
                for item, ticket in resolved
            ]
        )
        await db.commit()

        # Step 4: gateway token (slowest step, runs last)
        payload = build_transaction_payload(
            order_number=order_number,
            gross_amount=total_amount,
            items=[
                {"id": f"ticket-{t.id}", "price": t.price, "quantity": i.quantity, "name": t.name}
                for i, t in resolved
            ],
            customer=request.to_gateway_customer(),
            expiry_minutes=window,
            finish_url=f"{app_url}/booking-success?order_id={order_number}",
        )
        token = await gateway.create_token(payload)

        # Step 5
        order.payment_id = token["token"]
        order.payment_url = token["redirect_url"]
        await db.commit()
    except PaymentGatewayError as e:
        await asyncio.shield(_rollback_ticket_checkout(db, order_id, holds))
        record_checkout(kind, "upstream_error")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to create payment token", "details": e.payload},
        )
    except (Exception, asyncio.CancelledError):
        await asyncio.shield(_rollback_ticket_checkout(db, order_id, holds))
        record_checkout(kind, "error")
        raise
    finally:
        checkout_latency.labels(kind=kind).observe(time.perf_counter() - start)

    record_checkout(kind, "success")
    logger.info("ticket_checkout_created", total_amount=total_amount, window_minutes=window, items=len(resolved))
    return {
        "token": token["token"],
        "redirect_url": token["redirect_url"],
        "order_number": order_number,
        "order_id": order_id,
        "expires_at": expires_at,
        "payment_window_minutes": window,
    }


async def create_product_checkout(
    db: AsyncSession,
    gateway: MidtransGateway,
    user_id: str,
    request: ProductCheckoutRequest,
    origin: Optional[str] = None,
) -> dict:
    """Reserve variant stock, create an awaiting-payment product order and open a payment session."""
    start = time.perf_counter()
    kind = OrderKind.PRODUCT.value

    # Same variant on several lines is one hold
    quantities: dict[int, int] = {}
    for item in request.items:
        quantities[item.product_variant_id] = quantities.get(item.product_variant_id, 0) + item.quantity

    variants = await load_variants(db, quantities.keys())
    for variant_id in quantities:
        variant = variants.get(variant_id)
        if variant is None:
            record_checkout(kind, "invalid")
            raise _bad_request(f"Variant not found: {variant_id}")
        if not variant.is_active:
            record_checkout(kind, "invalid")
            raise _bad_request(f"Variant inactive: {variant_id}")
        if variant.price is None or variant.price <= 0:
            record_checkout(kind, "invalid")
            raise _bad_request(f"Invalid price for variant: {variant_id}")

    app_url = resolve_app_url(origin)
    window = product_payment_window(variants[v].available_stock for v in quantities)
    total_amount = sum(variants[v].price * q for v, q in quantities.items())

    holds: list[tuple[int, int]] = []
    for variant_id, quantity in quantities.items():
        if not await reserve_product_stock(db, variant_id, quantity):
            # Rollback expires loaded rows
            name = variants[variant_id].name
            await db.rollback()
            record_checkout(kind, "conflict")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Out of stock for {name}",
            )
        holds.append((variant_id, quantity))
    await db.commit()

    order_id: Optional[int] = None
    try:
        order_number = generate_product_order_number()
        bind_order_context(order_number, kind)
        payment_expired_at = datetime.now(timezone.utc) + timedelta(minutes=window)
        order = ProductOrder(
            order_number=order_number,
            user_id=user_id,
            status=ProductOrderStatus.AWAITING_PAYMENT.value,
            payment_status=PaymentStatus.UNPAID.value,
            subtotal=total_amount,
            total=total_amount,
            payment_expired_at=payment_expired_at,
        )
        db.add(order)
        await db.flush()
        order_id = order.id
        db.add_all(
            [
                ProductOrderItem(
                    order_product_id=order.id,
                    product_variant_id=variant_id,
                    quantity=quantity,
                    price=variants[variant_id].price,
                    subtotal=variants[variant_id].price * quantity,
                )
                for variant_id, quantity in quantities.items()
            ]
        )
        await db.commit()

        payload = build_transaction_payload(
            order_number=order_number,
            gross_amount=total_amount,
            items=[
                {
                    "id": f"variant-{variant_id}",
                    "price": variants[variant_id].price,
                    "quantity": quantity,
                    "name": variants[variant_id].name,
                }
                for variant_id, quantity in quantities.items()
            ],
            customer=request.to_gateway_customer(),
            expiry_minutes=window,
            finish_url=f"{app_url}/order/product/success/{order_number}",
        )
        token = await gateway.create_token(payload)

        order.payment_url = token["redirect_url"]
        order.payment_data = {"token": token["token"]}
        await db.commit()
    except PaymentGatewayError as e:
        await asyncio.shield(_rollback_product_checkout(db, order_id, holds))
        record_checkout(kind, "upstream_error")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to create payment token", "details": e.payload},
        )
    except (Exception, asyncio.CancelledError):
        await asyncio.shield(_rollback_product_checkout(db, order_id, holds))
        record_checkout(kind, "error")
        raise
    finally:
        checkout_latency.labels(kind=kind).observe(time.perf_counter() - start)

    record_checkout(kind, "success")
    logger.info("product_checkout_created", total_amount=total_amount, window_minutes=window, items=len(quantities))
    return {
        "token": token["token"],
        "redirect_url": token["redirect_url"],
        "order_number": order_number,
        "order_id": order_id,
        "expires_at": payment_expired_at,
        "payment_window_minutes": window,
    }
