"""
Payment effects engine.

IDEMPOTENCY STRATEGY
====================

Webhook deliveries, client-driven syncs and the reconciliation sweep all race
for the same order, in separate requests with nothing shared in memory. Every
side effect is therefore guarded by a stamp on the order row, and the stamp is
CLAIMED before the effect runs:

    UPDATE orders SET tickets_issued_at = :now
     WHERE id = :id AND tickets_issued_at IS NULL

  - rowcount == 1: this transaction owns the effect; it runs in the same
    transaction, so a failure rolls the stamp back with it
  - rowcount == 0: another handler already did (or is doing) it; skip

Stamps: tickets_issued_at (issue tickets + finalize capacity),
capacity_released_at (release ticket holds), stock_released_at (release
product holds), pickup_code (written only while NULL).

Ticket issuance additionally tops up per item (needed = quantity - existing),
so a replay after a partial failure resumes instead of duplicating.

Status transitions use the same compare-and-swap idiom on the status columns,
re-reading and re-deciding when a concurrent handler moved the order first.

Integrity problems found after payment (stock shortfall, amount mismatch)
never raise: the order is routed to requires_review with an audit row.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.core.config import get_settings
from sparkpay.core.logging import get_logger
from sparkpay.core.metrics import record_effect
from sparkpay.models.enums import (
    FAILURE_OUTCOMES,
    OrderKind,
    PaymentOutcome,
    PaymentStatus,
    PickupStatus,
    ProductOrderStatus,
    PurchasedTicketStatus,
    TicketOrderStatus,
)
from sparkpay.models.order import Order
from sparkpay.models.product import ProductOrder
from sparkpay.models.ticket import PurchasedTicket
from sparkpay.services.audit_service import log_webhook_event
from sparkpay.services.expiry_policy import has_session_ended, parse_time_slot, session_end
from sparkpay.services.identifiers import generate_pickup_code, generate_ticket_code
from sparkpay.services.interfaces.order_effects import OrderEffects
from sparkpay.services.inventory_service import (
    ALL_DAY,
    aggregate_capacity,
    finalize_ticket_capacity,
    load_variants,
    normalize_availability_time_slot,
    normalize_selected_time_slots,
    release_product_stock,
    release_ticket_capacity,
)
from sparkpay.services.status_mapper import product_order_status, product_payment_status

logger = get_logger(__name__)

TRANSITION_MAX_ATTEMPTS = 3

_TICKET_FAILURE_STATUSES = {
    TicketOrderStatus.EXPIRED.value,
    TicketOrderStatus.FAILED.value,
    TicketOrderStatus.REFUNDED.value,
}
_PRODUCT_FINAL_STATUSES = {
    ProductOrderStatus.CANCELLED.value,
    ProductOrderStatus.EXPIRED.value,
}


class TransitionConflictError(RuntimeError):
    """The order kept changing underneath the transition; the caller should retry later."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def is_amount_mismatch(expected: Any, paid: Any) -> bool:
    """Only a material difference between two known, positive amounts counts."""
    expected_total = parse_amount(expected) or 0
    paid_total = parse_amount(paid) or 0
    if expected_total <= 0 or paid_total <= 0:
        return False
    return abs(expected_total - paid_total) > get_settings().AMOUNT_TOLERANCE


def next_ticket_status(current: str, outcome: PaymentOutcome) -> str:
    """
    Paid is only ever followed by refunded. Failure states are not reverted
    to pending, but a late settlement is honoured because money was taken.
    """
    if current == TicketOrderStatus.PAID.value:
        return TicketOrderStatus.REFUNDED.value if outcome == PaymentOutcome.REFUNDED else current
    if current == TicketOrderStatus.REFUNDED.value:
        return current
    if current in _TICKET_FAILURE_STATUSES:
        return TicketOrderStatus.PAID.value if outcome == PaymentOutcome.PAID else current
    return outcome.value


def next_product_state(status: str, payment_status: str, outcome: PaymentOutcome) -> tuple[str, str]:
    if payment_status == PaymentStatus.PAID.value:
        if outcome == PaymentOutcome.REFUNDED:
            return status, PaymentStatus.REFUNDED.value
        return status, payment_status
    if payment_status == PaymentStatus.REFUNDED.value:
        return status, payment_status
    if status in _PRODUCT_FINAL_STATUSES:
        if outcome == PaymentOutcome.PAID:
            return ProductOrderStatus.PROCESSING.value, PaymentStatus.PAID.value
        return status, payment_status
    return product_order_status(outcome, status), product_payment_status(outcome).value


class TicketOrderEffects(OrderEffects):
    kind = OrderKind.TICKET

    async def load(self, db: AsyncSession, order_number: str) -> Optional[Order]:
        result = await db.execute(
            select(Order)
            .where(Order.order_number == order_number)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reload(self, db: AsyncSession, order: Order) -> Order:
        result = await db.execute(
            select(Order).where(Order.id == order.id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    def serialize(self, order: Order) -> dict:
        return {
            "order_number": order.order_number,
            "kind": self.kind.value,
            "status": order.status,
            "total_amount": order.total_amount,
            "expires_at": order.expires_at,
            "tickets_issued_at": order.tickets_issued_at,
            "capacity_released_at": order.capacity_released_at,
        }

    async def apply_outcome(
        self,
        db: AsyncSession,
        order: Order,
        outcome: PaymentOutcome,
        gateway_payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or _utcnow()

        for attempt in range(1, TRANSITION_MAX_ATTEMPTS + 1):
            previous = order.status
            target = next_ticket_status(previous, outcome)
            values: dict[str, Any] = {}
            if target != previous:
                values["status"] = target
            if gateway_payload is not None:
                values["payment_data"] = gateway_payload
            if not values:
                break

            result = await db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == previous)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount > 0:
                break

            logger.info("order_transition_retry", attempt=attempt, previous=previous, target=target)
            order = await self.reload(db, order)
        else:
            raise TransitionConflictError(f"Order {order.order_number} changed concurrently")

        order = await self.reload(db, order)
        if target != previous:
            logger.info("ticket_order_transitioned", previous=previous, status=target, outcome=outcome.value)

        summary = {"previous_status": previous, "status": order.status, "issued": 0, "released": False}

        if target == TicketOrderStatus.PAID.value:
            paid = await self.apply_paid_effects(db, order, now=now)
            summary["issued"] = paid["issued"]
        elif outcome in FAILURE_OUTCOMES and previous != TicketOrderStatus.PAID.value:
            released = await self.apply_release_effects(db, order, now=now)
            summary["released"] = released["released"]

        return summary

    async def _existing_ticket_counts(self, db: AsyncSession, item_ids: list[int]) -> dict[int, int]:
        if not item_ids:
            return {}
        result = await db.execute(
            select(PurchasedTicket.order_item_id, func.count(PurchasedTicket.id))
            .where(PurchasedTicket.order_item_id.in_(item_ids))
            .group_by(PurchasedTicket.order_item_id)
        )
        return {item_id: count for item_id, count in result.all()}

    async def apply_paid_effects(
        self,
        db: AsyncSession,
        order: Order,
        gross_amount: Any = None,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or _utcnow()

        if order.tickets_issued_at is not None:
            record_effect("issue_tickets", "skipped")
            return {"issued": 0, "skipped": True}

        claim = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.tickets_issued_at.is_(None))
            .values(tickets_issued_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount == 0:
            logger.info("ticket_issue_already_claimed")
            record_effect("issue_tickets", "skipped")
            return {"issued": 0, "skipped": True}

        items = list(order.items)
        existing = await self._existing_ticket_counts(db, [item.id for item in items])

        tickets: list[PurchasedTicket] = []
        capacity_entries = []

        for item in items:
            needed = max(0, item.quantity - existing.get(item.id, 0))
            if needed <= 0:
                continue

            slots = normalize_selected_time_slots(item.selected_time_slots) or [ALL_DAY]
            first_slot = slots[0]
            ticket_slot = first_slot if parse_time_slot(first_slot) else None

            if ticket_slot and has_session_ended(item.selected_date, ticket_slot, now):
                # Keep the sale: the session is over, so entry becomes all-day
                ended_at = session_end(item.selected_date, ticket_slot)
                logger.warning(
                    "session_ended_converted_to_allday",
                    order_item_id=item.id,
                    selected_date=str(item.selected_date),
                    original_slot=first_slot,
                )
                log_webhook_event(
                    db,
                    order.order_number,
                    "session_ended_converted_to_allday",
                    {
                        "original_slot": first_slot,
                        "selected_date": item.selected_date.isoformat(),
                        "session_end_time": ended_at.isoformat() if ended_at else None,
                        "payment_completed_at": now.isoformat(),
                    },
                )
                ticket_slot = None

            for _ in range(needed):
                tickets.append(
                    PurchasedTicket(
                        ticket_code=generate_ticket_code(),
                        order_item_id=item.id,
                        user_id=order.user_id,
                        ticket_id=item.ticket_id,
                        valid_date=item.selected_date,
                        time_slot=ticket_slot,
                        status=PurchasedTicketStatus.ACTIVE.value,
                    )
                )

            # Holds were taken on the selected buckets, so that is where they are sold
            for slot in dict.fromkeys(normalize_availability_time_slot(s) for s in slots):
                capacity_entries.append((item.ticket_id, item.selected_date, slot, needed))

        if tickets:
            db.add_all(tickets)
            await db.flush()

        for key, quantity in aggregate_capacity(capacity_entries):
            finalized = await finalize_ticket_capacity(
                db,
                key.ticket_id,
                key.date,
                key.time_slot,
                quantity,
                hold_released=order.capacity_released_at is not None,
            )
            if not finalized:
                log_webhook_event(
                    db,
                    order.order_number,
                    "capacity_finalize_failed",
                    {
                        "ticket_id": key.ticket_id,
                        "date": key.date.isoformat(),
                        "time_slot": key.time_slot,
                        "quantity": quantity,
                    },
                    success=False,
                    error_message="Capacity bucket could not absorb the sale",
                )
                record_effect("finalize_capacity", "flagged")

        logger.info("tickets_issued", issued=len(tickets), items=len(items))
        record_effect("issue_tickets", "applied")
        return {"issued": len(tickets), "skipped": False}

    async def apply_release_effects(self, db: AsyncSession, order: Order, now: Optional[datetime] = None) -> dict:
        now = now or _utcnow()

        if order.capacity_released_at is not None:
            record_effect("release_capacity", "skipped")
            return {"released": False}

        claim = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.capacity_released_at.is_(None))
            .values(capacity_released_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount == 0:
            record_effect("release_capacity", "skipped")
            return {"released": False}

        if order.tickets_issued_at is not None:
            # Capacity was sold, not held; nothing to hand back
            logger.info("capacity_release_skipped_tickets_issued")
            record_effect("release_capacity", "skipped")
            return {"released": False}

        entries = []
        for item in order.items:
            slots = normalize_selected_time_slots(item.selected_time_slots) or [ALL_DAY]
            for slot in dict.fromkeys(normalize_availability_time_slot(s) for s in slots):
                entries.append((item.ticket_id, item.selected_date, slot, item.quantity))

        for key, quantity in aggregate_capacity(entries):
            await release_ticket_capacity(db, key.ticket_id, key.date, key.time_slot, quantity)

        logger.info("ticket_capacity_released_for_order", buckets=len(entries))
        record_effect("release_capacity", "applied")
        return {"released": True}


class ProductOrderEffects(OrderEffects):
    kind = OrderKind.PRODUCT

    async def load(self, db: AsyncSession, order_number: str) -> Optional[ProductOrder]:
        result = await db.execute(
            select(ProductOrder)
            .where(ProductOrder.order_number == order_number)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reload(self, db: AsyncSession, order: ProductOrder) -> ProductOrder:
        result = await db.execute(
            select(ProductOrder)
            .where(ProductOrder.id == order.id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    def serialize(self, order: ProductOrder) -> dict:
        return {
            "order_number": order.order_number,
            "kind": self.kind.value,
            "status": order.status,
            "payment_status": order.payment_status,
            "total": order.total,
            "pickup_code": order.pickup_code,
            "pickup_status": order.pickup_status,
            "pickup_expires_at": order.pickup_expires_at,
            "paid_at": order.paid_at,
            "stock_released_at": order.stock_released_at,
        }

    async def apply_outcome(
        self,
        db: AsyncSession,
        order: ProductOrder,
        outcome: PaymentOutcome,
        gateway_payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or _utcnow()

        for attempt in range(1, TRANSITION_MAX_ATTEMPTS + 1):
            previous_status = order.status
            previous_payment = order.payment_status
            previous_pickup = order.pickup_status
            status, payment_status = next_product_state(previous_status, previous_payment, outcome)

            values: dict[str, Any] = {}
            if status != previous_status:
                values["status"] = status
                if status == ProductOrderStatus.EXPIRED.value:
                    values["expired_at"] = now
            if payment_status != previous_payment:
                values["payment_status"] = payment_status
            if gateway_payload is not None:
                values["payment_data"] = gateway_payload
            if not values:
                break

            result = await db.execute(
                update(ProductOrder)
                .where(
                    ProductOrder.id == order.id,
                    ProductOrder.status == previous_status,
                    ProductOrder.payment_status == previous_payment,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount > 0:
                break

            logger.info("order_transition_retry", attempt=attempt, previous=previous_status)
            order = await self.reload(db, order)
        else:
            raise TransitionConflictError(f"Order {order.order_number} changed concurrently")

        order = await self.reload(db, order)
        summary = {
            "previous_status": previous_status,
            "previous_payment_status": previous_payment,
            "status": order.status,
            "payment_status": order.payment_status,
            "pickup_code": None,
            "released": False,
        }

        if payment_status == PaymentStatus.PAID.value and (
            previous_payment != PaymentStatus.PAID.value or not order.pickup_code
        ):
            gross_amount = (gateway_payload or {}).get("gross_amount")
            paid = await self.apply_paid_effects(db, order, gross_amount=gross_amount, now=now)
            summary["pickup_code"] = paid["pickup_code"]
            order = await self.reload(db, order)
            summary["status"] = order.status
        elif (
            outcome in FAILURE_OUTCOMES
            and previous_payment != PaymentStatus.PAID.value
            and previous_status not in _PRODUCT_FINAL_STATUSES
            and previous_pickup != PickupStatus.COMPLETED.value
        ):
            released = await self.apply_release_effects(db, order, now=now)
            summary["released"] = released["released"]

        return summary

    async def _stock_issues(self, db: AsyncSession, order: ProductOrder) -> list[str]:
        items = list(order.items)
        variants = await load_variants(db, [item.product_variant_id for item in items])
        issues = []
        for item in items:
            variant = variants.get(item.product_variant_id)
            if variant is None:
                continue
            if variant.reserved_stock < item.quantity:
                issues.append(
                    f"Variant {variant.id}: reserved={variant.reserved_stock}, needed={item.quantity}"
                )
            if variant.stock < item.quantity:
                issues.append(f"Variant {variant.id}: stock={variant.stock}, needed={item.quantity}")
        return issues

    async def apply_paid_effects(
        self,
        db: AsyncSession,
        order: ProductOrder,
        gross_amount: Any = None,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or _utcnow()

        if order.pickup_code and order.payment_status == PaymentStatus.PAID.value:
            record_effect("product_paid", "skipped")
            return {"pickup_code": order.pickup_code, "status": order.status, "skipped": True}

        stock_issues = await self._stock_issues(db, order)
        amount_mismatch = is_amount_mismatch(order.total, gross_amount)

        if stock_issues:
            logger.warning("stock_validation_failed", issues=stock_issues)
            log_webhook_event(
                db,
                order.order_number,
                "stock_validation_failed_requires_review",
                {
                    "order_id": order.order_number,
                    "stock_issues": stock_issues,
                    "payment_completed_at": now.isoformat(),
                },
                error_message=f"Stock insufficient: {'; '.join(stock_issues)}",
            )

        if amount_mismatch:
            expected, paid = parse_amount(order.total), parse_amount(gross_amount)
            logger.warning("amount_mismatch", expected_total=expected, gross_amount=paid)
            log_webhook_event(
                db,
                order.order_number,
                "amount_mismatch_requires_review",
                {"expected_total": expected, "gross_amount": paid},
                error_message=f"Amount mismatch: expected {expected}, got {paid}",
            )

        flagged = bool(stock_issues) or amount_mismatch
        if flagged or order.status == ProductOrderStatus.REQUIRES_REVIEW.value:
            final_status = ProductOrderStatus.REQUIRES_REVIEW.value
            pickup_status = PickupStatus.PENDING_REVIEW.value
        else:
            final_status = ProductOrderStatus.PROCESSING.value
            pickup_status = PickupStatus.PENDING_PICKUP.value

        values = {
            "status": final_status,
            "payment_status": PaymentStatus.PAID.value,
            "pickup_status": pickup_status,
            "paid_at": order.paid_at or now,
            "pickup_expires_at": order.pickup_expires_at
            or now + timedelta(days=get_settings().PICKUP_WINDOW_DAYS),
        }

        pickup_code = order.pickup_code
        if pickup_code:
            await db.execute(
                update(ProductOrder)
                .where(ProductOrder.id == order.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        else:
            pickup_code = await generate_pickup_code(db)
            claim = await db.execute(
                update(ProductOrder)
                .where(ProductOrder.id == order.id, ProductOrder.pickup_code.is_(None))
                .values(pickup_code=pickup_code, **values)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                order = await self.reload(db, order)
                logger.info("pickup_code_already_claimed")
                record_effect("product_paid", "skipped")
                return {"pickup_code": order.pickup_code, "status": order.status, "skipped": True}

        logger.info("product_order_paid", status=final_status, flagged=flagged)
        record_effect("product_paid", "flagged" if flagged else "applied")
        return {"pickup_code": pickup_code, "status": final_status, "skipped": False}

    async def apply_release_effects(
        self,
        db: AsyncSession,
        order: ProductOrder,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or _utcnow()

        if order.stock_released_at is not None:
            record_effect("release_stock", "skipped")
            return {"released": False}

        claim = await db.execute(
            update(ProductOrder)
            .where(ProductOrder.id == order.id, ProductOrder.stock_released_at.is_(None))
            .values(stock_released_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount == 0:
            record_effect("release_stock", "skipped")
            return {"released": False}

        if order.is_pickup_completed:
            # Goods already left the store; the hold was consumed at pickup
            record_effect("release_stock", "skipped")
            return {"released": False}

        if order.paid_at is not None or order.pickup_code is not None:
            # Paid orders keep their allocation; refunds are settled by staff
            logger.info("product_stock_release_skipped_paid_order")
            record_effect("release_stock", "skipped")
            return {"released": False}

        quantities: dict[int, int] = defaultdict(int)
        for item in order.items:
            quantities[item.product_variant_id] += item.quantity

        for variant_id, quantity in sorted(quantities.items()):
            await release_product_stock(db, variant_id, quantity)

        logger.info("product_stock_released_for_order", variants=len(quantities))
        record_effect("release_stock", "applied")
        return {"released": True}
