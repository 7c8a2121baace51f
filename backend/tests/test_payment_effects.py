"""
Tests for the payment effects engine: issuance, release, late settlement and
product review routing. Every effect is run twice to check it is idempotent.
"""

import re
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.models.enums import OrderKind, PaymentOutcome
from sparkpay.models.ticket import PurchasedTicket
from sparkpay.models.webhook_log import WebhookLog
from sparkpay.services.inventory_service import reserve_ticket_capacity
from sparkpay.services.payment_effects import is_amount_mismatch
from sparkpay.services.strategy_factory import get_effects_handler
from conftest import (
    FUTURE_DAY,
    get_bucket,
    get_variant,
    seed_bucket,
    seed_product_order,
    seed_ticket,
    seed_ticket_order,
    seed_variant,
)

tickets = get_effects_handler(OrderKind.TICKET)
products = get_effects_handler(OrderKind.PRODUCT)


async def count_tickets(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(PurchasedTicket.id)))).scalar_one()


async def audit_events(db: AsyncSession) -> list[str]:
    result = await db.execute(select(WebhookLog.event_type).order_by(WebhookLog.id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_paid_path_issues_once(db_session: AsyncSession):
    """Paid order, two items of one ticket each: two tickets, then nothing more."""
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=10, reserved=2)
    number = await seed_ticket_order(
        db_session, ticket_id, FUTURE_DAY, [("09:00", 1), ("09:00", 1)], status="paid",
    )

    order = await tickets.load(db_session, number)
    first = await tickets.apply_paid_effects(db_session, order)
    await db_session.commit()

    order = await tickets.load(db_session, number)
    stamp = order.tickets_issued_at
    second = await tickets.apply_paid_effects(db_session, order)
    await db_session.commit()

    assert first["issued"] == 2
    assert second == {"issued": 0, "skipped": True}
    assert await count_tickets(db_session) == 2
    assert stamp is not None
    assert (await tickets.load(db_session, number)).tickets_issued_at == stamp

    bucket = await get_bucket(db_session, bucket_id)
    assert (bucket.reserved_capacity, bucket.sold_capacity) == (0, 2)


@pytest.mark.asyncio
async def test_issued_tickets_carry_order_details(db_session: AsyncSession):
    ticket_id = await seed_ticket(db_session)
    await seed_bucket(db_session, ticket_id, FUTURE_DAY, "11:00", total=10, reserved=1)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("11:00", 1)])

    order = await tickets.load(db_session, number)
    summary = await tickets.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()

    issued = (await db_session.execute(select(PurchasedTicket))).scalar_one()
    assert summary["status"] == "paid"
    assert re.fullmatch(r"TKT-[A-Z0-9]{8}-[0-9A-Z]+", issued.ticket_code)
    assert issued.user_id == "user-owner"
    assert issued.valid_date == FUTURE_DAY
    assert issued.time_slot == "11:00"
    assert issued.status == "active"


@pytest.mark.asyncio
async def test_expiry_releases_exact_hold_once(db_session: AsyncSession):
    """Expired ticket order with quantity 3 hands back exactly 3 units, once."""
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=10, reserved=5)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 3)])

    order = await tickets.load(db_session, number)
    summary = await tickets.apply_outcome(db_session, order, PaymentOutcome.EXPIRED)
    await db_session.commit()

    order = await tickets.load(db_session, number)
    assert summary["released"] is True
    assert order.status == "expired"
    assert order.capacity_released_at is not None
    assert (await get_bucket(db_session, bucket_id)).reserved_capacity == 2

    again = await tickets.apply_outcome(db_session, order, PaymentOutcome.EXPIRED)
    await db_session.commit()

    assert again["released"] is False
    assert (await get_bucket(db_session, bucket_id)).reserved_capacity == 2


@pytest.mark.asyncio
async def test_late_pending_does_not_downgrade_paid(db_session: AsyncSession):
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=10, reserved=1)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 1)])

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()

    for outcome in (PaymentOutcome.PENDING, PaymentOutcome.EXPIRED, PaymentOutcome.FAILED):
        order = await tickets.load(db_session, number)
        await tickets.apply_outcome(db_session, order, outcome)
        await db_session.commit()

    order = await tickets.load(db_session, number)
    assert order.status == "paid"
    assert order.capacity_released_at is None
    assert await count_tickets(db_session) == 1
    bucket = await get_bucket(db_session, bucket_id)
    assert (bucket.reserved_capacity, bucket.sold_capacity) == (0, 1)


@pytest.mark.asyncio
async def test_late_settlement_after_expiry_is_honoured(db_session: AsyncSession):
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=5, reserved=2)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 2)])

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.EXPIRED)
    await db_session.commit()
    assert (await get_bucket(db_session, bucket_id)).reserved_capacity == 0

    order = await tickets.load(db_session, number)
    summary = await tickets.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()

    assert summary["previous_status"] == "expired"
    assert summary["status"] == "paid"
    assert summary["issued"] == 2
    bucket = await get_bucket(db_session, bucket_id)
    assert (bucket.reserved_capacity, bucket.sold_capacity) == (0, 2)


@pytest.mark.asyncio
async def test_late_settlement_does_not_take_other_orders_holds(db_session: AsyncSession):
    ticket_id = await seed_ticket(db_session)
    # 5 units held by other checkouts plus this order's 2
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=10, reserved=7)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 2)])

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.EXPIRED)
    await db_session.commit()

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()

    bucket = await get_bucket(db_session, bucket_id)
    assert (bucket.reserved_capacity, bucket.sold_capacity) == (5, 2)
    assert bucket.remaining_capacity == 3
    assert await reserve_ticket_capacity(db_session, ticket_id, FUTURE_DAY, "09:00", 5) is False


@pytest.mark.asyncio
async def test_late_settlement_into_full_bucket_is_flagged(db_session: AsyncSession):
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=2, sold=2)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 1)], status="expired")

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()

    assert await count_tickets(db_session) == 1
    assert "capacity_finalize_failed" in await audit_events(db_session)
    assert (await get_bucket(db_session, bucket_id)).sold_capacity == 2


@pytest.mark.asyncio
async def test_payment_after_session_end_converts_to_all_day(db_session: AsyncSession):
    day = date(2026, 3, 10)
    after_session = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)  # 13:00 WIB
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, day, "09:00", total=10, reserved=2)
    number = await seed_ticket_order(db_session, ticket_id, day, [("09:00", 2)])

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.PAID, now=after_session)
    await db_session.commit()

    slots = (await db_session.execute(select(PurchasedTicket.time_slot))).scalars().all()
    assert slots == [None, None]
    assert "session_ended_converted_to_allday" in await audit_events(db_session)
    bucket = await get_bucket(db_session, bucket_id)
    assert (bucket.reserved_capacity, bucket.sold_capacity) == (0, 2)


@pytest.mark.asyncio
async def test_refund_after_issue_only_stamps_release(db_session: AsyncSession):
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=10, reserved=4)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 1)])

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()

    order = await tickets.load(db_session, number)
    await tickets.apply_outcome(db_session, order, PaymentOutcome.REFUNDED)
    order = await tickets.load(db_session, number)
    result = await tickets.apply_release_effects(db_session, order)
    await db_session.commit()

    order = await tickets.load(db_session, number)
    assert order.status == "refunded"
    assert result == {"released": False}
    assert order.capacity_released_at is not None
    bucket = await get_bucket(db_session, bucket_id)
    assert (bucket.reserved_capacity, bucket.sold_capacity) == (3, 1)


@pytest.mark.asyncio
async def test_product_paid_with_matching_amount(db_session: AsyncSession):
    variant_id = await seed_variant(db_session, stock=5, reserved=1)
    number = await seed_product_order(db_session, variant_id, quantity=1, price=100000)

    order = await products.load(db_session, number)
    await products.apply_outcome(
        db_session, order, PaymentOutcome.PAID, gateway_payload={"gross_amount": "100000.00"},
    )
    await db_session.commit()

    order = await products.load(db_session, number)
    assert order.payment_status == "paid"
    assert order.status == "processing"
    assert order.pickup_status == "pending_pickup"
    assert re.fullmatch(r"PRX-[A-Z0-9]{3}-[A-Z0-9]{3}", order.pickup_code)
    assert order.paid_at is not None
    assert order.pickup_expires_at is not None
    assert order.payment_data == {"gross_amount": "100000.00"}
    assert await audit_events(db_session) == []


@pytest.mark.asyncio
async def test_product_amount_mismatch_requires_review(db_session: AsyncSession):
    variant_id = await seed_variant(db_session, stock=5, reserved=1)
    number = await seed_product_order(db_session, variant_id, quantity=1, price=100000)

    order = await products.load(db_session, number)
    await products.apply_outcome(
        db_session, order, PaymentOutcome.PAID, gateway_payload={"gross_amount": "50000.00"},
    )
    await db_session.commit()

    order = await products.load(db_session, number)
    assert order.payment_status == "paid"
    assert order.status == "requires_review"
    assert order.pickup_status == "pending_review"
    assert order.pickup_code is not None
    assert await audit_events(db_session) == ["amount_mismatch_requires_review"]


@pytest.mark.asyncio
async def test_product_stock_shortfall_requires_review(db_session: AsyncSession):
    variant_id = await seed_variant(db_session, stock=5, reserved=0)
    number = await seed_product_order(db_session, variant_id, quantity=2, price=100000)

    order = await products.load(db_session, number)
    await products.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()

    order = await products.load(db_session, number)
    assert order.status == "requires_review"
    assert await audit_events(db_session) == ["stock_validation_failed_requires_review"]


@pytest.mark.asyncio
async def test_product_paid_path_keeps_first_pickup_code(db_session: AsyncSession):
    variant_id = await seed_variant(db_session, stock=5, reserved=1)
    number = await seed_product_order(db_session, variant_id)

    order = await products.load(db_session, number)
    await products.apply_outcome(db_session, order, PaymentOutcome.PAID)
    await db_session.commit()
    code = (await products.load(db_session, number)).pickup_code

    order = await products.load(db_session, number)
    await products.apply_outcome(db_session, order, PaymentOutcome.PAID)
    skipped = await products.apply_paid_effects(db_session, order)
    await db_session.commit()

    assert skipped["skipped"] is True
    assert (await products.load(db_session, number)).pickup_code == code


@pytest.mark.asyncio
async def test_product_expiry_releases_stock_once(db_session: AsyncSession):
    variant_id = await seed_variant(db_session, stock=10, reserved=3)
    number = await seed_product_order(db_session, variant_id, quantity=2)

    order = await products.load(db_session, number)
    await products.apply_outcome(db_session, order, PaymentOutcome.EXPIRED)
    await db_session.commit()

    order = await products.load(db_session, number)
    assert (order.status, order.payment_status) == ("expired", "failed")
    assert order.expired_at is not None
    assert order.stock_released_at is not None
    assert (await get_variant(db_session, variant_id)).reserved_stock == 1

    await products.apply_outcome(db_session, order, PaymentOutcome.EXPIRED)
    await products.apply_release_effects(db_session, order)
    await db_session.commit()
    assert (await get_variant(db_session, variant_id)).reserved_stock == 1


def test_amount_mismatch_rules():
    assert is_amount_mismatch(100000, "100000.00") is False
    assert is_amount_mismatch(100000, "50000.00") is True
    assert is_amount_mismatch(100000, None) is False
    assert is_amount_mismatch(0, "50000") is False
