"""
Tests for the owner-driven status sync and product order cancellation.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.core.security import create_access_token
from sparkpay.infrastructure.payment_gateway import PaymentGatewayError
from sparkpay.models.enums import OrderKind
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

SYNC = "/api/v1/payments/sync"


def cancel_url(order_number: str) -> str:
    return f"/api/v1/orders/products/{order_number}/cancel"


@pytest.mark.asyncio
async def test_sync_applies_gateway_status(client: AsyncClient, db_session: AsyncSession, gateway, auth_headers):
    ticket_id = await seed_ticket(db_session)
    bucket_id = await seed_bucket(db_session, ticket_id, FUTURE_DAY, "09:00", total=10, reserved=1)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 1)])
    gateway.statuses[number] = {"status_code": "200", "transaction_status": "settlement", "gross_amount": "50000.00"}

    response = await client.post(SYNC, json={"order_number": number}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["order"]["order_number"] == number
    assert data["order"]["status"] == "paid"
    assert data["order"]["tickets_issued_at"] is not None
    assert (await get_bucket(db_session, bucket_id)).sold_capacity == 1


@pytest.mark.asyncio
async def test_sync_product_order(client: AsyncClient, db_session: AsyncSession, gateway, auth_headers):
    variant_id = await seed_variant(db_session, stock=5, reserved=1)
    number = await seed_product_order(db_session, variant_id)
    gateway.statuses[number] = {"status_code": "200", "transaction_status": "settlement", "gross_amount": "100000.00"}

    response = await client.post(SYNC, json={"order_number": number}, headers=auth_headers)

    assert response.status_code == 200
    order = response.json()["order"]
    assert order["kind"] == "product"
    assert order["payment_status"] == "paid"
    assert order["pickup_code"].startswith("PRX-")


@pytest.mark.asyncio
async def test_sync_requires_ownership(client: AsyncClient, db_session: AsyncSession, gateway, other_headers):
    ticket_id = await seed_ticket(db_session)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 1)])
    gateway.statuses[number] = {"status_code": "200", "transaction_status": "settlement"}

    response = await client.post(SYNC, json={"order_number": number}, headers=other_headers)

    assert response.status_code == 403
    order = await get_effects_handler(OrderKind.TICKET).load(db_session, number)
    assert order.status == "pending"


@pytest.mark.asyncio
async def test_sync_unknown_order(client: AsyncClient, auth_headers):
    response = await client.post(SYNC, json={"order_number": "SPK-0-NONE0"}, headers=auth_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_sync_gateway_failure_is_502(client: AsyncClient, db_session: AsyncSession, gateway, auth_headers):
    ticket_id = await seed_ticket(db_session)
    number = await seed_ticket_order(db_session, ticket_id, FUTURE_DAY, [("09:00", 1)])
    gateway.statuses[number] = PaymentGatewayError("Status request failed", 503, {"message": "maintenance"})

    response = await client.post(SYNC, json={"order_number": number}, headers=auth_headers)

    assert response.status_code == 502
    assert response.json()["detail"]["details"] == {"message": "maintenance"}


@pytest.mark.asyncio
async def test_sync_without_token(client: AsyncClient):
    response = await client.post(SYNC, json={"order_number": "SPK-0-NONE0"})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_sync_with_expired_token(client: AsyncClient):
    token = create_access_token({"sub": "user-owner"}, expires_delta=timedelta(minutes=-1))
    response = await client.post(
        SYNC, json={"order_number": "SPK-0-NONE0"}, headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "SESSION_EXPIRED"


@pytest.mark.asyncio
async def test_cancel_releases_stock(client: AsyncClient, db_session: AsyncSession, auth_headers):
    variant_id = await seed_variant(db_session, stock=10, reserved=4)
    number = await seed_product_order(db_session, variant_id, quantity=3)

    response = await client.post(cancel_url(number), headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["result"] == "cancelled"
    assert data["order"]["status"] == "cancelled"
    assert data["order"]["stock_released_at"] is not None
    assert (await get_variant(db_session, variant_id)).reserved_stock == 1

    again = await client.post(cancel_url(number), headers=auth_headers)
    assert again.json()["result"] == "noop"
    assert again.json()["reason"] == "already_final"
    assert (await get_variant(db_session, variant_id)).reserved_stock == 1


@pytest.mark.asyncio
async def test_cancel_paid_order_is_noop(client: AsyncClient, db_session: AsyncSession, auth_headers):
    variant_id = await seed_variant(db_session, stock=10, reserved=1)
    number = await seed_product_order(
        db_session, variant_id, status="processing", payment_status="paid",
    )

    response = await client.post(cancel_url(number), headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["reason"] == "already_paid"
    assert (await get_variant(db_session, variant_id)).reserved_stock == 1


@pytest.mark.asyncio
async def test_cancel_requires_ownership(client: AsyncClient, db_session: AsyncSession, other_headers):
    variant_id = await seed_variant(db_session, stock=10, reserved=1)
    number = await seed_product_order(db_session, variant_id)

    response = await client.post(cancel_url(number), headers=other_headers)

    assert response.status_code == 403
