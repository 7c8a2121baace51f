"""
Pytest fixtures for test database, client, gateway fake, and authentication.

Every test gets a fresh in-memory SQLite database (one shared connection via
StaticPool) with the schema created from the models. The gateway dependency
is replaced with an in-memory fake so no network is touched.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_ENABLED", "False")
os.environ.setdefault("MIDTRANS_SERVER_KEY", "test-server-key")
os.environ.setdefault("PUBLIC_APP_URL", "https://shop.test")

from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from sparkpay.main import app
from sparkpay.db.base import Base
from sparkpay.db.session import get_db
from sparkpay.core.security import create_access_token
from sparkpay.infrastructure.payment_gateway import PaymentGatewayError, generate_signature, get_gateway
from sparkpay.models.enums import PaymentStatus, ProductOrderStatus, TicketOrderStatus
from sparkpay.models.order import Order, OrderItem
from sparkpay.models.product import ProductOrder, ProductOrderItem, ProductVariant
from sparkpay.models.ticket import Ticket, TicketAvailability

SERVER_KEY = os.environ["MIDTRANS_SERVER_KEY"]
OWNER_ID = "user-owner"
FUTURE_DAY = date.today() + timedelta(days=30)


class FakeGateway:
    """In-memory stand-in for MidtransGateway."""

    def __init__(self):
        self.server_key = SERVER_KEY
        self.token_requests: list[dict] = []
        self.token_error: Optional[Exception] = None
        self.statuses: dict = {}

    async def create_token(self, payload: dict) -> dict:
        self.token_requests.append(payload)
        if self.token_error is not None:
            raise self.token_error
        order_id = payload["transaction_details"]["order_id"]
        return {"token": f"tok-{order_id}", "redirect_url": f"https://pay.test/{order_id}"}

    async def query_status(self, order_number: str) -> dict:
        value = self.statuses.get(order_number)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise PaymentGatewayError("Transaction not found", 404, {"status_code": "404"})
        return value


def signed_notification(order_id: str, transaction_status: str, gross_amount="100000.00", **extra) -> dict:
    status_code = "200" if transaction_status in ("settlement", "capture") else "201"
    body = {
        "order_id": order_id,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross_amount,
        **extra,
    }
    body["signature_key"] = generate_signature(order_id, status_code, str(gross_amount), SERVER_KEY)
    return body


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables on a private in-memory database, yield a session, dispose."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the DB and gateway dependencies overridden."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def auth_headers() -> dict:
    token = create_access_token(data={"sub": OWNER_ID})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def other_headers() -> dict:
    token = create_access_token(data={"sub": "user-stranger"})
    return {"Authorization": f"Bearer {token}"}


# Seed helpers. They return plain ids: a rollback inside the code under test
# expires every loaded instance in the shared session.

async def seed_ticket(db: AsyncSession, price: int = 50000, is_active: bool = True, name: str = "Morning Pass") -> int:
    ticket = Ticket(name=name, price=price, is_active=is_active)
    db.add(ticket)
    await db.commit()
    return ticket.id


async def seed_bucket(
    db: AsyncSession,
    ticket_id: int,
    day: date,
    time_slot: Optional[str],
    total: int,
    reserved: int = 0,
    sold: int = 0,
) -> int:
    bucket = TicketAvailability(
        ticket_id=ticket_id,
        date=day,
        time_slot=time_slot,
        total_capacity=total,
        reserved_capacity=reserved,
        sold_capacity=sold,
    )
    db.add(bucket)
    await db.commit()
    return bucket.id


async def get_bucket(db: AsyncSession, bucket_id: int) -> TicketAvailability:
    result = await db.execute(
        select(TicketAvailability)
        .where(TicketAvailability.id == bucket_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def seed_ticket_order(
    db: AsyncSession,
    ticket_id: int,
    day: date,
    items: list[tuple[Optional[str], int]],
    status: str = TicketOrderStatus.PENDING.value,
    order_number: str = "SPK-1-TEST0",
    user_id: str = OWNER_ID,
    unit_price: int = 50000,
    expires_at: Optional[datetime] = None,
) -> str:
    total = sum(quantity * unit_price for _, quantity in items)
    order = Order(
        order_number=order_number,
        user_id=user_id,
        total_amount=total,
        status=status,
        expires_at=expires_at or datetime.now(timezone.utc) + timedelta(minutes=20),
    )
    db.add(order)
    await db.flush()
    db.add_all(
        [
            OrderItem(
                order_id=order.id,
                ticket_id=ticket_id,
                selected_date=day,
                selected_time_slots=[slot or "all-day"],
                quantity=quantity,
                unit_price=unit_price,
                subtotal=quantity * unit_price,
            )
            for slot, quantity in items
        ]
    )
    await db.commit()
    return order_number


async def seed_variant(
    db: AsyncSession,
    stock: int,
    reserved: int = 0,
    price: int = 100000,
    is_active: bool = True,
    name: str = "Tote Bag",
) -> int:
    variant = ProductVariant(name=name, price=price, stock=stock, reserved_stock=reserved, is_active=is_active)
    db.add(variant)
    await db.commit()
    return variant.id


async def get_variant(db: AsyncSession, variant_id: int) -> ProductVariant:
    result = await db.execute(
        select(ProductVariant)
        .where(ProductVariant.id == variant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def seed_product_order(
    db: AsyncSession,
    variant_id: int,
    quantity: int = 1,
    price: int = 100000,
    order_number: str = "PRD-1-TEST0",
    user_id: str = OWNER_ID,
    status: str = ProductOrderStatus.AWAITING_PAYMENT.value,
    payment_status: str = PaymentStatus.UNPAID.value,
    payment_expired_at: Optional[datetime] = None,
) -> str:
    order = ProductOrder(
        order_number=order_number,
        user_id=user_id,
        status=status,
        payment_status=payment_status,
        subtotal=price * quantity,
        total=price * quantity,
        payment_expired_at=payment_expired_at or datetime.now(timezone.utc) + timedelta(minutes=60),
    )
    db.add(order)
    await db.flush()
    db.add(
        ProductOrderItem(
            order_product_id=order.id,
            product_variant_id=variant_id,
            quantity=quantity,
            price=price,
            subtotal=price * quantity,
        )
    )
    await db.commit()
    return order_number
