"""
Human-readable identifiers for orders, issued tickets and pickup codes.
"""

import secrets
import string
import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.models.product import ProductOrder

_BASE36 = string.digits + string.ascii_uppercase
_CODE_ALPHABET = string.ascii_uppercase + string.digits

PICKUP_CODE_MAX_ATTEMPTS = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _random_chars(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_ticket_order_number() -> str:
    return f"SPK-{_now_ms()}-{_random_chars(_BASE36, 5)}"


def generate_product_order_number() -> str:
    return f"PRD-{_now_ms()}-{_random_chars(_BASE36, 5)}"


def generate_ticket_code() -> str:
    return f"TKT-{_random_chars(_CODE_ALPHABET, 8)}-{to_base36(_now_ms())}"


def _pickup_code_candidate() -> str:
    return f"PRX-{_random_chars(_CODE_ALPHABET, 3)}-{_random_chars(_CODE_ALPHABET, 3)}"


async def generate_pickup_code(db: AsyncSession) -> str:
    """
    Draw a pickup code not yet used by any order. The unique index on
    order_products.pickup_code still guards the race between two drawers.
    """
    for _ in range(PICKUP_CODE_MAX_ATTEMPTS):
        candidate = _pickup_code_candidate()
        result = await db.execute(
            select(ProductOrder.id).where(ProductOrder.pickup_code == candidate)
        )
        if result.first() is None:
            return candidate
    raise RuntimeError("Could not allocate a unique pickup code")
