"""
Payment effects handler factory.
Picks the kind-specific effects implementation for an order.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.models.enums import OrderKind
from sparkpay.services.interfaces.order_effects import OrderEffects
from sparkpay.services.payment_effects import ProductOrderEffects, TicketOrderEffects

_HANDLERS: dict[OrderKind, OrderEffects] = {
    OrderKind.TICKET: TicketOrderEffects(),
    OrderKind.PRODUCT: ProductOrderEffects(),
}

# Product orders are matched first, then ticket orders
RESOLUTION_ORDER = (OrderKind.PRODUCT, OrderKind.TICKET)


def get_effects_handler(kind: OrderKind) -> OrderEffects:
    return _HANDLERS[OrderKind(kind)]


async def resolve_order(db: AsyncSession, order_number: str) -> Optional[tuple[OrderEffects, Any]]:
    """
    Find which kind of order a gateway order id refers to.

    Returns:
        (handler, order) or None when no order carries that number
    """
    if not order_number:
        return None
    for kind in RESOLUTION_ORDER:
        handler = _HANDLERS[kind]
        order = await handler.load(db, order_number)
        if order is not None:
            return handler, order
    return None
