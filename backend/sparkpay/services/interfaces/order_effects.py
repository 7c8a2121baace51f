"""
Payment effects interface.
Each order kind (ticket, product) plugs its own side effects into the same
transition entry point.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.models.enums import OrderKind, PaymentOutcome


class OrderEffects(ABC):
    """
    Interface for kind-specific payment side effects.

    Implementations:
    - TicketOrderEffects: issue purchased tickets, finalize or release capacity
    - ProductOrderEffects: pickup code and review flagging, release reserved stock

    Every method must be safe to call repeatedly for the same order; the
    idempotency stamps on the order are claimed with conditional updates in
    the caller's transaction.
    """

    kind: OrderKind

    @abstractmethod
    async def load(self, db: AsyncSession, order_number: str) -> Optional[Any]:
        """Fetch the order with its items, bypassing the identity map."""
        pass

    @abstractmethod
    async def reload(self, db: AsyncSession, order: Any) -> Any:
        """Re-read an order after bulk updates touched its row."""
        pass

    @abstractmethod
    async def apply_outcome(
        self,
        db: AsyncSession,
        order: Any,
        outcome: PaymentOutcome,
        gateway_payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Move the order to the status implied by `outcome` and run the
        matching side effects exactly once.

        Returns:
            Summary of what changed (previous/new status and effect counts)
        """
        pass

    @abstractmethod
    async def apply_paid_effects(
        self,
        db: AsyncSession,
        order: Any,
        gross_amount: Any = None,
        now: Optional[datetime] = None,
    ) -> dict:
        pass

    @abstractmethod
    async def apply_release_effects(self, db: AsyncSession, order: Any, now: Optional[datetime] = None) -> dict:
        pass

    @abstractmethod
    def serialize(self, order: Any) -> dict:
        """Client-facing view of the order after a sync."""
        pass

    def owner_id(self, order: Any) -> Optional[str]:
        return order.user_id
