"""
Ticket orders and their line items.

Key design decisions:
- `tickets_issued_at` / `capacity_released_at` are idempotency stamps: each is
  claimed with a conditional UPDATE (... WHERE stamp IS NULL) inside the same
  transaction as the side effect it guards, so a replayed or concurrent
  notification finds the stamp set and does nothing
- `payment_data` keeps the last raw gateway payload for forensics
- line items store their selected slots as a JSON list; "all-day" is the
  sentinel for whole-day entry
"""

from sqlalchemy import JSON, Column, Date, DateTime, ForeignKey, Index, Integer, String, CheckConstraint
from sqlalchemy.orm import relationship

from sparkpay.db.base import Base, TimestampMixin
from sparkpay.models.enums import TicketOrderStatus


class Order(Base, TimestampMixin):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    total_amount = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=TicketOrderStatus.PENDING.value)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    payment_id = Column(String(255), nullable=True)  # gateway token
    payment_url = Column(String(1024), nullable=True)
    payment_data = Column(JSON, nullable=True)

    # Idempotency markers for payment side effects
    tickets_issued_at = Column(DateTime(timezone=True), nullable=True)
    capacity_released_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'expired', 'failed', 'refunded')",
            name="check_order_status",
        ),
        Index("ix_orders_status_expires_at", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Order(number={self.order_number}, status={self.status})>"


class OrderItem(Base, TimestampMixin):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False)
    selected_date = Column(Date, nullable=False)
    selected_time_slots = Column(JSON, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    subtotal = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_order_item_quantity_positive"),
    )

    def __repr__(self) -> str:
        return f"<OrderItem(order={self.order_id}, ticket={self.ticket_id}, qty={self.quantity})>"
