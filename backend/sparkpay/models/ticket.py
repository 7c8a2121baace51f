"""
Ticket catalog, capacity buckets and issued ticket units.

Key design decisions:
- A capacity bucket is keyed by (ticket_id, date, time_slot); a NULL time_slot
  is the all-day bucket, distinct from every concrete slot
- reserved/sold counters are only ever changed by single conditional UPDATEs
  in the inventory ledger, never by read-modify-write in Python
- CHECK constraints are the last line of defence against overdraw
- `version` is bumped on every counter change for optimistic readers
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from sparkpay.db.base import Base, TimestampMixin
from sparkpay.models.enums import PurchasedTicketStatus


class Ticket(Base, TimestampMixin):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Integer, nullable=False)  # whole currency units (IDR)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Ticket(id={self.id}, name={self.name}, price={self.price})>"


class TicketAvailability(Base, TimestampMixin):
    __tablename__ = "ticket_availabilities"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False)
    date = Column(Date, nullable=False)
    time_slot = Column(String(5), nullable=True)  # "HH:MM", NULL = all-day
    total_capacity = Column(Integer, nullable=False)
    reserved_capacity = Column(Integer, nullable=False, default=0)
    sold_capacity = Column(Integer, nullable=False, default=0)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint(
            "ticket_id", "date", "time_slot",
            name="uq_ticket_availability_bucket",
            postgresql_nulls_not_distinct=True,
        ),
        CheckConstraint("reserved_capacity >= 0", name="check_reserved_capacity_non_negative"),
        CheckConstraint("sold_capacity >= 0", name="check_sold_capacity_non_negative"),
        Index("ix_ticket_availabilities_ticket_date", "ticket_id", "date"),
    )

    @property
    def remaining_capacity(self) -> int:
        return max(0, self.total_capacity - self.reserved_capacity - self.sold_capacity)

    def __repr__(self) -> str:
        return (
            f"<TicketAvailability(ticket={self.ticket_id}, date={self.date}, slot={self.time_slot}, "
            f"reserved={self.reserved_capacity}, sold={self.sold_capacity}/{self.total_capacity})>"
        )


class PurchasedTicket(Base, TimestampMixin):
    __tablename__ = "purchased_tickets"

    id = Column(Integer, primary_key=True, index=True)
    ticket_code = Column(String(32), nullable=False, unique=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False)
    valid_date = Column(Date, nullable=False)
    time_slot = Column(String(5), nullable=True)  # NULL = all-day access
    status = Column(String(20), nullable=False, default=PurchasedTicketStatus.ACTIVE.value)

    __table_args__ = (
        Index("ix_purchased_tickets_status_valid_date", "status", "valid_date"),
    )

    def __repr__(self) -> str:
        return f"<PurchasedTicket(code={self.ticket_code}, item={self.order_item_id}, slot={self.time_slot})>"
