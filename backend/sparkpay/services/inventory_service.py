"""
Inventory ledger: ticket capacity buckets and product variant stock.

CONCURRENCY STRATEGY
====================

Ticket capacity (hard guarantee):
  Every counter change is ONE conditional UPDATE whose WHERE clause carries the
  invariant. Reserving the last unit looks like

    UPDATE ticket_availabilities
       SET reserved_capacity = reserved_capacity + :q, version = version + 1
     WHERE ticket_id = :t AND date = :d AND time_slot IS NOT DISTINCT FROM :s
       AND total_capacity - reserved_capacity - sold_capacity >= :q

  Two concurrent checkouts for the last unit serialize on the row lock; the
  second one re-evaluates the predicate after the first commits, matches zero
  rows, and is rejected. No read-then-write happens in Python.

  Release clamps at zero, so releasing an already-released quantity cannot
  drive the counter negative. Finalize moves quantity from reserved to sold
  and refuses (returns False) if that would overdraw the bucket, which only
  happens for late settlements whose hold was already released.

Product stock (optimistic, bounded retry):
  Reservation reads the variant's version, then updates only if the version
  is unchanged and enough unreserved stock remains. On a version conflict it
  re-reads, up to STOCK_RESERVE_MAX_ATTEMPTS times. Release is a single
  clamped decrement.
"""

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Optional

from sqlalchemy import case, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.core.config import get_settings
from sparkpay.core.logging import get_logger
from sparkpay.core.metrics import record_reservation, stock_reservation_retries
from sparkpay.models.product import ProductVariant
from sparkpay.models.ticket import TicketAvailability

logger = get_logger(__name__)

ALL_DAY = "all-day"


def normalize_selected_time_slots(value: Any) -> list[str]:
    """Coerce stored slot selections (list, JSON string or bare string) into a list."""
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [value]
        if isinstance(parsed, list):
            return [str(v) for v in parsed]
        return [value]
    return []


def normalize_availability_time_slot(value: Optional[str]) -> Optional[str]:
    """Map a selected slot to its bucket key: the all-day sentinel and empty mean NULL."""
    if not value or value == ALL_DAY:
        return None
    return value


@dataclass
class CapacityKey:
    ticket_id: int
    date: date
    time_slot: Optional[str]

    def as_tuple(self) -> tuple:
        return (self.ticket_id, self.date, self.time_slot)


def aggregate_capacity(entries: Iterable[tuple[int, date, Optional[str], int]]) -> list[tuple[CapacityKey, int]]:
    """Sum quantities per bucket so each bucket is touched by one statement."""
    totals: dict[tuple, int] = {}
    keys: dict[tuple, CapacityKey] = {}
    for ticket_id, day, slot, quantity in entries:
        key = CapacityKey(ticket_id, day, normalize_availability_time_slot(slot))
        totals[key.as_tuple()] = totals.get(key.as_tuple(), 0) + quantity
        keys.setdefault(key.as_tuple(), key)
    return [(keys[k], q) for k, q in totals.items()]


def _bucket_filter(ticket_id: int, day: date, time_slot: Optional[str]):
    return (
        TicketAvailability.ticket_id == ticket_id,
        TicketAvailability.date == day,
        TicketAvailability.time_slot.is_not_distinct_from(normalize_availability_time_slot(time_slot)),
    )


def _clamped_decrement(column, quantity: int):
    return case((column > quantity, column - quantity), else_=0)


async def reserve_ticket_capacity(
    db: AsyncSession,
    ticket_id: int,
    day: date,
    time_slot: Optional[str],
    quantity: int,
) -> bool:
    """Hold `quantity` units in a bucket iff reserved + sold stays within total."""
    if quantity is None or quantity <= 0:
        return False

    result = await db.execute(
        update(TicketAvailability)
        .where(
            *_bucket_filter(ticket_id, day, time_slot),
            TicketAvailability.total_capacity
            - TicketAvailability.reserved_capacity
            - TicketAvailability.sold_capacity
            >= quantity,
        )
        .values(
            reserved_capacity=TicketAvailability.reserved_capacity + quantity,
            version=TicketAvailability.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    reserved = result.rowcount > 0
    record_reservation("ticket", reserved)
    logger.info(
        "ticket_capacity_reserved" if reserved else "ticket_capacity_rejected",
        ticket_id=ticket_id,
        date=str(day),
        time_slot=normalize_availability_time_slot(time_slot),
        quantity=quantity,
    )
    return reserved


async def release_ticket_capacity(
    db: AsyncSession,
    ticket_id: int,
    day: date,
    time_slot: Optional[str],
    quantity: int,
) -> bool:
    """Return held units to the pool, floored at zero. Returns False if the bucket is unknown."""
    if quantity is None or quantity <= 0:
        return False

    result = await db.execute(
        update(TicketAvailability)
        .where(*_bucket_filter(ticket_id, day, time_slot))
        .values(
            reserved_capacity=_clamped_decrement(TicketAvailability.reserved_capacity, quantity),
            version=TicketAvailability.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    released = result.rowcount > 0
    logger.info(
        "ticket_capacity_released",
        ticket_id=ticket_id,
        date=str(day),
        time_slot=normalize_availability_time_slot(time_slot),
        quantity=quantity,
        found=released,
    )
    return released


async def finalize_ticket_capacity(
    db: AsyncSession,
    ticket_id: int,
    day: date,
    time_slot: Optional[str],
    quantity: int,
    hold_released: bool = False,
) -> bool:
    """
    Convert held units into sold units at payment confirmation.

    The reserved counter drops by at most what it holds. The update is refused
    if the resulting reserved + sold would exceed total; with a live hold the
    sum is unchanged.

    With ``hold_released`` the order's own hold is already gone (a late
    settlement after the release path ran), so the units are sold fresh:
    only sold grows, and only while the bucket has that much free room.
    Reserved units belong to other in-flight orders and are left alone.
    """
    if quantity is None or quantity <= 0:
        return False

    if hold_released:
        consumed = literal(0)
    else:
        consumed = case(
            (TicketAvailability.reserved_capacity > quantity, quantity),
            else_=TicketAvailability.reserved_capacity,
        )
    result = await db.execute(
        update(TicketAvailability)
        .where(
            *_bucket_filter(ticket_id, day, time_slot),
            TicketAvailability.sold_capacity
            + quantity
            + TicketAvailability.reserved_capacity
            - consumed
            <= TicketAvailability.total_capacity,
        )
        .values(
            reserved_capacity=TicketAvailability.reserved_capacity - consumed,
            sold_capacity=TicketAvailability.sold_capacity + quantity,
            version=TicketAvailability.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    finalized = result.rowcount > 0
    if finalized:
        logger.info(
            "ticket_capacity_finalized",
            ticket_id=ticket_id,
            date=str(day),
            time_slot=normalize_availability_time_slot(time_slot),
            quantity=quantity,
            fresh_sale=hold_released,
        )
    else:
        logger.warning(
            "ticket_capacity_finalize_rejected",
            ticket_id=ticket_id,
            date=str(day),
            time_slot=normalize_availability_time_slot(time_slot),
            quantity=quantity,
            fresh_sale=hold_released,
        )
    return finalized


async def get_ticket_availability(db: AsyncSession, ticket_id: int, day: date) -> list[TicketAvailability]:
    result = await db.execute(
        select(TicketAvailability)
        .where(TicketAvailability.ticket_id == ticket_id, TicketAvailability.date == day)
        .order_by(TicketAvailability.time_slot.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def load_variants(db: AsyncSession, variant_ids: Iterable[int]) -> dict[int, ProductVariant]:
    ids = sorted(set(variant_ids))
    if not ids:
        return {}
    result = await db.execute(
        select(ProductVariant)
        .where(ProductVariant.id.in_(ids))
        .execution_options(populate_existing=True)
    )
    return {v.id: v for v in result.scalars().all()}


async def reserve_product_stock(db: AsyncSession, variant_id: int, quantity: int) -> bool:
    """
    Hold stock for an unpaid order using the variant's version as a CAS token.
    Retries on version conflicts; returns False when stock is insufficient.
    """
    if quantity is None or quantity <= 0:
        return False

    max_attempts = get_settings().STOCK_RESERVE_MAX_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        result = await db.execute(
            select(ProductVariant.stock, ProductVariant.reserved_stock, ProductVariant.version)
            .where(ProductVariant.id == variant_id)
        )
        row = result.one_or_none()
        if row is None:
            record_reservation("product", False)
            return False

        stock, reserved, current_version = row
        if stock - reserved < quantity:
            logger.warning(
                "product_stock_rejected",
                variant_id=variant_id,
                requested=quantity,
                available=stock - reserved,
            )
            record_reservation("product", False)
            return False

        update_result = await db.execute(
            update(ProductVariant)
            .where(
                ProductVariant.id == variant_id,
                ProductVariant.version == current_version,
                ProductVariant.stock - ProductVariant.reserved_stock >= quantity,
            )
            .values(
                reserved_stock=ProductVariant.reserved_stock + quantity,
                version=ProductVariant.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if update_result.rowcount > 0:
            logger.info("product_stock_reserved", variant_id=variant_id, quantity=quantity, attempt=attempt)
            record_reservation("product", True)
            return True

        stock_reservation_retries.inc()
        logger.info("product_stock_retry", variant_id=variant_id, attempt=attempt, reason="version_conflict")

    logger.warning("product_stock_contended", variant_id=variant_id, attempts=max_attempts)
    record_reservation("product", False)
    return False


async def release_product_stock(db: AsyncSession, variant_id: int, quantity: int) -> bool:
    """Return held stock, floored at zero."""
    if quantity is None or quantity <= 0:
        return False

    result = await db.execute(
        update(ProductVariant)
        .where(ProductVariant.id == variant_id)
        .values(
            reserved_stock=_clamped_decrement(ProductVariant.reserved_stock, quantity),
            version=ProductVariant.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    released = result.rowcount > 0
    logger.info("product_stock_released", variant_id=variant_id, quantity=quantity, found=released)
    return released
