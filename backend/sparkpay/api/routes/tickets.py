"""
Ticket availability endpoint with Redis caching.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sparkpay.db.session import get_db
from sparkpay.schemas.ticket import AvailabilityResponse, SlotAvailability
from sparkpay.services.inventory_service import ALL_DAY, get_ticket_availability
from sparkpay.services.cache_service import get_cached_availability, set_cached_availability
from sparkpay.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/tickets", tags=["Tickets"])


@router.get("/{ticket_id}/availability", response_model=AvailabilityResponse)
async def ticket_availability(
    ticket_id: int,
    day: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db),
):
    """
    Per-slot capacity for one ticket on one day.
    Served from cache when fresh; checkout never relies on this snapshot.
    """
    cached = await get_cached_availability(ticket_id, day)
    if cached:
        logger.info("availability_cache_hit", ticket_id=ticket_id)
        cached["cached"] = True
        return AvailabilityResponse(**cached)

    buckets = await get_ticket_availability(db, ticket_id, day)
    response_data = {
        "ticket_id": ticket_id,
        "date": day,
        "slots": [
            SlotAvailability(
                time_slot=bucket.time_slot or ALL_DAY,
                total_capacity=bucket.total_capacity,
                reserved_capacity=bucket.reserved_capacity,
                sold_capacity=bucket.sold_capacity,
                remaining_capacity=bucket.remaining_capacity,
            ).model_dump()
            for bucket in buckets
        ],
        "cached": False,
    }

    await set_cached_availability(ticket_id, day, response_data)
    return AvailabilityResponse(**response_data)
