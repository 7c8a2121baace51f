"""
Pydantic schemas for ticket availability reads.
"""

from datetime import date
from pydantic import BaseModel


class SlotAvailability(BaseModel):
    time_slot: str  # "HH:MM" or "all-day"
    total_capacity: int
    reserved_capacity: int
    sold_capacity: int
    remaining_capacity: int


class AvailabilityResponse(BaseModel):
    ticket_id: int
    date: date
    slots: list[SlotAvailability]
    cached: bool = False
