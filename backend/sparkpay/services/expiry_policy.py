"""
Payment window policy.

Unpaid orders hold inventory, so the payment deadline depends on how
perishable that inventory is:

  Tickets:  min(MAX, max(MIN, minutes_to_earliest_session_end - BUFFER))
            with MAX=20, MIN=10, BUFFER=5. Sessions run SESSION_DURATION_MINUTES
            from their start time (business timezone, WIB). All-day entries
            impose no ceiling. A session that has already ended is rejected.

  Products: scarcer stock is released faster. Least available line item
            < 5 units -> 15 minutes, < 20 -> 30 minutes, otherwise 60.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional

from sparkpay.core.config import get_settings

_SLOT_PATTERN = re.compile(r"^(\d{2}):(\d{2})")

PRODUCT_WINDOW_SCARCE_MINUTES = 15
PRODUCT_WINDOW_LOW_MINUTES = 30
PRODUCT_WINDOW_DEFAULT_MINUTES = 60


class SessionEndedError(ValueError):
    def __init__(self, day: date, time_slot: str, ended_at: datetime):
        super().__init__(f"The selected session ({time_slot} on {day.isoformat()}) has already ended")
        self.day = day
        self.time_slot = time_slot
        self.ended_at = ended_at


def business_timezone() -> timezone:
    return timezone(timedelta(hours=get_settings().BUSINESS_UTC_OFFSET_HOURS))


def business_today(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(business_timezone()).date()


def parse_time_slot(value: Optional[str]) -> Optional[time]:
    """Return the session start for "HH:MM" slots, None for all-day or unparsable values."""
    if not value:
        return None
    match = _SLOT_PATTERN.match(value)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def session_end(day: date, time_slot: Optional[str]) -> Optional[datetime]:
    start = parse_time_slot(time_slot)
    if start is None:
        return None
    starts_at = datetime.combine(day, start, tzinfo=business_timezone())
    return starts_at + timedelta(minutes=get_settings().SESSION_DURATION_MINUTES)


def has_session_ended(day: date, time_slot: Optional[str], now: Optional[datetime] = None) -> bool:
    ends_at = session_end(day, time_slot)
    if ends_at is None:
        return False
    return (now or datetime.now(timezone.utc)) > ends_at


def ticket_payment_window(
    sessions: Iterable[tuple[date, Optional[str]]],
    now: Optional[datetime] = None,
) -> int:
    """Payment window in minutes for a ticket checkout. Raises SessionEndedError."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    minutes_to_end: Optional[int] = None
    for day, time_slot in sessions:
        ends_at = session_end(day, time_slot)
        if ends_at is None:
            continue
        if now > ends_at:
            raise SessionEndedError(day, time_slot, ends_at)
        remaining = int((ends_at - now).total_seconds() // 60)
        minutes_to_end = remaining if minutes_to_end is None else min(minutes_to_end, remaining)

    if minutes_to_end is None:
        return settings.TICKET_PAYMENT_MAX_MINUTES

    return min(
        settings.TICKET_PAYMENT_MAX_MINUTES,
        max(settings.TICKET_PAYMENT_MIN_MINUTES, minutes_to_end - settings.TICKET_PAYMENT_BUFFER_MINUTES),
    )


def product_payment_window(available_levels: Iterable[int]) -> int:
    levels = list(available_levels)
    if not levels:
        return PRODUCT_WINDOW_DEFAULT_MINUTES
    least = min(levels)
    if least < 5:
        return PRODUCT_WINDOW_SCARCE_MINUTES
    if least < 20:
        return PRODUCT_WINDOW_LOW_MINUTES
    return PRODUCT_WINDOW_DEFAULT_MINUTES
