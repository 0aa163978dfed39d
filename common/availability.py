"""Room availability validation against confirmed bookings and maintenance blocks.

A candidate interval ``[start, end)`` conflicts with an existing row
``[s, e)`` when ``start < e and end > s``. Intervals that merely touch
(``start == e`` or ``end == s``) do not conflict.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .models import Booking, BookingStatus, RoomBlock
from .policy import ValidationResult

logger = logging.getLogger(__name__)
settings = get_settings()

BOOKING_CONFLICT = "This time slot is already booked."
ROOM_BLOCKED = "The room is blocked for maintenance during this period."
AVAILABILITY_UNVERIFIED = "Could not verify room availability."


class Interval(Protocol):
    start_time: datetime
    end_time: datetime


def intervals_overlap(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and end > other_start


def normalize_interval(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Overnight intervals expressed on a single date get their end moved to the next day."""

    if end < start:
        end = end + timedelta(days=1)
    return start, end


def find_conflict(
    start: datetime,
    end: datetime,
    bookings: Iterable[Booking],
    blocks: Iterable[Interval],
    exclude_booking_id: Optional[int] = None,
) -> ValidationResult:
    start, end = normalize_interval(start, end)
    for booking in bookings:
        if exclude_booking_id is not None and booking.id == exclude_booking_id:
            continue
        if booking.status != BookingStatus.CONFIRMED.value:
            continue
        if intervals_overlap(start, end, booking.start_time, booking.end_time):
            return ValidationResult.fail(BOOKING_CONFLICT)
    for block in blocks:
        if intervals_overlap(start, end, block.start_time, block.end_time):
            return ValidationResult.fail(ROOM_BLOCKED)
    return ValidationResult.ok()


def check_availability(
    db: Session,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_booking_id: Optional[int] = None,
) -> ValidationResult:
    """Check a room for conflicts; any read failure is reported as unavailable."""

    try:
        bookings = (
            db.query(Booking)
            .filter(Booking.room_id == room_id, Booking.status == BookingStatus.CONFIRMED.value)
            .all()
        )
        blocks = db.query(RoomBlock).filter(RoomBlock.room_id == room_id).all()
    except SQLAlchemyError:
        logger.error(
            "Availability lookup failed for room %s", room_id, exc_info=settings.environment == "development"
        )
        return ValidationResult.fail(AVAILABILITY_UNVERIFIED)
    return find_conflict(start_time, end_time, bookings, blocks, exclude_booking_id)
