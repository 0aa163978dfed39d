"""Booking policy checks: duration, advance window and capacity."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .cache import cached_booking_limits, forget_booking_limits, store_booking_limits
from .config import get_settings
from .models import Setting

logger = logging.getLogger(__name__)
settings = get_settings()

MAX_DURATION_KEY = "max_booking_duration_hours"
MAX_DAYS_AHEAD_KEY = "max_days_ahead"

SETTING_DESCRIPTIONS = {
    MAX_DURATION_KEY: "Maximum duration of a single booking, in hours",
    MAX_DAYS_AHEAD_KEY: "How many days ahead a booking may start",
}


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


@dataclass(frozen=True)
class BookingLimits:
    max_duration_hours: int = settings.default_max_booking_duration_hours
    max_days_ahead: int = settings.default_max_days_ahead


def check_duration(start: datetime, end: datetime, max_duration_hours: int) -> ValidationResult:
    duration_minutes = int((end - start).total_seconds() // 60)
    if duration_minutes <= 0:
        return ValidationResult.fail("End time must be after start time.")
    if duration_minutes > max_duration_hours * 60:
        return ValidationResult.fail(f"The maximum booking duration is {max_duration_hours} hours.")
    return ValidationResult.ok()


def check_advance(start: datetime, now: datetime, max_days_ahead: int) -> ValidationResult:
    if start < now:
        return ValidationResult.fail("Bookings cannot be made in the past.")
    if start > now + timedelta(days=max_days_ahead):
        return ValidationResult.fail(f"Bookings can only be made up to {max_days_ahead} days ahead.")
    return ValidationResult.ok()


def check_capacity(attendees_count: int, room_capacity: int) -> ValidationResult:
    if attendees_count > room_capacity:
        return ValidationResult.fail(f"This room holds at most {room_capacity} attendees.")
    if attendees_count < 1:
        return ValidationResult.fail("At least 1 attendee is required.")
    return ValidationResult.ok()


def first_failure(*results: ValidationResult) -> ValidationResult:
    """Return the first failed result, or success when every check passed."""

    for result in results:
        if not result.valid:
            return result
    return ValidationResult.ok()


def default_attendees(room_capacity: int) -> int:
    # NOTE: always 1 for any room with capacity >= 1; pending product clarification.
    return min(1, room_capacity)


def _parse_positive_int(raw: Optional[str], fallback: int) -> int:
    try:
        value = int(raw) if raw is not None else fallback
    except ValueError:
        return fallback
    return value if value > 0 else fallback


def load_booking_limits(db: Session) -> BookingLimits:
    """Read the booking limits from the settings table, falling back to defaults."""

    cached = cached_booking_limits()
    if cached is not None:
        return cached

    defaults = BookingLimits()
    try:
        rows = db.query(Setting).filter(Setting.key.in_([MAX_DURATION_KEY, MAX_DAYS_AHEAD_KEY])).all()
    except SQLAlchemyError:
        logger.warning("Could not load booking limits, using defaults", exc_info=True)
        return defaults

    values = {row.key: row.value for row in rows}
    limits = BookingLimits(
        max_duration_hours=_parse_positive_int(values.get(MAX_DURATION_KEY), defaults.max_duration_hours),
        max_days_ahead=_parse_positive_int(values.get(MAX_DAYS_AHEAD_KEY), defaults.max_days_ahead),
    )
    store_booking_limits(limits)
    return limits


def invalidate_booking_limits() -> None:
    forget_booking_limits()


def seed_default_settings(db: Session) -> None:
    defaults = BookingLimits()
    seeded = {MAX_DURATION_KEY: defaults.max_duration_hours, MAX_DAYS_AHEAD_KEY: defaults.max_days_ahead}
    for key, value in seeded.items():
        if db.get(Setting, key) is None:
            db.add(Setting(key=key, value=str(value), description=SETTING_DESCRIPTIONS[key]))
    db.commit()
    invalidate_booking_limits()
