"""In-process TTL caches for room status and booking limits.

Both values are read on nearly every request and change rarely, so each
service keeps them for a few seconds. Writers drop the affected entry
(``forget_*``) right after committing.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from cachetools import TTLCache

from .config import get_settings

if TYPE_CHECKING:
    from .policy import BookingLimits

settings = get_settings()

_LIMITS_KEY = "booking-limits"

_room_status: TTLCache[int, dict[str, str]] = TTLCache(maxsize=512, ttl=settings.room_cache_ttl)
_booking_limits: TTLCache[str, "BookingLimits"] = TTLCache(maxsize=1, ttl=settings.settings_cache_ttl)


def cached_room_status(room_id: int) -> Optional[dict[str, str]]:
    return _room_status.get(room_id)


def store_room_status(room_id: int, payload: dict[str, str]) -> None:
    _room_status[room_id] = payload


def forget_room_status(room_id: int) -> None:
    _room_status.pop(room_id, None)


def cached_booking_limits() -> Optional["BookingLimits"]:
    return _booking_limits.get(_LIMITS_KEY)


def store_booking_limits(limits: "BookingLimits") -> None:
    _booking_limits[_LIMITS_KEY] = limits


def forget_booking_limits() -> None:
    _booking_limits.clear()


def clear_caches() -> None:
    _room_status.clear()
    _booking_limits.clear()
