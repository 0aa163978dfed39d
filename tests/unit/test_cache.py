"""Unit tests for the room-status and booking-limits caches."""
from unittest.mock import patch

from cachetools import TTLCache

from common import cache
from common.policy import BookingLimits


class TestRoomStatusCache:
    def test_entries_are_per_room(self):
        cache.store_room_status(1, {"room_id": "1", "status": "occupied"})

        assert cache.cached_room_status(1)["status"] == "occupied"
        assert cache.cached_room_status(2) is None

    def test_forget_drops_one_room(self):
        cache.store_room_status(1, {"status": "available"})
        cache.store_room_status(2, {"status": "blocked"})

        cache.forget_room_status(1)
        cache.forget_room_status(99)

        assert cache.cached_room_status(1) is None
        assert cache.cached_room_status(2) == {"status": "blocked"}

    def test_entries_expire(self):
        clock = [0.0]
        expiring = TTLCache(maxsize=8, ttl=60, timer=lambda: clock[0])
        with patch.object(cache, "_room_status", expiring):
            cache.store_room_status(3, {"status": "available"})
            clock[0] = 61.0
            assert cache.cached_room_status(3) is None


class TestBookingLimitsCache:
    def test_store_and_forget(self):
        assert cache.cached_booking_limits() is None

        cache.store_booking_limits(BookingLimits(max_duration_hours=2, max_days_ahead=7))
        assert cache.cached_booking_limits() == BookingLimits(max_duration_hours=2, max_days_ahead=7)

        cache.forget_booking_limits()
        assert cache.cached_booking_limits() is None

    def test_clear_caches_empties_both(self):
        cache.store_room_status(1, {"status": "available"})
        cache.store_booking_limits(BookingLimits())

        cache.clear_caches()

        assert cache.cached_room_status(1) is None
        assert cache.cached_booking_limits() is None
