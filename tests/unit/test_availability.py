"""Unit tests for the availability validator."""
import logging
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from sqlalchemy.exc import OperationalError

from common import availability
from common.availability import (
    AVAILABILITY_UNVERIFIED,
    BOOKING_CONFLICT,
    ROOM_BLOCKED,
    check_availability,
    find_conflict,
    intervals_overlap,
    normalize_interval,
)


def at(hour: int, minute: int = 0, day: int = 10) -> datetime:
    return datetime(2030, 3, day, hour, minute)


def booking(start, end, booking_id=1, status="confirmed"):
    return SimpleNamespace(id=booking_id, start_time=start, end_time=end, status=status)


def block(start, end):
    return SimpleNamespace(start_time=start, end_time=end)


class TestIntervalOverlap:
    """Test half-open interval arithmetic."""

    def test_partial_overlap(self):
        assert intervals_overlap(at(9), at(10), at(9, 30), at(11)) is True

    def test_containment(self):
        assert intervals_overlap(at(9), at(12), at(10), at(11)) is True
        assert intervals_overlap(at(10), at(11), at(9), at(12)) is True

    def test_touching_intervals_do_not_overlap(self):
        assert intervals_overlap(at(9), at(10), at(10), at(11)) is False
        assert intervals_overlap(at(10), at(11), at(9), at(10)) is False

    def test_overnight_end_moves_to_next_day(self):
        start, end = normalize_interval(at(22), at(1))
        assert start == at(22)
        assert end == at(1, day=11)


class TestFindConflict:
    """Test conflict detection over in-memory rows."""

    def test_no_rows_is_available(self):
        assert find_conflict(at(9), at(10), [], []).valid is True

    def test_booking_conflict_message(self):
        result = find_conflict(at(9), at(10), [booking(at(9, 30), at(10, 30))], [])
        assert result.valid is False
        assert result.error == BOOKING_CONFLICT

    def test_block_conflict_message(self):
        result = find_conflict(at(9), at(10), [], [block(at(8), at(9, 10))])
        assert result.error == ROOM_BLOCKED

    def test_bookings_are_reported_before_blocks(self):
        result = find_conflict(at(9), at(10), [booking(at(9), at(10))], [block(at(9), at(10))])
        assert result.error == BOOKING_CONFLICT

    def test_excluded_booking_is_ignored(self):
        rows = [booking(at(9), at(10), booking_id=5)]
        assert find_conflict(at(9), at(11), rows, [], exclude_booking_id=5).valid is True
        assert find_conflict(at(9), at(11), rows, [], exclude_booking_id=6).valid is False

    def test_cancelled_bookings_never_conflict(self):
        rows = [booking(at(9), at(10), status="cancelled")]
        assert find_conflict(at(9), at(10), rows, []).valid is True

    def test_overnight_candidate_checked_against_next_morning(self):
        rows = [booking(at(0, 30, day=11), at(2, day=11))]
        assert find_conflict(at(23), at(1), rows, []).valid is False


class TestCheckAvailability:
    """Test the database-backed availability check."""

    def test_read_failure_fails_closed(self):
        mock_db = MagicMock()
        mock_db.query.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))

        result = check_availability(mock_db, 1, at(9), at(10))

        assert result.valid is False
        assert result.error == AVAILABILITY_UNVERIFIED

    def test_read_failure_traceback_only_in_development(self, caplog):
        mock_db = MagicMock()
        mock_db.query.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))

        with patch.object(availability.settings, "environment", "production"):
            with caplog.at_level(logging.ERROR, logger="common.availability"):
                check_availability(mock_db, 1, at(9), at(10))
        assert caplog.records[-1].exc_info is None

        caplog.clear()
        with patch.object(availability.settings, "environment", "development"):
            with caplog.at_level(logging.ERROR, logger="common.availability"):
                check_availability(mock_db, 1, at(9), at(10))
        assert caplog.records[-1].exc_info is not None

    def test_loads_rows_and_checks_them(self):
        mock_db = MagicMock()
        query = mock_db.query.return_value.filter.return_value
        query.all.side_effect = [[booking(at(9), at(10))], []]

        result = check_availability(mock_db, 1, at(9, 30), at(10, 30))

        assert result.error == BOOKING_CONFLICT
