"""Unit tests for booking confirmation emails."""
from unittest.mock import patch

import httpx
import pytest
from icalendar import Calendar

from common import notifications
from common.notifications import (
    EmailDeliveryError,
    build_booking_invite,
    format_location,
    render_confirmation_html,
    send_booking_confirmation,
)

BOOKING = {
    "id": 42,
    "title": "Design review",
    "description": None,
    "start_time": "2030-01-15T09:00:00Z",
    "end_time": "2030-01-15T10:30:00Z",
    "attendees_count": 3,
}
USER = {"email": "ana@example.com", "full_name": "Ana"}
ROOM = {"name": "Atlas", "floor": 3}


class TestInvite:
    """Test calendar invite rendering."""

    def test_invite_fields(self):
        calendar = Calendar.from_ical(build_booking_invite(BOOKING, USER, ROOM))
        (event,) = calendar.walk("VEVENT")

        assert str(event["summary"]) == "Design review"
        assert str(event["location"]) == "Atlas - Floor 3"
        assert str(event["description"]) == "Booking in room Atlas"
        assert event["dtstart"].dt.hour == 9
        assert str(event["organizer"]) == "mailto:ana@example.com"

    def test_ground_floor_label(self):
        assert format_location({"name": "Lobby", "floor": 0}) == "Lobby - Ground floor"

    def test_html_escapes_user_text(self):
        html = render_confirmation_html({**BOOKING, "title": "<b>x</b>"}, USER, ROOM)
        assert "&lt;b&gt;x&lt;/b&gt;" in html
        assert "09:00 - 10:30" in html


class TestSendConfirmation:
    """Test delivery through the email provider."""

    def test_unconfigured_provider_returns_invite(self, monkeypatch):
        monkeypatch.setattr(notifications.settings, "resend_api_key", None)
        with patch.object(notifications, "_post_to_provider") as post:
            result = send_booking_confirmation(BOOKING, USER, ROOM)
        assert result["message"] == "Email service not configured"
        assert "BEGIN:VEVENT" in result["ics"]
        post.assert_not_called()

    def test_provider_error_is_wrapped(self, monkeypatch):
        monkeypatch.setattr(notifications.settings, "resend_api_key", "re_test")
        with patch.object(notifications, "_post_to_provider", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(EmailDeliveryError):
                send_booking_confirmation(BOOKING, USER, ROOM)
