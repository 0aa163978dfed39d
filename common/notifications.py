"""Booking confirmation emails with an attached calendar invite."""
from __future__ import annotations

import base64
import html
import logging
from datetime import datetime
from typing import Any, Mapping

import httpx
from circuitbreaker import CircuitBreakerError, circuit
from icalendar import Calendar, Event, vCalAddress, vText

from .config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

INVITE_FILENAME = "booking.ics"


class EmailDeliveryError(Exception):
    """The email provider rejected the message or could not be reached."""


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def format_location(room: Mapping[str, Any]) -> str:
    floor = int(room.get("floor") or 0)
    label = "Ground floor" if floor == 0 else f"Floor {floor}"
    return f"{room.get('name', 'Room')} - {label}"


def build_booking_invite(booking: Mapping[str, Any], user: Mapping[str, Any], room: Mapping[str, Any]) -> str:
    """Render the booking as an iCalendar document."""

    calendar = Calendar()
    calendar.add("prodid", "-//Room Booking//Booking Invite//EN")
    calendar.add("version", "2.0")
    calendar.add("method", "REQUEST")

    event = Event()
    event.add("uid", f"booking-{booking.get('id', 'new')}@roombooking")
    event.add("dtstamp", datetime.utcnow())
    event.add("dtstart", _parse_timestamp(booking["start_time"]))
    event.add("dtend", _parse_timestamp(booking["end_time"]))
    event.add("summary", booking.get("title") or "Room booking")
    event.add("description", booking.get("description") or f"Booking in room {room.get('name', '')}")
    event.add("location", format_location(room))
    event.add("status", "CONFIRMED")
    event.add("transp", "OPAQUE")

    if user.get("email"):
        organizer = vCalAddress(f"mailto:{user['email']}")
        organizer.params["cn"] = vText(user.get("full_name") or user["email"])
        event["organizer"] = organizer

    calendar.add_component(event)
    return calendar.to_ical().decode("utf-8")


def render_confirmation_html(booking: Mapping[str, Any], user: Mapping[str, Any], room: Mapping[str, Any]) -> str:
    start = _parse_timestamp(booking["start_time"])
    end = _parse_timestamp(booking["end_time"])
    description = booking.get("description")
    description_item = f"<li><strong>Description:</strong> {html.escape(description)}</li>" if description else ""
    return (
        "<h2>Booking confirmed</h2>"
        f"<p>Hello {html.escape(user.get('full_name') or '')},</p>"
        "<p>Your booking has been confirmed.</p>"
        "<h3>Details</h3>"
        "<ul>"
        f"<li><strong>Room:</strong> {html.escape(format_location(room))}</li>"
        f"<li><strong>Date:</strong> {start.strftime('%Y-%m-%d')}</li>"
        f"<li><strong>Time:</strong> {start.strftime('%H:%M')} - {end.strftime('%H:%M')}</li>"
        f"<li><strong>Title:</strong> {html.escape(booking.get('title') or '')}</li>"
        f"{description_item}"
        f"<li><strong>Attendees:</strong> {int(booking.get('attendees_count') or 1)}</li>"
        "</ul>"
    )


@circuit(failure_threshold=5, recovery_timeout=60, expected_exception=httpx.HTTPError)
def _post_to_provider(message: dict[str, Any]) -> dict[str, Any]:
    response = httpx.post(
        settings.resend_api_url,
        json=message,
        headers={"Authorization": f"Bearer {settings.resend_api_key}"},
        timeout=settings.email_timeout_seconds,
    )
    response.raise_for_status()
    return response.json()


def send_booking_confirmation(
    booking: Mapping[str, Any],
    user: Mapping[str, Any],
    room: Mapping[str, Any],
) -> dict[str, Any]:
    """Build the invite and email it; without provider credentials only the invite is returned."""

    invite = build_booking_invite(booking, user, room)
    if not settings.resend_api_key:
        logger.warning("Email provider not configured; booking confirmation not sent")
        return {"message": "Email service not configured", "ics": invite}

    message = {
        "from": settings.email_from,
        "to": [user["email"]],
        "subject": f"Booking confirmed: {booking.get('title', '')}",
        "html": render_confirmation_html(booking, user, room),
        "attachments": [
            {"filename": INVITE_FILENAME, "content": base64.b64encode(invite.encode("utf-8")).decode("ascii")}
        ],
    }
    try:
        _post_to_provider(message)
    except (httpx.HTTPError, CircuitBreakerError) as exc:
        logger.error("Booking confirmation to %s failed: %s", user.get("email"), exc)
        raise EmailDeliveryError(str(exc)) from exc
    logger.info("Booking confirmation sent to %s", user.get("email"))
    return {"message": "Email sent successfully", "ics": invite}
