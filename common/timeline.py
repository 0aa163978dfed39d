"""Slot grid used to lay bookings out on the day timeline."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import Any, Iterable, List, Optional, Sequence

from .availability import find_conflict
from .config import get_settings

settings = get_settings()

_TIME_FORMAT = "%H:%M"


@dataclass(frozen=True)
class SlotConfig:
    start_time: str = "05:50"
    end_time: str = "19:00"
    slot_minutes: int = 10

    @classmethod
    def from_settings(cls) -> "SlotConfig":
        return cls(
            start_time=settings.timeline_start,
            end_time=settings.timeline_end,
            slot_minutes=settings.slot_minutes,
        )

    @property
    def day_hours(self) -> float:
        start = datetime.strptime(self.start_time, _TIME_FORMAT)
        end = datetime.strptime(self.end_time, _TIME_FORMAT)
        return (end - start).total_seconds() / 3600


@dataclass(frozen=True)
class TimeSlot:
    time: str
    display: str
    index: int


@dataclass(frozen=True)
class BookingBlock:
    booking: Any
    start_slot: int
    end_slot: int
    span: int


@lru_cache(maxsize=16)
def _build_slots(config: SlotConfig) -> tuple[TimeSlot, ...]:
    if config.slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")
    current = datetime.strptime(config.start_time, _TIME_FORMAT)
    end = datetime.strptime(config.end_time, _TIME_FORMAT)
    step = timedelta(minutes=config.slot_minutes)
    slots = []
    index = 0
    while current <= end:
        label = current.strftime(_TIME_FORMAT)
        slots.append(TimeSlot(time=label, display=label, index=index))
        index += 1
        current += step
    return tuple(slots)


def generate_time_slots(config: Optional[SlotConfig] = None) -> List[TimeSlot]:
    """Every slot from the configured start to end (inclusive), in order."""

    return list(_build_slots(config or SlotConfig.from_settings()))


def slot_index(time_of_day: str, slots: Optional[Sequence[TimeSlot]] = None) -> int:
    slots = slots if slots is not None else generate_time_slots()
    for slot in slots:
        if slot.time == time_of_day:
            return slot.index
    return -1


def time_from_slot_index(index: int, slots: Optional[Sequence[TimeSlot]] = None) -> str:
    slots = slots if slots is not None else generate_time_slots()
    if 0 <= index < len(slots):
        return slots[index].time
    return slots[0].time


def normalize_time_to_slot(moment: datetime, slots: Optional[Sequence[TimeSlot]] = None) -> datetime:
    """Snap a timestamp to the nearest slot on the same day."""

    slots = slots if slots is not None else generate_time_slots()
    target = moment.hour * 60 + moment.minute

    def _distance(slot: TimeSlot) -> int:
        hours, minutes = slot.time.split(":")
        return abs(int(hours) * 60 + int(minutes) - target)

    closest = min(slots, key=_distance)
    hours, minutes = closest.time.split(":")
    return moment.replace(hour=int(hours), minute=int(minutes), second=0, microsecond=0)


def extension_slots(current_end: datetime, slots: Optional[Sequence[TimeSlot]] = None) -> List[TimeSlot]:
    """Slots a booking ending at ``current_end`` could be extended to."""

    slots = slots if slots is not None else generate_time_slots()
    current = current_end.strftime(_TIME_FORMAT)
    return [slot for slot in slots if slot.time > current]


def project_bookings_to_blocks(bookings: Iterable[Any], day: date, slots: Sequence[TimeSlot]) -> List[BookingBlock]:
    """Map rows with ``start_time``/``end_time`` onto slot index ranges for ``day``.

    The end slot is exclusive. Rows whose start is not on a slot boundary are
    left out; an end without a matching slot is clamped to the end of the grid.
    """

    by_time = {slot.time: slot.index for slot in slots}
    blocks: List[BookingBlock] = []
    for booking in bookings:
        start: datetime = booking.start_time
        end: datetime = booking.end_time
        if start.date() != day and end.date() != day:
            continue

        start_slot = by_time.get(start.strftime(_TIME_FORMAT))
        if start_slot is None:
            continue

        end_slot = by_time.get(end.strftime(_TIME_FORMAT)) if end.date() == day else None
        if end_slot is None:
            end_slot = len(slots)
        if end_slot <= start_slot:
            continue
        blocks.append(BookingBlock(booking=booking, start_slot=start_slot, end_slot=end_slot, span=end_slot - start_slot))
    return blocks


def project_room_blocks(room_blocks: Iterable[Any], day: date, slots: Sequence[TimeSlot]) -> List[BookingBlock]:
    """Map maintenance blocks onto the slots they cover on ``day``.

    A slot is covered when its start lies in ``[block.start_time, block.end_time)``,
    so blocks entered at arbitrary times still show, widened to the grid.
    """

    day_start = datetime.combine(day, datetime.min.time())
    slot_starts = []
    for slot in slots:
        hours, minutes = slot.time.split(":")
        slot_starts.append(day_start.replace(hour=int(hours), minute=int(minutes)))

    projected: List[BookingBlock] = []
    for block in room_blocks:
        covered = [index for index, moment in enumerate(slot_starts) if block.start_time <= moment < block.end_time]
        if not covered:
            continue
        start_slot, end_slot = covered[0], covered[-1] + 1
        projected.append(BookingBlock(booking=block, start_slot=start_slot, end_slot=end_slot, span=end_slot - start_slot))
    return projected


def slot_range_available(
    room_id: int,
    day: date,
    start_slot: int,
    end_slot: int,
    bookings: Iterable[Any],
    room_blocks: Iterable[Any] = (),
    slots: Optional[Sequence[TimeSlot]] = None,
) -> bool:
    """In-memory availability check for a slot range, used when rendering a day already loaded."""

    slots = slots if slots is not None else generate_time_slots()
    day_start = datetime.combine(day, datetime.min.time())

    def _at(index: int) -> datetime:
        hours, minutes = slots[index].time.split(":")
        return day_start.replace(hour=int(hours), minute=int(minutes))

    result = find_conflict(
        _at(start_slot),
        _at(end_slot),
        [booking for booking in bookings if booking.room_id == room_id],
        [block for block in room_blocks if block.room_id == room_id],
    )
    return result.valid
