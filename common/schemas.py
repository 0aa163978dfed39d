"""Pydantic schemas shared across the services."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .models import BookingStatus, RoleEnum, RoomStatus


def to_naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware inputs are converted first."""

    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserRead(BaseModel):
    id: int
    email: EmailStr
    full_name: str
    department: str
    role: RoleEnum
    avatar_url: Optional[str] = None
    terms_accepted: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ProfileRead(UserRead):
    permissions: List[str] = []


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=150)
    department: Optional[str] = Field(None, max_length=100)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class RoleUpdate(BaseModel):
    role: RoleEnum


class PermissionsUpdate(BaseModel):
    permissions: List[str]


class RoomBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    floor: int = 0
    capacity: int = Field(..., gt=0)
    facilities: List[str] = []
    status: RoomStatus = RoomStatus.ACTIVE


class RoomCreate(RoomBase):
    pass


class RoomUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    floor: Optional[int] = None
    capacity: Optional[int] = Field(None, gt=0)
    facilities: Optional[List[str]] = None
    status: Optional[RoomStatus] = None


class RoomRead(RoomBase):
    id: int
    image_url: Optional[str] = None

    model_config = {"from_attributes": True}


class RoomBlockCreate(BaseModel):
    start_time: datetime
    end_time: datetime
    reason: Optional[str] = Field(None, max_length=255)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class RoomBlockRead(BaseModel):
    id: int
    room_id: int
    start_time: datetime
    end_time: datetime
    reason: Optional[str] = None
    created_by: Optional[int] = None

    model_config = {"from_attributes": True}


class BookingCreate(BaseModel):
    room_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    start_time: datetime
    end_time: datetime
    attendees_count: Optional[int] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class BookingExtend(BaseModel):
    end_time: datetime

    @field_validator("end_time")
    @classmethod
    def normalize_end_time(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class BookingRead(BaseModel):
    id: int
    room_id: int
    user_id: int
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    attendees_count: int
    status: BookingStatus
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingDetail(BookingRead):
    room: Optional[RoomRead] = None


class AvailabilityRead(BaseModel):
    room_id: int
    available: bool
    error: Optional[str] = None


class BookingStats(BaseModel):
    upcoming: int
    today: int
    month: int


class TimeSlotRead(BaseModel):
    time: str
    display: str
    index: int


class TimelineEntry(BaseModel):
    kind: str
    id: int
    start_slot: int
    end_slot: int
    span: int
    start_time: datetime
    end_time: datetime
    title: Optional[str] = None
    user_id: Optional[int] = None
    reason: Optional[str] = None


class TimelineRoom(BaseModel):
    room: RoomRead
    entries: List[TimelineEntry]


class TimelineRead(BaseModel):
    day: date
    slots: List[TimeSlotRead]
    rooms: List[TimelineRoom]


class SettingRead(BaseModel):
    key: str
    value: str
    description: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SettingUpdate(BaseModel):
    value: str = Field(..., min_length=1, max_length=255)


class RoomOccupancy(BaseModel):
    room_id: int
    room_name: str
    booked_hours: float
    total_hours: float
    occupancy_rate: float


class DepartmentUsage(BaseModel):
    department: str
    bookings: int


class CreateUserRequest(BaseModel):
    email: Optional[str] = None
    full_name: Optional[str] = None
    department: Optional[str] = None
    role: RoleEnum = RoleEnum.USER


class BookingEmailRequest(BaseModel):
    booking: Optional[dict[str, Any]] = None
    user: Optional[dict[str, Any]] = None
    room: Optional[dict[str, Any]] = None
