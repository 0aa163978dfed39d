from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from common.bootstrap import init_database
from common.config import get_settings
from common.database import get_db
from common.dependencies import allow_roles, get_current_active_user
from common.errors import add_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import Booking, BookingStatus, RoleEnum, Room, Setting, User
from common.policy import SETTING_DESCRIPTIONS, invalidate_booking_limits
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import DepartmentUsage, RoomOccupancy, SettingRead, SettingUpdate
from common.timeline import SlotConfig

settings = get_settings()

UNKNOWN_DEPARTMENT = "Not informed"


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        init_database()
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Admin Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "admin")
    add_error_handlers(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "admin"}


@app.get("/settings", response_model=List[SettingRead])
@limiter.limit("60/minute")
def list_settings(
    request: Request,
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Setting]:
    return db.query(Setting).order_by(Setting.key).all()


@app.put("/settings/{key}", response_model=SettingRead)
@limiter.limit("10/minute")
def update_setting(
    request: Request,
    key: str,
    setting_update: SettingUpdate,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> Setting:
    if key not in SETTING_DESCRIPTIONS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown setting")
    value = setting_update.value.strip()
    if not value.isdigit() or int(value) <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Value must be a positive integer")

    setting = db.get(Setting, key)
    if setting is None:
        setting = Setting(key=key, description=SETTING_DESCRIPTIONS[key])
        db.add(setting)
    setting.value = str(int(value))
    db.commit()
    db.refresh(setting)
    invalidate_booking_limits()
    return setting


def _confirmed_since(db: Session, days: int):
    since = datetime.utcnow() - timedelta(days=days)
    return db.query(Booking).filter(
        Booking.status == BookingStatus.CONFIRMED.value,
        Booking.start_time >= since,
    )


@app.get("/analytics/occupancy", response_model=List[RoomOccupancy])
@limiter.limit("30/minute")
def room_occupancy(
    request: Request,
    days: int = Query(30, ge=1, le=366),
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> List[RoomOccupancy]:
    """Booked hours per room over the window against the hours shown on the timeline."""

    total_hours = days * SlotConfig.from_settings().day_hours
    booked: dict[int, float] = {}
    for booking in _confirmed_since(db, days).all():
        hours = (booking.end_time - booking.start_time).total_seconds() / 3600
        booked[booking.room_id] = booked.get(booking.room_id, 0.0) + hours

    report = [
        RoomOccupancy(
            room_id=room.id,
            room_name=room.name,
            booked_hours=round(booked.get(room.id, 0.0), 2),
            total_hours=round(total_hours, 2),
            occupancy_rate=round(booked.get(room.id, 0.0) / total_hours * 100, 2) if total_hours else 0.0,
        )
        for room in db.query(Room).all()
    ]
    return sorted(report, key=lambda row: row.occupancy_rate, reverse=True)


@app.get("/analytics/departments", response_model=List[DepartmentUsage])
@limiter.limit("30/minute")
def department_usage(
    request: Request,
    days: int = Query(30, ge=1, le=366),
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> List[DepartmentUsage]:
    since = datetime.utcnow() - timedelta(days=days)
    rows = (
        db.query(User.department, func.count(Booking.id))
        .join(Booking, Booking.user_id == User.id)
        .filter(Booking.status == BookingStatus.CONFIRMED.value, Booking.start_time >= since)
        .group_by(User.department)
        .all()
    )
    counts: dict[str, int] = {}
    for department, total in rows:
        label = (department or "").strip() or UNKNOWN_DEPARTMENT
        counts[label] = counts.get(label, 0) + total
    usage = [DepartmentUsage(department=department, bookings=total) for department, total in counts.items()]
    return sorted(usage, key=lambda row: row.bookings, reverse=True)
