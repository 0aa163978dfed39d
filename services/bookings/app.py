import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from common.auth import user_from_token
from common.availability import AVAILABILITY_UNVERIFIED, BOOKING_CONFLICT, check_availability
from common.bootstrap import init_database
from common.config import get_settings
from common.database import SessionLocal, get_db
from common.dependencies import get_current_active_user, require_permission
from common.errors import add_error_handlers
from common.events import INSERT, UPDATE, ChangeEvent, change_feed
from common.logging_middleware import add_audit_middleware
from common.models import Booking, BookingStatus, Room, RoomBlock, RoomStatus, User
from common.permissions import PermissionEnum, has_permission
from common.policy import (
    ValidationResult,
    check_advance,
    check_capacity,
    check_duration,
    default_attendees,
    first_failure,
    load_booking_limits,
)
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    AvailabilityRead,
    BookingCreate,
    BookingDetail,
    BookingExtend,
    BookingRead,
    BookingStats,
    TimelineEntry,
    TimelineRead,
    TimelineRoom,
    TimeSlotRead,
    to_naive_utc,
)
from common.timeline import (
    extension_slots,
    generate_time_slots,
    normalize_time_to_slot,
    project_bookings_to_blocks,
    project_room_blocks,
    slot_index,
    slot_range_available,
    time_from_slot_index,
)

settings = get_settings()

BOOKINGS_TABLE = "bookings"


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        init_database()
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    add_error_handlers(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, datetime.min.time())
    return start, start + timedelta(days=1)


def _lock_room(db: Session, room_id: int) -> Optional[Room]:
    # Serializes writers for the same room between the availability check and the write.
    return db.query(Room).filter(Room.id == room_id).with_for_update().first()


def _raise_for(result: ValidationResult, conflict: bool = False) -> None:
    if result.valid:
        return
    if result.error == AVAILABILITY_UNVERIFIED:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.error)
    code = status.HTTP_409_CONFLICT if conflict else status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=code, detail=result.error)


def _commit_or_conflict(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=BOOKING_CONFLICT) from exc


def _publish(booking: Booking, event_type: str) -> None:
    change_feed.publish(
        ChangeEvent(
            table=BOOKINGS_TABLE,
            type=event_type,
            row_id=booking.id,
            room_id=booking.room_id,
            start_time=booking.start_time,
            end_time=booking.end_time,
        )
    )


def _get_booking_or_404(db: Session, booking_id: int) -> Booking:
    booking = db.query(Booking).options(joinedload(Booking.room)).filter(Booking.id == booking_id).first()
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


def _day_bookings(db: Session, day: date) -> List[Booking]:
    day_start, day_end = _day_bounds(day)
    return (
        db.query(Booking)
        .filter(
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.start_time < day_end,
            Booking.end_time > day_start,
        )
        .order_by(Booking.start_time)
        .all()
    )


@app.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_booking(
    request: Request,
    booking_in: BookingCreate,
    current_user: User = Depends(require_permission(PermissionEnum.BOOK_ROOM)),
    db: Session = Depends(get_db),
) -> Booking:
    room = _lock_room(db, booking_in.room_id)
    if not room:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    if room.status != RoomStatus.ACTIVE.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Room is under maintenance")

    limits = load_booking_limits(db)
    attendees = booking_in.attendees_count if booking_in.attendees_count is not None else default_attendees(room.capacity)
    _raise_for(
        first_failure(
            check_duration(booking_in.start_time, booking_in.end_time, limits.max_duration_hours),
            check_advance(booking_in.start_time, datetime.utcnow(), limits.max_days_ahead),
            check_capacity(attendees, room.capacity),
        )
    )
    _raise_for(check_availability(db, room.id, booking_in.start_time, booking_in.end_time), conflict=True)

    booking = Booking(
        room_id=room.id,
        user_id=current_user.id,
        title=booking_in.title,
        description=booking_in.description,
        start_time=booking_in.start_time,
        end_time=booking_in.end_time,
        attendees_count=attendees,
        status=BookingStatus.CONFIRMED.value,
    )
    db.add(booking)
    _commit_or_conflict(db)
    db.refresh(booking)
    _publish(booking, INSERT)
    return booking


@app.get("/bookings/me", response_model=List[BookingDetail])
@limiter.limit("60/minute")
def list_my_bookings(
    request: Request,
    scope: str = Query("all", pattern="^(upcoming|past|cancelled|all)$"),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Booking]:
    now = datetime.utcnow()
    query = db.query(Booking).options(joinedload(Booking.room)).filter(Booking.user_id == current_user.id)
    if scope == "upcoming":
        query = query.filter(Booking.status == BookingStatus.CONFIRMED.value, Booking.start_time >= now)
        return query.order_by(Booking.start_time.asc()).all()
    if scope == "past":
        query = query.filter(Booking.status == BookingStatus.CONFIRMED.value, Booking.start_time < now)
    elif scope == "cancelled":
        query = query.filter(Booking.status == BookingStatus.CANCELLED.value)
    return query.order_by(Booking.start_time.desc()).all()


@app.get("/bookings/stats", response_model=BookingStats)
@limiter.limit("60/minute")
def my_booking_stats(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> BookingStats:
    now = datetime.utcnow()
    today_start, today_end = _day_bounds(now.date())
    month_start = today_start.replace(day=1)
    next_month = (month_start + timedelta(days=32)).replace(day=1)

    confirmed = db.query(Booking).filter(
        Booking.user_id == current_user.id, Booking.status == BookingStatus.CONFIRMED.value
    )
    return BookingStats(
        upcoming=confirmed.filter(Booking.start_time >= now).count(),
        today=confirmed.filter(Booking.start_time >= today_start, Booking.start_time < today_end).count(),
        month=confirmed.filter(Booking.start_time >= month_start, Booking.start_time < next_month).count(),
    )


@app.get("/bookings/availability", response_model=AvailabilityRead)
@limiter.limit("60/minute")
def room_availability(
    request: Request,
    room_id: int,
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    exclude_booking_id: Optional[int] = None,
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> AvailabilityRead:
    result = check_availability(db, room_id, to_naive_utc(start_time), to_naive_utc(end_time), exclude_booking_id)
    return AvailabilityRead(room_id=room_id, available=result.valid, error=result.error)


@app.get("/bookings/timeline", response_model=TimelineRead)
@limiter.limit("60/minute")
def day_timeline(
    request: Request,
    day: Optional[date] = Query(None, alias="date"),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> TimelineRead:
    day = day or datetime.utcnow().date()
    day_start, day_end = _day_bounds(day)
    slots = generate_time_slots()
    sees_details = has_permission(current_user, PermissionEnum.VIEW_ALL_SCHEDULES)

    rooms = db.query(Room).order_by(Room.floor, Room.name).all()
    bookings = _day_bookings(db, day)
    blocks = (
        db.query(RoomBlock)
        .filter(RoomBlock.start_time < day_end, RoomBlock.end_time > day_start)
        .order_by(RoomBlock.start_time)
        .all()
    )

    timeline_rooms = []
    for room in rooms:
        entries: List[TimelineEntry] = []
        room_bookings = [booking for booking in bookings if booking.room_id == room.id]
        for block in project_bookings_to_blocks(room_bookings, day, slots):
            booking = block.booking
            visible = sees_details or booking.user_id == current_user.id
            entries.append(
                TimelineEntry(
                    kind="booking",
                    id=booking.id,
                    start_slot=block.start_slot,
                    end_slot=block.end_slot,
                    span=block.span,
                    start_time=booking.start_time,
                    end_time=booking.end_time,
                    title=booking.title if visible else None,
                    user_id=booking.user_id if visible else None,
                )
            )
        room_blocks = [block for block in blocks if block.room_id == room.id]
        for block in project_room_blocks(room_blocks, day, slots):
            maintenance = block.booking
            entries.append(
                TimelineEntry(
                    kind="block",
                    id=maintenance.id,
                    start_slot=block.start_slot,
                    end_slot=block.end_slot,
                    span=block.span,
                    start_time=maintenance.start_time,
                    end_time=maintenance.end_time,
                    reason=maintenance.reason,
                )
            )
        entries.sort(key=lambda entry: entry.start_slot)
        timeline_rooms.append(TimelineRoom(room=room, entries=entries))

    return TimelineRead(
        day=day,
        slots=[TimeSlotRead(time=slot.time, display=slot.display, index=slot.index) for slot in slots],
        rooms=timeline_rooms,
    )


@app.get("/bookings/{booking_id}", response_model=BookingDetail)
@limiter.limit("60/minute")
def get_booking(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Booking:
    booking = _get_booking_or_404(db, booking_id)
    if booking.user_id != current_user.id and not has_permission(current_user, PermissionEnum.VIEW_ALL_SCHEDULES):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return booking


@app.get("/bookings/{booking_id}/extension-options", response_model=List[TimeSlotRead])
@limiter.limit("60/minute")
def extension_options(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[TimeSlotRead]:
    """End slots the booking can be moved to without a conflict or exceeding the duration limit."""

    booking = _get_booking_or_404(db, booking_id)
    if booking.user_id != current_user.id and not has_permission(current_user, PermissionEnum.CANCEL_ANY_BOOKING):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    if booking.status != BookingStatus.CONFIRMED.value:
        return []

    day = booking.end_time.date()
    slots = generate_time_slots()
    from_slot = slot_index(normalize_time_to_slot(booking.end_time, slots).strftime("%H:%M"), slots)
    limits = load_booking_limits(db)
    others = [row for row in _day_bookings(db, day) if row.id != booking.id]
    day_start, day_end = _day_bounds(day)
    blocks = (
        db.query(RoomBlock)
        .filter(RoomBlock.room_id == booking.room_id, RoomBlock.start_time < day_end, RoomBlock.end_time > day_start)
        .all()
    )

    options = []
    for slot in extension_slots(booking.end_time, slots):
        hours, minutes = time_from_slot_index(slot.index, slots).split(":")
        new_end = day_start.replace(hour=int(hours), minute=int(minutes))
        if not check_duration(booking.start_time, new_end, limits.max_duration_hours).valid:
            break
        if not slot_range_available(booking.room_id, day, from_slot, slot.index, others, blocks, slots):
            break
        options.append(TimeSlotRead(time=slot.time, display=slot.display, index=slot.index))
    return options


@app.post("/bookings/{booking_id}/extend", response_model=BookingRead)
@limiter.limit("20/minute")
def extend_booking(
    request: Request,
    booking_id: int,
    extend_in: BookingExtend,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Booking:
    booking = _get_booking_or_404(db, booking_id)
    is_owner = booking.user_id == current_user.id
    if not (
        (is_owner and has_permission(current_user, PermissionEnum.BOOK_ROOM))
        or has_permission(current_user, PermissionEnum.CANCEL_ANY_BOOKING)
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    if booking.status != BookingStatus.CONFIRMED.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only confirmed bookings can be extended")

    new_end = extend_in.end_time
    if new_end <= booking.end_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="The new end time must be after the current end time."
        )

    room = _lock_room(db, booking.room_id)
    limits = load_booking_limits(db)
    _raise_for(
        first_failure(
            check_duration(booking.start_time, new_end, limits.max_duration_hours),
            check_capacity(booking.attendees_count, room.capacity),
        )
    )
    _raise_for(check_availability(db, booking.room_id, booking.start_time, new_end, exclude_booking_id=booking.id), conflict=True)

    booking.end_time = new_end
    _commit_or_conflict(db)
    db.refresh(booking)
    _publish(booking, UPDATE)
    return booking


@app.post("/bookings/{booking_id}/cancel", response_model=BookingRead)
@limiter.limit("20/minute")
def cancel_booking(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Booking:
    booking = _get_booking_or_404(db, booking_id)
    is_owner = booking.user_id == current_user.id
    if not (
        (is_owner and has_permission(current_user, PermissionEnum.CANCEL_OWN_BOOKING))
        or has_permission(current_user, PermissionEnum.CANCEL_ANY_BOOKING)
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    if booking.status == BookingStatus.CANCELLED.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking is already cancelled")

    booking.status = BookingStatus.CANCELLED.value
    db.commit()
    db.refresh(booking)
    _publish(booking, UPDATE)
    return booking


def _socket_user_id(token: Optional[str]) -> Optional[int]:
    if not token:
        return None
    db = SessionLocal()
    try:
        user = user_from_token(db, token)
        return user.id if user else None
    finally:
        db.close()


def _day_snapshot(day: date) -> list[dict]:
    db = SessionLocal()
    try:
        return [BookingRead.model_validate(booking).model_dump(mode="json") for booking in _day_bookings(db, day)]
    finally:
        db.close()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/ws/bookings")
async def bookings_feed(
    websocket: WebSocket,
    day: Optional[date] = Query(None, alias="date"),
    token: Optional[str] = Query(None),
) -> None:
    """Push the full set of the day's confirmed bookings whenever one of them changes."""

    if await run_in_threadpool(_socket_user_id, token) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    day = day or datetime.utcnow().date()
    await websocket.accept()

    subscription = change_feed.subscribe(BOOKINGS_TABLE, day)
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        snapshot = await run_in_threadpool(_day_snapshot, day)
        await websocket.send_json({"type": "snapshot", "date": day.isoformat(), "bookings": snapshot})
        while True:
            next_event = asyncio.create_task(subscription.get())
            done, _ = await asyncio.wait({next_event, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected in done:
                next_event.cancel()
                break
            event = next_event.result()
            snapshot = await run_in_threadpool(_day_snapshot, day)
            await websocket.send_json(
                {"type": "refresh", "event": event.type, "date": day.isoformat(), "bookings": snapshot}
            )
    finally:
        change_feed.unsubscribe(subscription)
        disconnected.cancel()
