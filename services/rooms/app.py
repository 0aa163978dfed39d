import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.availability import AVAILABILITY_UNVERIFIED, ROOM_BLOCKED, check_availability
from common.bootstrap import init_database
from common.cache import cached_room_status, forget_room_status, store_room_status
from common.config import get_settings
from common.database import get_db
from common.dependencies import get_current_active_user, require_permission
from common.errors import add_error_handlers
from common.events import DELETE, INSERT, ChangeEvent, change_feed
from common.logging_middleware import add_audit_middleware
from common.models import Booking, BookingStatus, Room, RoomBlock, RoomStatus, User
from common.permissions import PermissionEnum
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import RoomBlockCreate, RoomBlockRead, RoomCreate, RoomRead, RoomUpdate
from common.storage import ROOM_IMAGES_BUCKET, StorageError, image_extension, storage

settings = get_settings()

ROOM_BLOCKS_TABLE = "room_blocks"


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        init_database()
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Rooms Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "rooms")
    add_error_handlers(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "rooms"}


def _get_room_or_404(db: Session, room_id: int) -> Room:
    room = db.query(Room).filter(Room.id == room_id).first()
    if not room:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return room


def _ensure_unique_name(db: Session, name: str, room_id: Optional[int] = None) -> None:
    query = db.query(Room).filter(Room.name == name)
    if room_id is not None:
        query = query.filter(Room.id != room_id)
    if query.first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A room with this name already exists")


@app.post("/rooms", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def add_room(
    request: Request,
    room_in: RoomCreate,
    _: User = Depends(require_permission(PermissionEnum.MANAGE_ROOMS)),
    db: Session = Depends(get_db),
) -> Room:
    _ensure_unique_name(db, room_in.name)
    data = room_in.model_dump()
    data["status"] = room_in.status.value
    room = Room(**data)
    db.add(room)
    db.commit()
    db.refresh(room)
    return room


@app.get("/rooms", response_model=List[RoomRead])
@limiter.limit("60/minute")
def list_rooms(
    request: Request,
    floor: Optional[int] = None,
    capacity: Optional[int] = None,
    facility: Optional[str] = None,
    status_filter: Optional[RoomStatus] = Query(None, alias="status"),
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Room]:
    query = db.query(Room)
    if floor is not None:
        query = query.filter(Room.floor == floor)
    if capacity:
        query = query.filter(Room.capacity >= capacity)
    if status_filter is not None:
        query = query.filter(Room.status == status_filter.value)
    rooms = query.order_by(Room.floor, Room.name).all()
    if facility:
        # JSON containment differs per backend, so facilities are filtered here.
        rooms = [room for room in rooms if facility in (room.facilities or [])]
    return rooms


@app.get("/rooms/{room_id}", response_model=RoomRead)
@limiter.limit("60/minute")
def get_room(
    request: Request,
    room_id: int,
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Room:
    return _get_room_or_404(db, room_id)


@app.put("/rooms/{room_id}", response_model=RoomRead)
@limiter.limit("15/minute")
def update_room(
    request: Request,
    room_id: int,
    room_update: RoomUpdate,
    _: User = Depends(require_permission(PermissionEnum.MANAGE_ROOMS)),
    db: Session = Depends(get_db),
) -> Room:
    room = _get_room_or_404(db, room_id)
    update_data = room_update.model_dump(exclude_unset=True)
    if update_data.get("name"):
        _ensure_unique_name(db, update_data["name"], room_id)
    if update_data.get("status") is not None:
        update_data["status"] = update_data["status"].value
    for key, value in update_data.items():
        setattr(room, key, value)
    db.commit()
    db.refresh(room)
    forget_room_status(room.id)
    return room


@app.delete("/rooms/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_room(
    request: Request,
    room_id: int,
    _: User = Depends(require_permission(PermissionEnum.MANAGE_ROOMS)),
    db: Session = Depends(get_db),
) -> None:
    room = _get_room_or_404(db, room_id)
    db.delete(room)
    db.commit()
    forget_room_status(room_id)


@app.post("/rooms/{room_id}/image", response_model=RoomRead)
@limiter.limit("10/minute")
def upload_room_image(
    request: Request,
    room_id: int,
    file: UploadFile = File(...),
    _: User = Depends(require_permission(PermissionEnum.MANAGE_ROOMS)),
    db: Session = Depends(get_db),
) -> Room:
    room = _get_room_or_404(db, room_id)
    extension = image_extension(file.content_type)
    if extension is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported image type")
    data = file.file.read()
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Image is too large")

    try:
        room.image_url = storage.replace_folder(
            ROOM_IMAGES_BUCKET, str(room.id), f"{uuid.uuid4().hex}.{extension}", data, file.content_type
        )
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not store image") from exc
    db.commit()
    db.refresh(room)
    return room


@app.get("/rooms/{room_id}/status")
@limiter.limit("30/minute")
def room_status(
    request: Request,
    room_id: int,
    db: Session = Depends(get_db),
    force_refresh: bool = False,
) -> dict[str, str]:
    room = _get_room_or_404(db, room_id)
    if not force_refresh:
        cached = cached_room_status(room_id)
        if cached:
            return cached

    now = datetime.utcnow()
    if room.status == RoomStatus.UNDER_MAINTENANCE.value:
        status_label = "under_maintenance"
    elif (
        db.query(RoomBlock)
        .filter(RoomBlock.room_id == room_id, RoomBlock.start_time <= now, RoomBlock.end_time > now)
        .first()
    ):
        status_label = "blocked"
    elif (
        db.query(Booking)
        .filter(
            Booking.room_id == room_id,
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.start_time <= now,
            Booking.end_time > now,
        )
        .first()
    ):
        status_label = "occupied"
    else:
        status_label = "available"

    payload = {
        "room_id": str(room_id),
        "status": status_label,
        "checked_at": now.isoformat(),
    }
    store_room_status(room_id, payload)
    return payload


@app.get("/rooms/{room_id}/blocks", response_model=List[RoomBlockRead])
@limiter.limit("60/minute")
def list_room_blocks(
    request: Request,
    room_id: int,
    _: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[RoomBlock]:
    _get_room_or_404(db, room_id)
    return db.query(RoomBlock).filter(RoomBlock.room_id == room_id).order_by(RoomBlock.start_time).all()


@app.post("/rooms/{room_id}/blocks", response_model=RoomBlockRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("15/minute")
def block_room(
    request: Request,
    room_id: int,
    block_in: RoomBlockCreate,
    current_user: User = Depends(require_permission(PermissionEnum.BLOCK_ROOM_MAINTENANCE)),
    db: Session = Depends(get_db),
) -> RoomBlock:
    room = db.query(Room).filter(Room.id == room_id).with_for_update().first()
    if not room:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    if block_in.end_time <= block_in.start_time:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End time must be after start time.")

    result = check_availability(db, room_id, block_in.start_time, block_in.end_time)
    if not result.valid:
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if result.error == AVAILABILITY_UNVERIFIED
            else status.HTTP_409_CONFLICT
        )
        raise HTTPException(status_code=code, detail=result.error)

    block = RoomBlock(
        room_id=room_id,
        start_time=block_in.start_time,
        end_time=block_in.end_time,
        reason=block_in.reason,
        created_by=current_user.id,
    )
    db.add(block)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=ROOM_BLOCKED) from exc
    db.refresh(block)
    forget_room_status(room_id)
    change_feed.publish(
        ChangeEvent(
            table=ROOM_BLOCKS_TABLE,
            type=INSERT,
            row_id=block.id,
            room_id=room_id,
            start_time=block.start_time,
            end_time=block.end_time,
        )
    )
    return block


@app.delete("/rooms/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def unblock_room(
    request: Request,
    block_id: int,
    _: User = Depends(require_permission(PermissionEnum.BLOCK_ROOM_MAINTENANCE)),
    db: Session = Depends(get_db),
) -> None:
    block = db.query(RoomBlock).filter(RoomBlock.id == block_id).first()
    if not block:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Block not found")
    event = ChangeEvent(
        table=ROOM_BLOCKS_TABLE,
        type=DELETE,
        row_id=block.id,
        room_id=block.room_id,
        start_time=block.start_time,
        end_time=block.end_time,
    )
    db.delete(block)
    db.commit()
    forget_room_status(event.room_id)
    change_feed.publish(event)
