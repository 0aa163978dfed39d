"""Privileged operations that answer with ``{"error": ...}`` bodies instead of ``detail``."""
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from common import auth
from common.bootstrap import init_database
from common.config import get_settings
from common.database import get_db
from common.errors import add_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import RoleEnum, User
from common.notifications import EmailDeliveryError, build_booking_invite, send_booking_confirmation
from common.permissions import grant_defaults
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import BookingEmailRequest, CreateUserRequest

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        init_database()
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Functions Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "functions")
    add_error_handlers(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "functions"}


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _caller(db: Session, authorization: Optional[str]) -> Union[User, JSONResponse]:
    if not authorization:
        return _error(status.HTTP_401_UNAUTHORIZED, "Missing authorization header")
    token = authorization.removeprefix("Bearer ").strip()
    user = auth.user_from_token(db, token)
    if user is None:
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
    return user


@app.post("/functions/create-user")
@limiter.limit("10/minute")
def create_user(
    request: Request,
    payload: CreateUserRequest,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    caller = _caller(db, authorization)
    if isinstance(caller, JSONResponse):
        return caller
    if caller.role != RoleEnum.ADMIN:
        return _error(status.HTTP_403_FORBIDDEN, "Forbidden: Admin access required")
    if not payload.email or not payload.full_name or not payload.department:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required fields: email, full_name, department")
    if db.query(User).filter(User.email == payload.email).first():
        return _error(status.HTTP_400_BAD_REQUEST, "A user with this email address has already been registered")

    temp_password = auth.generate_temp_password()
    user = User(
        email=payload.email,
        full_name=payload.full_name,
        department=payload.department,
        role=payload.role,
        hashed_password=auth.get_password_hash(temp_password),
    )
    db.add(user)
    db.flush()
    grant_defaults(db, user)
    db.commit()
    db.refresh(user)
    logger.info("User %s created by %s", user.email, caller.email)
    return {"user_id": user.id, "email": user.email, "temp_password": temp_password}


@app.post("/functions/send-booking-email")
@limiter.limit("20/minute")
def send_booking_email(
    request: Request,
    payload: BookingEmailRequest,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    caller = _caller(db, authorization)
    if isinstance(caller, JSONResponse):
        return caller
    if not payload.booking or not payload.user or not payload.room:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required data")

    try:
        return send_booking_confirmation(payload.booking, payload.user, payload.room)
    except (KeyError, ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid booking data")
    except EmailDeliveryError:
        invite = build_booking_invite(payload.booking, payload.user, payload.room)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to send email", ics=invite)
