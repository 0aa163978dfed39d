import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from common import auth
from common.bootstrap import init_database
from common.config import get_settings
from common.database import get_db
from common.dependencies import allow_roles, get_current_active_user, require_permission
from common.errors import add_error_handlers
from common.logging_middleware import add_audit_middleware
from common.models import RoleEnum, User
from common.permissions import (
    PermissionEnum,
    effective_permissions,
    grant_defaults,
    granted_permissions,
    set_user_permissions,
)
from common.rate_limit import apply_rate_limiter, limiter
from common.schemas import (
    PasswordChange,
    PermissionsUpdate,
    ProfileRead,
    ProfileUpdate,
    RoleUpdate,
    Token,
    UserRead,
)
from common.storage import AVATARS_BUCKET, StorageError, image_extension, storage

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        init_database()
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Users Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "users")
    add_error_handlers(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "users"}


def _profile(user: User) -> ProfileRead:
    # User.permissions holds ORM rows; the profile exposes effective names instead.
    return ProfileRead(**UserRead.model_validate(user).model_dump(), permissions=effective_permissions(user))


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@app.post("/users/login", response_model=Token)
@limiter.limit("10/minute")
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> Token:
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")

    access_token = auth.create_access_token({"sub": user.email, "role": user.role.value})
    return Token(access_token=access_token)


@app.get("/users/me", response_model=ProfileRead)
@limiter.limit("60/minute")
def read_profile(request: Request, current_user: User = Depends(get_current_active_user)) -> ProfileRead:
    return _profile(current_user)


@app.put("/users/me", response_model=ProfileRead)
@limiter.limit("10/minute")
def update_profile(
    request: Request,
    profile_update: ProfileUpdate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> ProfileRead:
    if profile_update.full_name:
        current_user.full_name = profile_update.full_name
    if profile_update.department is not None:
        current_user.department = profile_update.department
    db.commit()
    db.refresh(current_user)
    return _profile(current_user)


@app.put("/users/me/password", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("5/minute")
def change_password(
    request: Request,
    password_change: PasswordChange,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> None:
    if not auth.verify_password(password_change.current_password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    current_user.hashed_password = auth.get_password_hash(password_change.new_password)
    db.commit()


@app.post("/users/me/accept-terms", response_model=ProfileRead)
@limiter.limit("10/minute")
def accept_terms(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> ProfileRead:
    current_user.terms_accepted = True
    db.commit()
    db.refresh(current_user)
    return _profile(current_user)


@app.post("/users/me/avatar", response_model=ProfileRead)
@limiter.limit("10/minute")
def upload_avatar(
    request: Request,
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> ProfileRead:
    extension = image_extension(file.content_type)
    if extension is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported image type")
    data = file.file.read()
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Image is too large")

    try:
        current_user.avatar_url = storage.replace_folder(
            AVATARS_BUCKET, str(current_user.id), f"{uuid.uuid4().hex}.{extension}", data, file.content_type
        )
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not store avatar") from exc
    db.commit()
    db.refresh(current_user)
    return _profile(current_user)


@app.delete("/users/me/avatar", response_model=ProfileRead)
@limiter.limit("10/minute")
def remove_avatar(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> ProfileRead:
    folder = str(current_user.id)
    try:
        storage.remove(AVATARS_BUCKET, [f"{folder}/{name}" for name in storage.list(AVATARS_BUCKET, folder)])
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not remove avatar") from exc
    current_user.avatar_url = None
    db.commit()
    db.refresh(current_user)
    return _profile(current_user)


@app.get("/users", response_model=list[UserRead])
@limiter.limit("20/minute")
def list_users(
    request: Request,
    _: User = Depends(require_permission(PermissionEnum.MANAGE_USERS)),
    db: Session = Depends(get_db),
) -> list[User]:
    return db.query(User).order_by(User.full_name).all()


@app.put("/users/{user_id}/role", response_model=UserRead)
@limiter.limit("10/minute")
def update_role(
    request: Request,
    user_id: int,
    role_update: RoleUpdate,
    _: User = Depends(allow_roles(RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> User:
    user = _get_user_or_404(db, user_id)
    if user.role != role_update.role:
        # A role change resets the grants to the new role's defaults.
        user.role = role_update.role
        grant_defaults(db, user)
    db.commit()
    db.refresh(user)
    return user


@app.get("/users/{user_id}/permissions", response_model=list[str])
@limiter.limit("30/minute")
def read_permissions(
    request: Request,
    user_id: int,
    _: User = Depends(require_permission(PermissionEnum.MANAGE_USERS)),
    db: Session = Depends(get_db),
) -> list[str]:
    return sorted(granted_permissions(_get_user_or_404(db, user_id)))


@app.put("/users/{user_id}/permissions", response_model=list[str])
@limiter.limit("10/minute")
def update_permissions(
    request: Request,
    user_id: int,
    permissions_update: PermissionsUpdate,
    _: User = Depends(require_permission(PermissionEnum.MANAGE_USERS)),
    db: Session = Depends(get_db),
) -> list[str]:
    user = _get_user_or_404(db, user_id)
    try:
        set_user_permissions(db, user, permissions_update.permissions)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.commit()
    db.refresh(user)
    return sorted(granted_permissions(user))
