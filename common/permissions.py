"""Capability lookup over the enumerated permission set."""
from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from .models import Permission, RoleEnum, User


class PermissionEnum(str, Enum):
    BOOK_ROOM = "book_room"
    VIEW_ALL_SCHEDULES = "view_all_schedules"
    CANCEL_OWN_BOOKING = "cancel_own_booking"
    CANCEL_ANY_BOOKING = "cancel_any_booking"
    MANAGE_ROOMS = "manage_rooms"
    BLOCK_ROOM_MAINTENANCE = "block_room_maintenance"
    MANAGE_USERS = "manage_users"


PERMISSION_DESCRIPTIONS = {
    PermissionEnum.BOOK_ROOM: "Create and extend own bookings",
    PermissionEnum.VIEW_ALL_SCHEDULES: "See booking details of other users",
    PermissionEnum.CANCEL_OWN_BOOKING: "Cancel own bookings",
    PermissionEnum.CANCEL_ANY_BOOKING: "Cancel or extend any booking",
    PermissionEnum.MANAGE_ROOMS: "Create, edit and delete rooms",
    PermissionEnum.BLOCK_ROOM_MAINTENANCE: "Block rooms for maintenance",
    PermissionEnum.MANAGE_USERS: "List users and manage their permissions",
}

DEFAULT_GRANTS: dict[RoleEnum, frozenset[PermissionEnum]] = {
    RoleEnum.ADMIN: frozenset(PermissionEnum),
    RoleEnum.MANAGER: frozenset(
        {
            PermissionEnum.BOOK_ROOM,
            PermissionEnum.VIEW_ALL_SCHEDULES,
            PermissionEnum.CANCEL_OWN_BOOKING,
            PermissionEnum.CANCEL_ANY_BOOKING,
            PermissionEnum.BLOCK_ROOM_MAINTENANCE,
        }
    ),
    RoleEnum.USER: frozenset({PermissionEnum.BOOK_ROOM, PermissionEnum.CANCEL_OWN_BOOKING}),
}


def granted_permissions(user: User) -> set[str]:
    return {permission.name for permission in user.permissions}


def has_permission(user: Optional[User], permission: PermissionEnum | str, granted: Optional[Iterable[str]] = None) -> bool:
    """Admins hold every permission; everyone else only what was granted."""

    if user is None:
        return False
    if user.role == RoleEnum.ADMIN:
        return True
    name = permission.value if isinstance(permission, PermissionEnum) else permission
    names = set(granted) if granted is not None else granted_permissions(user)
    return name in names


def effective_permissions(user: User) -> list[str]:
    if user.role == RoleEnum.ADMIN:
        return sorted(permission.value for permission in PermissionEnum)
    return sorted(granted_permissions(user))


def ensure_permission_rows(db: Session) -> dict[str, Permission]:
    """Make sure every enumerated permission exists as a row and return them by name."""

    existing = {permission.name: permission for permission in db.query(Permission).all()}
    for permission in PermissionEnum:
        if permission.value not in existing:
            row = Permission(name=permission.value, description=PERMISSION_DESCRIPTIONS[permission])
            db.add(row)
            existing[permission.value] = row
    db.flush()
    return existing


def set_user_permissions(db: Session, user: User, names: Iterable[str]) -> None:
    rows = ensure_permission_rows(db)
    unknown = set(names) - set(rows)
    if unknown:
        raise ValueError(f"Unknown permissions: {', '.join(sorted(unknown))}")
    user.permissions = [rows[name] for name in sorted(set(names))]


def grant_defaults(db: Session, user: User) -> None:
    set_user_permissions(db, user, [permission.value for permission in DEFAULT_GRANTS[user.role]])
