#!/usr/bin/env python3
"""Create the first administrator account (the API only lets admins create users)."""
import argparse
import getpass

from common.auth import get_password_hash
from common.bootstrap import init_database
from common.database import SessionLocal
from common.models import RoleEnum, User
from common.permissions import grant_defaults


def create_admin(email: str, full_name: str, password: str, department: str = "") -> User:
    init_database()
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if user is None:
            user = User(email=email, full_name=full_name, department=department, hashed_password="")
            db.add(user)
        user.role = RoleEnum.ADMIN
        user.hashed_password = get_password_hash(password)
        db.flush()
        grant_defaults(db, user)
        db.commit()
        db.refresh(user)
        return user
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("email")
    parser.add_argument("full_name")
    parser.add_argument("--department", default="")
    args = parser.parse_args()
    admin = create_admin(args.email, args.full_name, getpass.getpass("Password: "), args.department)
    print(f"Administrator {admin.email} ready (id={admin.id}).")
