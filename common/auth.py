"""Password hashing, JWT handling, and helper utilities."""
import secrets
import string
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import get_settings
from .models import User

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
settings = get_settings()

TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def generate_temp_password(length: Optional[int] = None) -> str:
    size = length or settings.temp_password_length
    return "".join(secrets.choice(TEMP_PASSWORD_ALPHABET) for _ in range(size))


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def user_from_token(db: Session, token: str) -> Optional[User]:
    """Resolve a bearer token to its user, or None when the token is unusable."""

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    email = payload.get("sub")
    if not email:
        return None
    return db.query(User).filter(User.email == email).first()


def bearer_subject(authorization: Optional[str]) -> Optional[str]:
    """Subject claim of a bearer header without verifying the signature.

    Only for labelling requests (audit lines, rate-limit buckets); never for access decisions.
    """

    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    try:
        claims = jwt.get_unverified_claims(authorization[7:].strip())
    except JWTError:
        return None
    subject = claims.get("sub")
    return str(subject) if subject else None


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    user: Optional[User] = db.query(User).filter(User.email == email).first()
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user
