import os
import tempfile
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from moto import mock_aws

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("STORAGE_BUCKET", "roombooking-test")
os.environ.setdefault("STORAGE_ACCESS_KEY_ID", "testing")
os.environ.setdefault("STORAGE_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="roombooking-logs-"))
os.environ.setdefault("RESEND_API_KEY", "")

from common.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.auth import get_password_hash  # noqa: E402
from common.bootstrap import init_database  # noqa: E402
from common.cache import clear_caches  # noqa: E402
from common.database import Base, SessionLocal, engine  # noqa: E402
from common.models import RoleEnum, User  # noqa: E402
from common.permissions import grant_defaults  # noqa: E402
from common.storage import storage  # noqa: E402
from services.admin.app import app as admin_app  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.functions.app import app as functions_app  # noqa: E402
from services.rooms.app import app as rooms_app  # noqa: E402
from services.users.app import app as users_app  # noqa: E402

PASSWORD = "Passw0rd!"


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    init_database()
    clear_caches()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _object_store() -> Generator[None, None, None]:
    """A fresh in-memory S3 bucket per test."""

    with mock_aws():
        storage._client = None
        storage.client.create_bucket(Bucket=storage.bucket_name)
        yield
    storage._client = None


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def create_user() -> Callable[..., int]:
    """Insert a user with the default grants of its role and return the id."""

    def _create(
        email: str,
        role: RoleEnum = RoleEnum.USER,
        full_name: str = "Test User",
        department: str = "Engineering",
        password: str = PASSWORD,
    ) -> int:
        session = SessionLocal()
        try:
            user = User(
                email=email,
                full_name=full_name,
                department=department,
                role=role,
                hashed_password=get_password_hash(password),
            )
            session.add(user)
            session.flush()
            grant_defaults(session, user)
            session.commit()
            return user.id
        finally:
            session.close()

    return _create


@pytest.fixture()
def users_client() -> Generator[TestClient, None, None]:
    with TestClient(users_app) as client:
        yield client


@pytest.fixture()
def rooms_client() -> Generator[TestClient, None, None]:
    with TestClient(rooms_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client


@pytest.fixture()
def admin_client() -> Generator[TestClient, None, None]:
    with TestClient(admin_app) as client:
        yield client


@pytest.fixture()
def functions_client() -> Generator[TestClient, None, None]:
    with TestClient(functions_app) as client:
        yield client
