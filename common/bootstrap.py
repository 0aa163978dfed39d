"""Schema creation and seed data used by service startup and the admin script."""
import logging

from . import models  # noqa: F401  registers the tables on Base.metadata
from .database import Base, SessionLocal, engine
from .permissions import ensure_permission_rows
from .policy import seed_default_settings

logger = logging.getLogger(__name__)


def init_database() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        ensure_permission_rows(db)
        seed_default_settings(db)
    finally:
        db.close()
    logger.info("Database schema and seed data ready")
