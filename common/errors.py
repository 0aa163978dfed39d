"""Exception handlers shared by services."""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

GENERIC_ERROR = "Something went wrong. Please try again."


def persistence_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    if settings.environment == "development":
        logger.error("Persistence failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": GENERIC_ERROR})


def add_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SQLAlchemyError, persistence_error_handler)
