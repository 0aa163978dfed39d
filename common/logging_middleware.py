"""Per-service HTTP audit log: one line per request with caller, status and latency."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from time import perf_counter

from fastapi import FastAPI, Request

from .auth import bearer_subject
from .config import get_settings

settings = get_settings()

AUDIT_LINE = "%s %s | status=%s | client=%s | user=%s | duration=%.2fms"


def get_audit_logger(service_name: str) -> logging.Logger:
    logger = logging.getLogger(f"audit.{service_name}")
    if logger.handlers:
        return logger

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / f"{service_name}.log",
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
    )
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    logger = get_audit_logger(service_name)

    @app.middleware("http")
    async def audit_logger(request: Request, call_next):  # type: ignore[override]
        started = perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        user = bearer_subject(request.headers.get("authorization")) or "anonymous"
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (perf_counter() - started) * 1000
            logger.exception(AUDIT_LINE, request.method, request.url.path, 500, client_ip, user, elapsed)
            raise

        elapsed = (perf_counter() - started) * 1000
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, AUDIT_LINE, request.method, request.url.path, response.status_code, client_ip, user, elapsed)
        return response
