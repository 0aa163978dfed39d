"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./roombooking.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    environment: str = Field(default="development", description="development | production")
    log_dir: str = Field(default="logs", description="Directory for the per-service audit logs")
    log_max_bytes: int = Field(default=10 * 1024 * 1024, description="Audit log size before rotation")
    log_backup_count: int = Field(default=5, description="Rotated audit logs kept per service")

    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="60/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")

    room_cache_ttl: int = Field(default=60, description="TTL (s) for cached room status results")
    settings_cache_ttl: int = Field(default=30, description="TTL (s) for cached booking limits")

    timeline_start: str = Field(default="05:50", description="First slot of the display day (HH:MM)")
    timeline_end: str = Field(default="19:00", description="Last slot of the display day (HH:MM)")
    slot_minutes: int = Field(default=10, description="Width of a timeline slot in minutes")
    default_max_booking_duration_hours: int = 4
    default_max_days_ahead: int = 30

    storage_bucket: str = Field(default="roombooking", description="Object-store bucket holding every blob")
    storage_endpoint_url: Optional[str] = Field(
        default=None,
        description="S3-compatible endpoint (MinIO, R2); None targets AWS S3",
    )
    storage_access_key_id: Optional[str] = None
    storage_secret_access_key: Optional[str] = None
    storage_region: str = "us-east-1"
    storage_public_url: str = Field(
        default="http://localhost:9000/roombooking",
        description="Base URL under which stored blobs are publicly served",
    )
    max_upload_bytes: int = Field(default=5 * 1024 * 1024, description="Largest accepted image upload")

    rabbitmq_enabled: bool = Field(default=False, description="Mirror change events to RabbitMQ")
    rabbitmq_host: str = "rabbitmq"
    rabbitmq_queue: str = "bookings"

    resend_api_key: Optional[str] = Field(default=None, description="Transactional email API key")
    resend_api_url: str = "https://api.resend.com/emails"
    email_from: str = "Room Booking <noreply@roombooking.local>"
    email_timeout_seconds: float = 10.0
    temp_password_length: int = 12

    users_service_port: int = 8001
    rooms_service_port: int = 8002
    bookings_service_port: int = 8003
    admin_service_port: int = 8004
    functions_service_port: int = 8005


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
