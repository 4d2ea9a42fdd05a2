from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = Field(default="attachsync", alias="APP_NAME")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Local control API
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8765, alias="PORT")

    # Local store
    database_url: str = Field(default="sqlite:///./attachsync.db", alias="DATABASE_URL")

    # Remote upload coordination API
    api_base_url: str = Field(default="http://localhost:8000", alias="API_BASE_URL")
    api_token: str | None = Field(default=None, alias="API_TOKEN")
    api_timeout_sec: float = Field(default=30.0, alias="API_TIMEOUT_SEC")

    # Session / plan gate
    user_id: str | None = Field(default=None, alias="USER_ID")
    plan_allows_upload: bool = Field(default=True, alias="PLAN_ALLOWS_UPLOAD")

    # Uploader
    upload_enabled: bool = Field(default=True, alias="UPLOAD_ENABLED")
    upload_concurrency: int = Field(default=3, alias="UPLOAD_CONCURRENCY")
    upload_batch_size: int = Field(default=50, alias="UPLOAD_BATCH_SIZE")
    upload_max_attempts: int = Field(default=3, alias="UPLOAD_MAX_ATTEMPTS")
    upload_visibility_timeout_min: int = Field(default=15, alias="UPLOAD_VISIBILITY_TIMEOUT_MIN")
    upload_retry_delay_min: int = Field(default=5, alias="UPLOAD_RETRY_DELAY_MIN")
    upload_transfer_max_attempts: int = Field(default=3, alias="UPLOAD_TRANSFER_MAX_ATTEMPTS")
    upload_transfer_backoff_sec: float = Field(default=2.0, alias="UPLOAD_TRANSFER_BACKOFF_SEC")
    upload_transfer_timeout_sec: float = Field(default=300.0, alias="UPLOAD_TRANSFER_TIMEOUT_SEC")

    # Upload URL cache
    upload_url_ttl_min: int = Field(default=90, alias="UPLOAD_URL_TTL_MIN")
    upload_url_safety_buffer_min: int = Field(default=30, alias="UPLOAD_URL_SAFETY_BUFFER_MIN")
    upload_url_batch_size: int = Field(default=100, alias="UPLOAD_URL_BATCH_SIZE")

    # Session controller
    session_max_consecutive_errors: int = Field(default=5, alias="SESSION_MAX_CONSECUTIVE_ERRORS")
    session_backoff_base_sec: float = Field(default=1.0, alias="SESSION_BACKOFF_BASE_SEC")
    session_backoff_cap_sec: float = Field(default=60.0, alias="SESSION_BACKOFF_CAP_SEC")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    repair_interval_sec: int = Field(default=300, alias="REPAIR_INTERVAL_SEC")

    def sqlalchemy_database_uri(self) -> str:
        # Accept the bare `postgresql://` form while pinning a stable driver for SQLAlchemy.
        if self.database_url.startswith("postgresql://") and "+psycopg2" not in self.database_url:
            return self.database_url.replace("postgresql://", "postgresql+psycopg2://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
