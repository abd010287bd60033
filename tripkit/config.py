"""
Configuration and settings for the trip planner backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Records (any SQLAlchemy URL, Postgres expected)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible object storage for media blobs
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    media_bucket: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    # Base URL the bucket is publicly readable under, e.g. a CDN host.
    public_base_url: Optional[str] = Field(default=None)

    # Change feed (Redis pub/sub)
    redis_url: Optional[str] = Field(default=None)
    feed_channel_prefix: str = Field(default="tripkit:changes")

    # Origin used to build public share links
    share_origin: str = Field(default="http://localhost:3000")

    # Selection gestures
    long_press_ms: int = Field(default=400, ge=50)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="TRIPKIT_USE_IN_MEMORY_BACKENDS"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
