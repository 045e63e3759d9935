"""
Configuration and settings for the help-exchange storage layer.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings.

    Field names map to environment variables case-insensitively, so
    ``database_url`` is read from ``DATABASE_URL``.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Database (Postgres expected, any SQLAlchemy URL accepted)
    database_url: Optional[str] = None

    # Development toggles
    use_in_memory_backends: bool = False
    snapshot_path: Optional[str] = None
    dev_otp_bypass: bool = False

    # OTP and email verification
    otp_ttl_seconds: int = 600
    email_token_ttl_seconds: int = 86400

    log_level: str = "INFO"

    # S3-compatible storage (profile images)
    cos_endpoint: Optional[str] = None
    cos_region: Optional[str] = None
    cos_bucket: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    storage_base_url: Optional[str] = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
