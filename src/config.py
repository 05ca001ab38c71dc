"""Configuration management using pydantic-settings.

All settings are read from ``TRACKER_*`` environment variables, with
support for .env files via python-dotenv.
"""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    """Tracker service settings."""

    model_config = SettingsConfigDict(env_prefix="TRACKER_", extra="ignore")

    db_path: str = Field(default="data/tracker.duckdb", description="DuckDB database path")
    api_secret: SecretStr = Field(
        default=SecretStr("default-secret-change-me"),
        description="Server secret keying the visitor/session hashes",
    )

    retention_days: int = Field(default=90, ge=1, description="Days before events/sessions expire")
    active_window_minutes: int = Field(
        default=30, ge=1, description="Trailing window for counting active sessions"
    )
    session_idle_minutes: int = Field(
        default=30, ge=1, description="Inactivity after which the sweep ends a session"
    )
    maintenance_interval_seconds: int = Field(
        default=300, ge=0, description="Seconds between retention/sweep passes (0 disables)"
    )

    geoip_db_path: Optional[str] = Field(
        default=None, description="Path to a MaxMind GeoLite2 City or Country database"
    )
    custom_data_max_bytes: int = Field(
        default=4096, ge=0, description="Maximum serialized size of customData"
    )

    log_level: str = Field(default="INFO", description="Logging level")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings. Call ``get_settings.cache_clear()`` after changing the env."""
    return Settings()
