"""Configuration management using Pydantic Settings."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from ``DYNARECORD_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="DYNARECORD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # memory:// or any SQLAlchemy async URL
    database_url: str = "sqlite+aiosqlite:///dynarecord.db"

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
