"""
Configuration and settings for the HTTP server.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Listening socket
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001)

    dashboard_prefix: str = Field(default="/dashboard")

    # Body parsers (bytes)
    json_body_limit: int = Field(default=100 * 1024)
    urlencoded_body_limit: int = Field(default=100 * 1024)

    # Comma separated; "*" allows any origin.
    cors_origins: str = Field(default="*")

    log_level: str = Field(default="INFO")

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
