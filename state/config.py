"""
Configuration for the client state container.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Environment-backed settings for the state container."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Persistent storage medium (Redis URL). Unset means persistence is a no-op.
    storage_url: Optional[str] = Field(default=None)
    storage_socket_timeout: float = Field(default=2.0)

    api_base_url: str = Field(default="http://localhost:3001")

    # Seconds
    persist_throttle: float = Field(default=0.0)
    persist_timeout: float = Field(default=5.0)
    keep_unused_data_for: float = Field(default=60.0)


@lru_cache(maxsize=1)
def get_client_settings() -> ClientSettings:
    """Return cached settings instance."""
    return ClientSettings()
