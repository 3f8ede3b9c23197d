"""
Storage backends for state persistence.

A backend exposes ``get_item``/``set_item``/``remove_item`` coroutines. The
web storage backend delegates to a synchronous storage area (Redis for the
persistent ``local`` kind, process memory for ``session``); the no-op backend
is used when no persistent medium is available.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

from state.config import ClientSettings, get_client_settings

logger = logging.getLogger(__name__)


class Storage(Protocol):
    """Asynchronous key-value operations the persistence layer needs."""

    async def get_item(self, key: str) -> Optional[str]:
        ...

    async def set_item(self, key: str, value: str) -> Any:
        ...

    async def remove_item(self, key: str) -> None:
        ...


class StorageArea(Protocol):
    """Synchronous key-value area wrapped by ``WebStorage``."""

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class NoopStorage:
    """Succeeds at everything and stores nothing."""

    async def get_item(self, key: str) -> Optional[str]:
        return None

    async def set_item(self, key: str, value: str) -> str:
        return value

    async def remove_item(self, key: str) -> None:
        return None


@dataclass
class MemoryStorageArea:
    """Storage area that lives as long as the process."""

    items: dict = field(default_factory=dict)

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


@dataclass
class RedisStorageArea:
    """Redis-backed storage area; values survive process restarts."""

    url: str
    socket_timeout: float = 2.0

    def __post_init__(self):
        self._client = redis.Redis.from_url(
            self.url,
            decode_responses=True,
            socket_connect_timeout=self.socket_timeout,
            socket_timeout=self.socket_timeout,
        )

    def get_item(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._client.set(key, value)

    def remove_item(self, key: str) -> None:
        self._client.delete(key)


@dataclass
class WebStorage:
    """
    Wraps a synchronous storage area in the asynchronous backend interface.
    Area calls run in a worker thread.
    """

    area: StorageArea

    async def get_item(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self.area.get_item, key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self.area.set_item, key, value)

    async def remove_item(self, key: str) -> None:
        await asyncio.to_thread(self.area.remove_item, key)


def has_storage_context(settings: Optional[ClientSettings] = None) -> bool:
    """True when a persistent storage medium is configured for this process."""
    settings = settings or get_client_settings()
    return bool(settings.storage_url)


def create_storage_area(
    kind: str, settings: Optional[ClientSettings] = None
) -> StorageArea:
    if kind == "session":
        return MemoryStorageArea()
    if kind == "local":
        settings = settings or get_client_settings()
        if not settings.storage_url:
            raise ValueError("STORAGE_URL is required for local storage")
        return RedisStorageArea(
            settings.storage_url, socket_timeout=settings.storage_socket_timeout
        )
    raise ValueError(f"Unknown storage kind: {kind!r}")


def create_web_storage(
    kind: str = "local",
    settings: Optional[ClientSettings] = None,
    area: Optional[StorageArea] = None,
) -> Storage:
    """
    Build a web storage backend for ``kind``. Falls back to the no-op
    backend when the area cannot complete a write/read/remove probe.
    """
    area = area or create_storage_area(kind, settings)
    if not _is_usable(area, kind):
        logger.warning(
            "%s storage is not available, state will not be persisted", kind
        )
        return NoopStorage()
    return WebStorage(area)


def _is_usable(area: StorageArea, kind: str) -> bool:
    probe_key = f"persist {kind} probe"
    try:
        area.set_item(probe_key, "probe")
        area.get_item(probe_key)
        area.remove_item(probe_key)
    except (redis_exceptions.RedisError, OSError) as exc:
        logger.debug("storage probe failed: %s", exc)
        return False
    return True


def select_storage(settings: Optional[ClientSettings] = None) -> Storage:
    if not has_storage_context(settings):
        return NoopStorage()
    return create_web_storage("local", settings)


@lru_cache(maxsize=1)
def get_storage() -> Storage:
    """Return the storage backend chosen for this process."""
    return select_storage()
