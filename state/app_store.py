"""
Application store assembly: root reducer, persistence configuration and
the store factory.
"""

from __future__ import annotations

from typing import Optional

from state.api import Api, api
from state.config import get_client_settings
from state.global_slice import global_reducer
from state.persist import PERSIST_ACTIONS, PersistConfig, persist_reducer
from state.storage import Storage, get_storage
from state.store import Reducer, Store, combine_reducers, configure_store

# Only the global slice is persisted; api cache entries are refetched.
PERSIST_WHITELIST = ("global",)


def build_persist_config(storage: Optional[Storage] = None) -> PersistConfig:
    settings = get_client_settings()
    return PersistConfig(
        key="root",
        storage=storage if storage is not None else get_storage(),
        whitelist=list(PERSIST_WHITELIST),
        throttle=settings.persist_throttle,
        timeout=settings.persist_timeout,
    )


def build_root_reducer(api_slice: Api = api) -> Reducer:
    return combine_reducers(
        {
            "global": global_reducer,
            api_slice.reducer_path: api_slice.reducer,
        }
    )


# Storage is selected once, when this module is loaded.
persist_config = build_persist_config()
root_reducer = build_root_reducer()


def make_store(
    config: Optional[PersistConfig] = None, api_slice: Api = api
) -> Store:
    """
    Create the application store. The reducer is wrapped for persistence
    and ``api_slice.middleware`` runs after the default middleware.
    """
    config = config or persist_config
    persisted_reducer = persist_reducer(config, build_root_reducer(api_slice))
    return configure_store(
        reducer=persisted_reducer,
        middleware=lambda get_default_middleware: get_default_middleware(
            serializable_check={"ignored_actions": PERSIST_ACTIONS}
        )
        + [api_slice.middleware],
    )
