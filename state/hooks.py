"""
Typed accessors for code rendered inside a ``StoreProvider``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, TypeVar

from state.store import Dispatch, Store

RootState = Dict[str, Any]
AppDispatch = Dispatch

T = TypeVar("T")


@dataclass(frozen=True)
class StoreContext:
    """What a provider hands to its children."""

    store: Store


def use_app_dispatch(context: StoreContext) -> AppDispatch:
    return context.store.dispatch


def use_app_selector(context: StoreContext, selector: Callable[[RootState], T]) -> T:
    return selector(context.store.get_state())
