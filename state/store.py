"""
Store core: a single state tree updated by dispatching actions through a
reducer, with composable middleware and slice helpers.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from functools import reduce
from types import SimpleNamespace
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

INIT = "@@redux/INIT"
REPLACE = "@@redux/REPLACE"

Action = Dict[str, Any]
Reducer = Callable[[Any, Action], Any]
Listener = Callable[[], None]
Dispatch = Callable[[Any], Any]


@dataclass(frozen=True)
class StoreApi:
    """The part of the store handed to middleware."""

    get_state: Callable[[], Any]
    dispatch: Dispatch


Middleware = Callable[[StoreApi], Callable[[Dispatch], Dispatch]]
Enhancer = Callable[[Callable[..., "Store"]], Callable[..., "Store"]]


class Store:
    """Holds the state tree. Listeners are notified after every dispatch."""

    def __init__(self, reducer: Reducer, preloaded_state: Any = None):
        self._reducer = reducer
        self._state = preloaded_state
        self._listeners: list[Listener] = []
        self._dispatching = False
        self.dispatch: Dispatch = self.base_dispatch
        self.base_dispatch({"type": INIT})

    def get_state(self) -> Any:
        if self._dispatching:
            raise RuntimeError("get_state() may not be called while the reducer is executing")
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        if self._dispatching:
            raise RuntimeError("subscribe() may not be called while the reducer is executing")
        self._listeners.append(listener)
        subscribed = True

        def unsubscribe() -> None:
            nonlocal subscribed
            if not subscribed:
                return
            subscribed = False
            self._listeners.remove(listener)

        return unsubscribe

    def base_dispatch(self, action: Action) -> Action:
        if not isinstance(action, dict):
            raise TypeError(
                f"Actions must be dicts, got {type(action).__name__}. "
                "Add the thunk middleware to dispatch callables."
            )
        if "type" not in action:
            raise TypeError('Actions must have a "type" key')
        if self._dispatching:
            raise RuntimeError("Reducers may not dispatch actions.")

        try:
            self._dispatching = True
            self._state = self._reducer(self._state, action)
        finally:
            self._dispatching = False

        for listener in list(self._listeners):
            listener()
        return action

    def replace_reducer(self, reducer: Reducer) -> None:
        self._reducer = reducer
        self.dispatch({"type": REPLACE})


def create_store(
    reducer: Reducer, preloaded_state: Any = None, enhancer: Optional[Enhancer] = None
) -> Store:
    if enhancer is not None:
        return enhancer(create_store)(reducer, preloaded_state)
    return Store(reducer, preloaded_state)


def compose(*funcs: Callable) -> Callable:
    """compose(f, g, h)(x) == f(g(h(x)))"""
    if not funcs:
        return lambda arg: arg
    if len(funcs) == 1:
        return funcs[0]
    return reduce(lambda f, g: lambda *args: f(g(*args)), funcs)


def apply_middleware(*middlewares: Middleware) -> Enhancer:
    """Wrap dispatch so actions pass through ``middlewares`` left to right."""

    def enhancer(store_factory: Callable[..., Store]) -> Callable[..., Store]:
        def create(reducer: Reducer, preloaded_state: Any = None) -> Store:
            store = store_factory(reducer, preloaded_state)

            def dispatch(action: Any) -> Any:
                raise RuntimeError(
                    "Dispatching while constructing your middleware is not allowed."
                )

            store_api = StoreApi(
                get_state=store.get_state,
                dispatch=lambda action: dispatch(action),
            )
            chain = [middleware(store_api) for middleware in middlewares]
            dispatch = compose(*chain)(store.base_dispatch)
            store.dispatch = dispatch
            return store

        return create

    return enhancer


def combine_reducers(reducers: Mapping[str, Reducer]) -> Reducer:
    """
    Build a reducer that hands each key of ``reducers`` its own slice of the
    state tree. The previous tree object is returned when no slice changed.
    """
    final_reducers = dict(reducers)
    for key, slice_reducer in final_reducers.items():
        if slice_reducer(None, {"type": INIT}) is None:
            raise ValueError(
                f'Slice reducer for key "{key}" returned None during initialization.'
            )
    warned_keys: set[str] = set()

    def combination(state: Optional[dict], action: Action) -> dict:
        state = state if state is not None else {}
        unexpected = [
            key for key in state if key not in final_reducers and key not in warned_keys
        ]
        if unexpected:
            warned_keys.update(unexpected)
            logger.warning(
                "Unexpected keys %s found in state; expected one of %s. They will be ignored.",
                unexpected,
                list(final_reducers),
            )

        changed = False
        next_state: dict = {}
        for key, slice_reducer in final_reducers.items():
            previous = state.get(key)
            next_slice = slice_reducer(previous, action)
            if next_slice is None:
                raise ValueError(
                    f'Slice reducer for key "{key}" returned None for action "{action.get("type")}".'
                )
            next_state[key] = next_slice
            changed = changed or next_slice is not previous
        changed = changed or len(final_reducers) != len(state)
        return next_state if changed else state

    return combination


def thunk_middleware(store_api: StoreApi) -> Callable[[Dispatch], Dispatch]:
    """Callables are invoked with ``(dispatch, get_state)`` instead of reduced."""

    def wrap(next_dispatch: Dispatch) -> Dispatch:
        def dispatch(action: Any) -> Any:
            if callable(action):
                return action(store_api.dispatch, store_api.get_state)
            return next_dispatch(action)

        return dispatch

    return wrap


_PLAIN_TYPES = (type(None), str, int, float, bool, list, tuple, dict)


def find_non_serializable_value(
    value: Any, path: str = "", ignored_paths: Sequence[str] = ()
) -> Optional[Tuple[str, Any]]:
    """Return ``(path, value)`` of the first value that is not JSON-like."""
    if path in ignored_paths:
        return None
    if not isinstance(value, _PLAIN_TYPES):
        return path or "<root>", value
    if isinstance(value, dict):
        for key, child in value.items():
            child_path = f"{path}.{key}" if path else str(key)
            if not isinstance(key, str):
                return child_path, key
            found = find_non_serializable_value(child, child_path, ignored_paths)
            if found:
                return found
    elif isinstance(value, (list, tuple)):
        for index, child in enumerate(value):
            found = find_non_serializable_value(
                child, f"{path}.{index}" if path else str(index), ignored_paths
            )
            if found:
                return found
    return None


def create_serializable_check_middleware(
    ignored_actions: Sequence[str] = (),
    ignored_action_paths: Sequence[str] = ("meta.arg", "meta.base_query_meta"),
    ignored_paths: Sequence[str] = (),
) -> Middleware:
    """Log an error when an action or the resulting state holds non-JSON values."""

    def middleware(store_api: StoreApi) -> Callable[[Dispatch], Dispatch]:
        def wrap(next_dispatch: Dispatch) -> Dispatch:
            def dispatch(action: Any) -> Any:
                result = next_dispatch(action)
                if isinstance(action, dict) and action.get("type") not in ignored_actions:
                    found = find_non_serializable_value(
                        action, ignored_paths=ignored_action_paths
                    )
                    if found:
                        logger.error(
                            "A non-serializable value was detected in an action, "
                            "in the path: `%s`. Value: %r (action %s)",
                            found[0],
                            found[1],
                            action.get("type"),
                        )
                    found = find_non_serializable_value(
                        store_api.get_state(), ignored_paths=ignored_paths
                    )
                    if found:
                        logger.error(
                            "A non-serializable value was detected in the state, "
                            "in the path: `%s`. Value: %r",
                            found[0],
                            found[1],
                        )
                return result

            return dispatch

        return wrap

    return middleware


def get_default_middleware(
    thunk: bool = True, serializable_check: Union[bool, dict] = True
) -> list[Middleware]:
    middleware: list[Middleware] = []
    if thunk:
        middleware.append(thunk_middleware)
    if serializable_check:
        options = serializable_check if isinstance(serializable_check, dict) else {}
        middleware.append(create_serializable_check_middleware(**options))
    return middleware


def configure_store(
    reducer: Union[Reducer, Mapping[str, Reducer]],
    middleware: Union[None, Sequence[Middleware], Callable[..., Sequence[Middleware]]] = None,
    preloaded_state: Any = None,
) -> Store:
    """
    Create a store with sensible defaults. ``middleware`` may be a list or a
    callable receiving ``get_default_middleware`` and returning a list.
    """
    if isinstance(reducer, Mapping):
        reducer = combine_reducers(reducer)
    if middleware is None:
        chain = get_default_middleware()
    elif callable(middleware):
        chain = list(middleware(get_default_middleware))
    else:
        chain = list(middleware)
    return create_store(reducer, preloaded_state, apply_middleware(*chain))


@dataclass(frozen=True)
class ActionCreator:
    type: str

    def __call__(self, payload: Any = None) -> Action:
        return {"type": self.type, "payload": payload}


@dataclass(frozen=True)
class Slice:
    name: str
    initial_state: Any
    reducer: Reducer
    actions: SimpleNamespace


def create_slice(
    name: str, initial_state: Any, reducers: Mapping[str, Reducer]
) -> Slice:
    """
    Build a slice whose case reducers handle ``<name>/<case>`` actions. Case
    reducers must return a new state object instead of mutating the old one.
    """
    case_reducers = {f"{name}/{case}": case_reducer for case, case_reducer in reducers.items()}

    def slice_reducer(state: Any, action: Action) -> Any:
        if state is None:
            state = copy.deepcopy(initial_state)
        case_reducer = case_reducers.get(action.get("type"))
        if case_reducer is None:
            return state
        return case_reducer(state, action)

    actions = SimpleNamespace(
        **{case: ActionCreator(f"{name}/{case}") for case in reducers}
    )
    return Slice(name=name, initial_state=initial_state, reducer=slice_reducer, actions=actions)
