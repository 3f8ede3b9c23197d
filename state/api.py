"""
Data-fetching slice: a query cache reduced into the store under its own
reducer path, with a middleware that owns the side effects (running
requests, deduplicating them, expiring unused cache entries and refetching
on reconnect).
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from state.config import get_client_settings
from state.store import Action, Dispatch, StoreApi

logger = logging.getLogger(__name__)

ONLINE = "connectivity/online"
OFFLINE = "connectivity/offline"
FOCUSED = "connectivity/focused"
UNFOCUSED = "connectivity/unfocused"

_CONNECTIVITY_EVENTS = {
    "online": ONLINE,
    "offline": OFFLINE,
    "focus": FOCUSED,
    "blur": UNFOCUSED,
}


class QueryStatus(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class QueryResult:
    data: Any = None
    error: Optional[dict] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class EndpointDefinition:
    name: str
    build: Callable[[Any], str]


@dataclass(frozen=True)
class ApiActionTypes:
    start: str
    pending: str
    fulfilled: str
    rejected: str
    subscribe: str
    unsubscribe: str
    remove: str
    reset: str

    @classmethod
    def for_path(cls, reducer_path: str) -> "ApiActionTypes":
        return cls(
            start=f"{reducer_path}/executeQuery/start",
            pending=f"{reducer_path}/executeQuery/pending",
            fulfilled=f"{reducer_path}/executeQuery/fulfilled",
            rejected=f"{reducer_path}/executeQuery/rejected",
            subscribe=f"{reducer_path}/subscriptions/subscribe",
            unsubscribe=f"{reducer_path}/subscriptions/unsubscribeQueryResult",
            remove=f"{reducer_path}/queries/removeQueryResult",
            reset=f"{reducer_path}/resetApiState",
        )


def serialize_query_args(endpoint_name: str, arg: Any) -> str:
    return f"{endpoint_name}({json.dumps(arg, sort_keys=True, default=str)})"


class QuerySubscription:
    """Handle returned by dispatching ``Api.initiate``."""

    def __init__(
        self,
        api: "Api",
        dispatch: Dispatch,
        endpoint_name: str,
        arg: Any,
        query_cache_key: str,
        request_id: str,
        future: "asyncio.Future[QueryResult]",
    ):
        self.api = api
        self.endpoint_name = endpoint_name
        self.arg = arg
        self.query_cache_key = query_cache_key
        self.request_id = request_id
        self._dispatch = dispatch
        self._future = future

    async def result(self) -> QueryResult:
        return await self._future

    def refetch(self) -> "QuerySubscription":
        return self._dispatch(
            self.api.initiate(
                self.endpoint_name, self.arg, force_refetch=True, subscribe=False
            )
        )

    def unsubscribe(self) -> None:
        self._dispatch(
            {
                "type": self.api.types.unsubscribe,
                "payload": {
                    "query_cache_key": self.query_cache_key,
                    "request_id": self.request_id,
                },
            }
        )


class Api:
    """
    A data-fetching slice. Register endpoints with ``query``, add
    ``reducer`` under ``reducer_path`` and append ``middleware`` to the
    store's middleware chain.
    """

    def __init__(
        self,
        reducer_path: str = "api",
        base_url: Optional[str] = None,
        keep_unused_data_for: Optional[float] = None,
        refetch_on_reconnect: bool = True,
        refetch_on_focus: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.reducer_path = reducer_path
        self.base_url = base_url
        self.refetch_on_reconnect = refetch_on_reconnect
        self.refetch_on_focus = refetch_on_focus
        self.transport = transport
        self.types = ApiActionTypes.for_path(reducer_path)
        self.endpoints: dict[str, EndpointDefinition] = {}
        self._keep_unused_data_for = keep_unused_data_for

    @property
    def keep_unused_data_for(self) -> float:
        if self._keep_unused_data_for is not None:
            return self._keep_unused_data_for
        return get_client_settings().keep_unused_data_for

    def query(self, name: str, build: Callable[[Any], str]) -> EndpointDefinition:
        endpoint = EndpointDefinition(name=name, build=build)
        self.endpoints[name] = endpoint
        return endpoint

    def initiate(
        self,
        endpoint_name: str,
        arg: Any = None,
        *,
        force_refetch: bool = False,
        subscribe: bool = True,
    ) -> Action:
        if endpoint_name not in self.endpoints:
            raise KeyError(f"Unknown endpoint {endpoint_name!r}")
        return {
            "type": self.types.start,
            "meta": {
                "arg": {
                    "endpoint_name": endpoint_name,
                    "original_args": arg,
                    "query_cache_key": serialize_query_args(endpoint_name, arg),
                },
                "force_refetch": force_refetch,
                "subscribe": subscribe,
            },
        }

    def reset_api_state(self) -> Action:
        return {"type": self.types.reset}

    def select(self, endpoint_name: str, arg: Any = None) -> Callable[[dict], dict]:
        key = serialize_query_args(endpoint_name, arg)

        def selector(root_state: dict) -> dict:
            entry = root_state[self.reducer_path]["queries"].get(key)
            return entry or {"status": QueryStatus.UNINITIALIZED.value}

        return selector

    # Reducer

    def initial_state(self) -> dict:
        return {
            "queries": {},
            "subscriptions": {},
            "config": {
                "online": True,
                "focused": True,
                "refetch_on_reconnect": self.refetch_on_reconnect,
                "refetch_on_focus": self.refetch_on_focus,
            },
        }

    def reducer(self, state: Optional[dict], action: Action) -> dict:
        if state is None:
            state = self.initial_state()
        action_type = action.get("type")
        types = self.types

        if action_type == types.pending:
            meta = action["meta"]
            key = meta["arg"]["query_cache_key"]
            entry = {
                **state["queries"].get(key, {}),
                "status": QueryStatus.PENDING.value,
                "endpoint_name": meta["arg"]["endpoint_name"],
                "original_args": meta["arg"]["original_args"],
                "request_id": meta["request_id"],
                "started_time_stamp": meta["started_time_stamp"],
            }
            return self._with_query(state, key, entry)

        if action_type in (types.fulfilled, types.rejected):
            meta = action["meta"]
            key = meta["arg"]["query_cache_key"]
            entry = state["queries"].get(key)
            if entry is None or entry.get("request_id") != meta["request_id"]:
                return state
            if action_type == types.fulfilled:
                entry = {
                    **entry,
                    "status": QueryStatus.FULFILLED.value,
                    "data": action["payload"],
                    "error": None,
                    "fulfilled_time_stamp": meta["fulfilled_time_stamp"],
                }
            else:
                entry = {
                    **entry,
                    "status": QueryStatus.REJECTED.value,
                    "error": action["error"],
                }
            return self._with_query(state, key, entry)

        if action_type == types.subscribe:
            key = action["payload"]["query_cache_key"]
            request_id = action["payload"]["request_id"]
            current = state["subscriptions"].get(key, [])
            if request_id in current:
                return state
            return {
                **state,
                "subscriptions": {**state["subscriptions"], key: [*current, request_id]},
            }

        if action_type == types.unsubscribe:
            key = action["payload"]["query_cache_key"]
            request_id = action["payload"]["request_id"]
            current = state["subscriptions"].get(key, [])
            if request_id not in current:
                return state
            remaining = [sub for sub in current if sub != request_id]
            return {
                **state,
                "subscriptions": {**state["subscriptions"], key: remaining},
            }

        if action_type == types.remove:
            key = action["payload"]["query_cache_key"]
            if key not in state["queries"] and key not in state["subscriptions"]:
                return state
            queries = {k: v for k, v in state["queries"].items() if k != key}
            subscriptions = {k: v for k, v in state["subscriptions"].items() if k != key}
            return {**state, "queries": queries, "subscriptions": subscriptions}

        if action_type in (ONLINE, OFFLINE):
            return self._with_config(state, online=action_type == ONLINE)

        if action_type in (FOCUSED, UNFOCUSED):
            return self._with_config(state, focused=action_type == FOCUSED)

        if action_type == types.reset:
            return self.initial_state()

        return state

    @staticmethod
    def _with_query(state: dict, key: str, entry: dict) -> dict:
        return {**state, "queries": {**state["queries"], key: entry}}

    @staticmethod
    def _with_config(state: dict, **changes: bool) -> dict:
        if all(state["config"].get(name) == value for name, value in changes.items()):
            return state
        return {**state, "config": {**state["config"], **changes}}

    # Middleware

    def middleware(self, store_api: StoreApi) -> Callable[[Dispatch], Dispatch]:
        running: dict[str, asyncio.Task] = {}
        removal_timers: dict[str, asyncio.TimerHandle] = {}
        types = self.types

        def slice_state() -> dict:
            return store_api.get_state()[self.reducer_path]

        def start_query(action: Action) -> QuerySubscription:
            loop = asyncio.get_running_loop()
            meta = action["meta"]
            arg = meta["arg"]
            key = arg["query_cache_key"]
            request_id = uuid.uuid4().hex

            if meta["subscribe"]:
                store_api.dispatch(
                    {
                        "type": types.subscribe,
                        "payload": {"query_cache_key": key, "request_id": request_id},
                    }
                )

            in_flight = running.get(key)
            entry = slice_state()["queries"].get(key)
            if in_flight is not None and not in_flight.done():
                future = in_flight
            elif (
                entry is not None
                and entry["status"] == QueryStatus.FULFILLED.value
                and not meta["force_refetch"]
            ):
                future = loop.create_future()
                future.set_result(QueryResult(data=entry["data"]))
            else:
                store_api.dispatch(
                    {
                        "type": types.pending,
                        "meta": {
                            "arg": arg,
                            "request_id": request_id,
                            "started_time_stamp": time.time(),
                        },
                    }
                )
                future = loop.create_task(execute(arg, request_id))
                running[key] = future
                future.add_done_callback(
                    lambda done: running.pop(key) if running.get(key) is done else None
                )

            return QuerySubscription(
                api=self,
                dispatch=store_api.dispatch,
                endpoint_name=arg["endpoint_name"],
                arg=arg["original_args"],
                query_cache_key=key,
                request_id=request_id,
                future=future,
            )

        async def execute(arg: dict, request_id: str) -> QueryResult:
            endpoint = self.endpoints[arg["endpoint_name"]]
            try:
                data, error = await self.base_query(endpoint.build(arg["original_args"]))
            except Exception as exc:
                logger.warning("query %s failed: %s", arg["query_cache_key"], exc)
                data, error = None, {"status": "CUSTOM_ERROR", "error": str(exc)}
            meta = {"arg": arg, "request_id": request_id}
            if error is None:
                store_api.dispatch(
                    {
                        "type": types.fulfilled,
                        "payload": data,
                        "meta": {**meta, "fulfilled_time_stamp": time.time()},
                    }
                )
                return QueryResult(data=data)
            store_api.dispatch({"type": types.rejected, "error": error, "meta": meta})
            return QueryResult(error=error)

        def cancel_removal(key: str) -> None:
            handle = removal_timers.pop(key, None)
            if handle is not None:
                handle.cancel()

        def schedule_removal(key: str) -> None:
            if slice_state()["subscriptions"].get(key):
                return
            cancel_removal(key)
            keep_for = self.keep_unused_data_for
            if math.isinf(keep_for):
                return
            loop = asyncio.get_running_loop()
            removal_timers[key] = loop.call_later(keep_for, remove_unused, key)

        def remove_unused(key: str) -> None:
            removal_timers.pop(key, None)
            if slice_state()["subscriptions"].get(key):
                return
            logger.debug("removing unused cache entry %s", key)
            store_api.dispatch({"type": types.remove, "payload": {"query_cache_key": key}})

        def refetch_subscribed() -> None:
            current = slice_state()
            for key, subscribers in current["subscriptions"].items():
                entry = current["queries"].get(key)
                if subscribers and entry is not None:
                    store_api.dispatch(
                        self.initiate(
                            entry["endpoint_name"],
                            entry["original_args"],
                            force_refetch=True,
                            subscribe=False,
                        )
                    )

        def wrap(next_dispatch: Dispatch) -> Dispatch:
            def dispatch(action: Any) -> Any:
                if not isinstance(action, dict):
                    return next_dispatch(action)
                action_type = action.get("type")
                if action_type == types.start:
                    return start_query(action)

                result = next_dispatch(action)
                if action_type == types.subscribe:
                    cancel_removal(action["payload"]["query_cache_key"])
                elif action_type == types.unsubscribe:
                    schedule_removal(action["payload"]["query_cache_key"])
                elif action_type == ONLINE and self.refetch_on_reconnect:
                    refetch_subscribed()
                elif action_type == FOCUSED and self.refetch_on_focus:
                    refetch_subscribed()
                elif action_type == types.reset:
                    for handle in removal_timers.values():
                        handle.cancel()
                    removal_timers.clear()
                    running.clear()
                return result

            return dispatch

        return wrap

    async def base_query(self, path: str) -> tuple[Any, Optional[dict]]:
        """GET ``path`` relative to the base URL; returns ``(data, error)``."""
        base_url = self.base_url or get_client_settings().api_base_url
        try:
            async with httpx.AsyncClient(base_url=base_url, transport=self.transport) as client:
                response = await client.get(path)
        except httpx.HTTPError as exc:
            return None, {"status": "FETCH_ERROR", "error": str(exc)}

        if response.is_error:
            return None, {"status": response.status_code, "data": response.text}
        if not response.content:
            return None, None
        try:
            return response.json(), None
        except ValueError:
            return None, {
                "status": "PARSING_ERROR",
                "original_status": response.status_code,
                "data": response.text,
            }


class ConnectivityMonitor:
    """
    Source of connectivity and focus events for the hosting environment.
    Call ``emit("online")``, ``emit("offline")``, ``emit("focus")`` or
    ``emit("blur")`` as the environment changes.
    """

    def __init__(self):
        self._handlers: list[Callable[[str], None]] = []

    def add_listener(self, handler: Callable[[str], None]) -> Callable[[], None]:
        self._handlers.append(handler)

        def remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return remove

    def emit(self, event: str) -> None:
        if event not in _CONNECTIVITY_EVENTS:
            raise ValueError(f"Unknown connectivity event: {event!r}")
        for handler in list(self._handlers):
            handler(event)


def setup_listeners(dispatch: Dispatch, monitor: ConnectivityMonitor) -> Callable[[], None]:
    """Dispatch connectivity actions for ``monitor`` events; returns an unsubscribe."""

    def handle(event: str) -> None:
        dispatch({"type": _CONNECTIVITY_EVENTS[event]})

    return monitor.add_listener(handle)


api = Api(reducer_path="api")
api.query("get_dashboard_metrics", lambda _arg: "/dashboard")
