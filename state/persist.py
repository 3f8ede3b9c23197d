"""
State persistence: write whitelisted slices of the state tree to a storage
backend and merge them back in (rehydrate) when a store starts.

The persisted envelope is a JSON object mapping each slice name (plus the
``_persist`` metadata) to that slice's JSON text, stored under
``<key_prefix><key>``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from state.storage import Storage
from state.store import Action, Reducer, Store

logger = logging.getLogger(__name__)

FLUSH = "persist/FLUSH"
REHYDRATE = "persist/REHYDRATE"
PAUSE = "persist/PAUSE"
PERSIST = "persist/PERSIST"
PURGE = "persist/PURGE"
REGISTER = "persist/REGISTER"

PERSIST_ACTIONS = (FLUSH, REHYDRATE, PAUSE, PERSIST, PURGE, REGISTER)

KEY_PREFIX = "persist:"
DEFAULT_VERSION = -1
PERSIST_KEY = "_persist"

StateReconciler = Callable[[dict, dict, dict, "PersistConfig"], dict]
Migration = Callable[[Optional[dict], int], Awaitable[Optional[dict]]]


def auto_merge_level1(
    inbound: dict, original: dict, reduced: dict, config: "PersistConfig"
) -> dict:
    """
    Replace each reduced slice with its stored value, unless reducing the
    REHYDRATE action itself changed that slice. Changes dispatched before
    rehydration finished are overwritten by the stored value.
    """
    new_state = dict(reduced)
    for key, value in inbound.items():
        if key == PERSIST_KEY or not config.allows(key):
            continue
        if original.get(key) is not reduced.get(key):
            logger.debug("sub state for key `%s` modified, skipping rehydration", key)
            continue
        new_state[key] = value
    return new_state


@dataclass
class PersistConfig:
    key: str
    storage: Storage
    whitelist: Optional[Sequence[str]] = None
    blacklist: Optional[Sequence[str]] = None
    version: int = DEFAULT_VERSION
    key_prefix: str = KEY_PREFIX
    throttle: float = 0.0
    timeout: float = 5.0
    migrate: Optional[Migration] = None
    state_reconciler: Optional[StateReconciler] = auto_merge_level1
    write_fail_handler: Optional[Callable[[Exception], None]] = None

    @property
    def storage_key(self) -> str:
        return f"{self.key_prefix}{self.key}"

    def allows(self, key: str) -> bool:
        if self.whitelist is not None and key not in self.whitelist:
            return False
        if self.blacklist is not None and key in self.blacklist:
            return False
        return True


async def get_stored_state(config: PersistConfig) -> Optional[dict]:
    serialized = await config.storage.get_item(config.storage_key)
    if not serialized:
        return None
    raw = json.loads(serialized)
    return {key: json.loads(value) for key, value in raw.items()}


async def purge_stored_state(config: PersistConfig) -> None:
    await config.storage.remove_item(config.storage_key)


class Persistoid:
    """
    Stages changed slices and writes the envelope once the staging queue
    drains. One key is staged per ``throttle`` tick of the event loop.
    """

    def __init__(self, config: PersistConfig):
        self.config = config
        self._last_state: dict = {}
        self._staged: dict[str, str] = {}
        self._queue: list[str] = []
        self._handle: Optional[asyncio.TimerHandle] = None
        self._write_task: Optional[asyncio.Task] = None

    def update(self, state: dict) -> None:
        for key, value in state.items():
            if not self._passes(key) or key in self._queue:
                continue
            if key in self._last_state and self._last_state[key] is value:
                continue
            self._queue.append(key)
        for key in self._last_state:
            if key not in state and self._passes(key) and key not in self._queue:
                self._queue.append(key)

        self._last_state = state
        if self._queue and self._handle is None:
            self._schedule()

    async def flush(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._queue:
            while self._queue:
                self._stage_next_key()
            self._write_staged_state()
        if self._write_task is not None:
            await self._write_task

    def _passes(self, key: str) -> bool:
        return key == PERSIST_KEY or self.config.allows(key)

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.config.throttle, self._process_next_key)

    def _process_next_key(self) -> None:
        self._handle = None
        if not self._queue:
            return
        self._stage_next_key()
        if self._queue:
            self._schedule()
        else:
            self._write_staged_state()

    def _stage_next_key(self) -> None:
        key = self._queue.pop(0)
        if key in self._last_state:
            self._staged[key] = json.dumps(self._last_state[key])
        else:
            self._staged.pop(key, None)

    def _write_staged_state(self) -> None:
        envelope = json.dumps(self._staged)
        loop = asyncio.get_running_loop()
        self._write_task = loop.create_task(self._write(envelope, self._write_task))

    async def _write(self, envelope: str, previous: Optional[asyncio.Task] = None) -> None:
        # Writes land in the order they were staged.
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self.config.storage.set_item(self.config.storage_key, envelope)
        except Exception as exc:
            if self.config.write_fail_handler is not None:
                self.config.write_fail_handler(exc)
            else:
                logger.error(
                    "Failed to write persisted state %s: %s", self.config.storage_key, exc
                )


def persist_reducer(config: PersistConfig, base_reducer: Reducer) -> Reducer:
    """
    Wrap ``base_reducer`` so its state carries ``_persist`` metadata, is
    rehydrated from ``config.storage`` after PERSIST and is written back on
    every change once rehydrated.
    """
    persistoid: Optional[Persistoid] = None
    paused = False
    purged = False
    pending: set[asyncio.Task] = set()

    def conditional_update(state: dict) -> dict:
        if state[PERSIST_KEY]["rehydrated"] and persistoid is not None and not paused:
            persistoid.update(state)
        return state

    def begin_rehydration(rehydrate: Callable[..., None]) -> None:
        loop = asyncio.get_running_loop()
        sealed = False
        timeout_handle: Optional[asyncio.TimerHandle] = None

        def finish(payload: Optional[dict], err: Optional[Exception] = None) -> None:
            nonlocal sealed
            if sealed:
                return
            sealed = True
            if timeout_handle is not None:
                timeout_handle.cancel()
            rehydrate(config.key, payload, err)

        async def load() -> None:
            try:
                restored = await get_stored_state(config)
                if config.migrate is not None:
                    restored = await config.migrate(restored, config.version)
            except Exception as exc:
                finish(None, exc)
                return
            finish(restored)

        if config.timeout:
            timeout_handle = loop.call_later(
                config.timeout,
                lambda: finish(
                    None,
                    TimeoutError(f"persist timed out for persist key {config.key!r}"),
                ),
            )
        task = loop.create_task(load())
        pending.add(task)
        task.add_done_callback(pending.discard)

    def reducer(state: Optional[dict], action: Action) -> dict:
        nonlocal persistoid, paused, purged
        persist = state.get(PERSIST_KEY) if state is not None else None
        rest = (
            {key: value for key, value in state.items() if key != PERSIST_KEY}
            if state is not None
            else None
        )
        action_type = action.get("type")

        if action_type == PERSIST:
            paused = False
            if persistoid is None:
                persistoid = Persistoid(config)
            if persist is not None:
                return {**base_reducer(rest, action), PERSIST_KEY: persist}
            action["register"](config.key)
            begin_rehydration(action["rehydrate"])
            return {
                **base_reducer(rest, action),
                PERSIST_KEY: {"version": config.version, "rehydrated": False},
            }

        if action_type == PURGE:
            purged = True
            action["result"](asyncio.get_running_loop().create_task(purge_stored_state(config)))
            return {**base_reducer(rest, action), PERSIST_KEY: persist}

        if action_type == FLUSH:
            action["result"](persistoid.flush() if persistoid is not None else None)
            return {**base_reducer(rest, action), PERSIST_KEY: persist}

        if action_type == PAUSE:
            paused = True

        elif action_type == REHYDRATE and action.get("key") == config.key:
            if purged:
                return {**rest, PERSIST_KEY: {**persist, "rehydrated": True}}
            reduced = base_reducer(rest, action)
            inbound = action.get("payload")
            if inbound is not None and config.state_reconciler is not None:
                reconciled = config.state_reconciler(inbound, state, reduced, config)
            else:
                reconciled = reduced
            return conditional_update(
                {**reconciled, PERSIST_KEY: {**persist, "rehydrated": True}}
            )

        if persist is None:
            return base_reducer(state, action)

        new_state = base_reducer(rest, action)
        if new_state is rest:
            return state
        return conditional_update({**new_state, PERSIST_KEY: persist})

    return reducer


class Persistor:
    """
    Drives persistence for one store and tracks which persisted reducers
    are still waiting for rehydration.
    """

    def __init__(self, store: Store, on_bootstrapped: Optional[Callable[[], None]] = None):
        self._store = store
        self._state: dict = {"registry": [], "bootstrapped": False}
        self._listeners: list[Callable[[], None]] = []
        self._on_bootstrapped = on_bootstrapped
        self._bootstrapped = asyncio.Event()

    def get_state(self) -> dict:
        return self._state

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def register(self, key: str) -> None:
        self._set_state({**self._state, "registry": [*self._state["registry"], key]})

    def rehydrate(self, key: str, payload: Optional[dict], err: Optional[Exception] = None) -> None:
        if err is not None:
            logger.warning("Rehydration of persist key %r failed: %s", key, err)
        self._store.dispatch({"type": REHYDRATE, "key": key, "payload": payload, "err": err})
        registry = [registered for registered in self._state["registry"] if registered != key]
        self._set_state({"registry": registry, "bootstrapped": not registry})
        if not registry:
            self._bootstrapped.set()
            if self._on_bootstrapped is not None:
                callback, self._on_bootstrapped = self._on_bootstrapped, None
                callback()

    def persist(self) -> None:
        self._store.dispatch(
            {"type": PERSIST, "register": self.register, "rehydrate": self.rehydrate}
        )

    def pause(self) -> None:
        self._store.dispatch({"type": PAUSE})

    async def flush(self) -> None:
        await self._dispatch_collecting(FLUSH)

    async def purge(self) -> None:
        await self._dispatch_collecting(PURGE)

    async def wait_bootstrapped(self) -> None:
        await self._bootstrapped.wait()

    async def _dispatch_collecting(self, action_type: str) -> None:
        results: list[Any] = []
        self._store.dispatch({"type": action_type, "result": results.append})
        await asyncio.gather(*[result for result in results if result is not None])

    def _set_state(self, state: dict) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener()


def persist_store(
    store: Store, on_bootstrapped: Optional[Callable[[], None]] = None
) -> Persistor:
    """Start persistence for ``store``. Must run inside an event loop."""
    persistor = Persistor(store, on_bootstrapped)
    persistor.persist()
    return persistor
