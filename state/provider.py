"""
Provider boundary: owns the application store and its persistor, and only
renders its children once persisted state has been rehydrated.
"""

from __future__ import annotations

import enum
from typing import Any, Callable, Optional

from state.api import ConnectivityMonitor, setup_listeners
from state.app_store import make_store
from state.hooks import StoreContext
from state.persist import Persistor, persist_store
from state.store import Store

Children = Callable[[StoreContext], Any]


class GateStatus(enum.Enum):
    LOADING = "loading"
    READY = "ready"


class PersistGate:
    """Renders ``loading`` until the persistor reports bootstrapped."""

    def __init__(self, persistor: Persistor, loading: Any = None):
        self.persistor = persistor
        self.loading = loading

    @property
    def status(self) -> GateStatus:
        if self.persistor.get_state()["bootstrapped"]:
            return GateStatus.READY
        return GateStatus.LOADING

    def render(self, children: Children, context: StoreContext) -> Any:
        if self.status is GateStatus.LOADING:
            return self.loading
        return children(context)

    async def wait_ready(self) -> None:
        await self.persistor.wait_bootstrapped()


class StoreProvider:
    """
    Builds one store and one persistor on first render and keeps them for
    its lifetime. Must be rendered from inside a running event loop, since
    rehydration is scheduled on it.
    """

    def __init__(
        self,
        make_store: Callable[[], Store] = make_store,
        loading: Any = None,
        monitor: Optional[ConnectivityMonitor] = None,
    ):
        self._make_store = make_store
        self.loading = loading
        self.monitor = monitor or ConnectivityMonitor()
        self._context: Optional[StoreContext] = None
        self._gate: Optional[PersistGate] = None

    @property
    def context(self) -> StoreContext:
        return self._mount()

    @property
    def store(self) -> Store:
        return self._mount().store

    @property
    def persistor(self) -> Persistor:
        self._mount()
        return self._gate.persistor

    @property
    def status(self) -> GateStatus:
        self._mount()
        return self._gate.status

    def render(self, children: Children) -> Any:
        context = self._mount()
        return self._gate.render(children, context)

    async def ready(self) -> None:
        self._mount()
        await self._gate.wait_ready()

    def _mount(self) -> StoreContext:
        if self._context is None:
            store = self._make_store()
            setup_listeners(store.dispatch, self.monitor)
            self._context = StoreContext(store=store)
        if self._gate is None:
            self._gate = PersistGate(persist_store(self._context.store), loading=self.loading)
        return self._context
