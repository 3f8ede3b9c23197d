import asyncio
import json
import time
import unittest
from unittest.mock import MagicMock

import httpx

from state.api import OFFLINE, Api
from state.app_store import make_store
from state.global_slice import set_is_dark_mode, set_is_sidebar_collapsed
from state.persist import (
    PERSIST_KEY,
    PersistConfig,
    Persistoid,
    get_stored_state,
    persist_store,
)
from state.storage import MemoryStorageArea, NoopStorage, WebStorage


def _offline_api() -> Api:
    return Api(
        base_url="http://inventory.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )


def _envelope(**slices) -> str:
    return json.dumps({key: json.dumps(value) for key, value in slices.items()})


class FailingStorage:
    def __init__(self):
        self.writes = 0

    async def get_item(self, key):
        return None

    async def set_item(self, key, value):
        self.writes += 1
        raise OSError("quota exceeded")

    async def remove_item(self, key):
        return None


class SlowFirstWriteArea(MemoryStorageArea):
    def set_item(self, key, value):
        if not self.items:
            time.sleep(0.1)
        super().set_item(key, value)


class HangingStorage(NoopStorage):
    async def get_item(self, key):
        await asyncio.sleep(30)


class PersistTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.area = MemoryStorageArea()
        self.config = PersistConfig(
            key="root", storage=WebStorage(self.area), whitelist=["global"], timeout=1.0
        )

    def _stored(self) -> dict:
        raw = json.loads(self.area.items["persist:root"])
        return {key: json.loads(value) for key, value in raw.items()}

    async def test_rehydration_completes_without_stored_state(self):
        store = make_store(self.config, api_slice=_offline_api())
        persistor = persist_store(store)
        self.assertFalse(store.get_state()[PERSIST_KEY]["rehydrated"])
        self.assertFalse(persistor.get_state()["bootstrapped"])

        await persistor.wait_bootstrapped()

        self.assertTrue(store.get_state()[PERSIST_KEY]["rehydrated"])
        self.assertEqual(persistor.get_state(), {"registry": [], "bootstrapped": True})

    async def test_only_global_slice_is_written(self):
        store = make_store(self.config, api_slice=_offline_api())
        persistor = persist_store(store)
        await persistor.wait_bootstrapped()

        store.dispatch(set_is_dark_mode(True))
        store.dispatch({"type": OFFLINE})
        self.assertFalse(store.get_state()["api"]["config"]["online"])
        await persistor.flush()

        stored = self._stored()
        self.assertEqual(set(stored), {"global", PERSIST_KEY})
        self.assertEqual(
            stored["global"], {"is_sidebar_collapsed": False, "is_dark_mode": True}
        )

    async def test_stored_state_merged_over_defaults(self):
        self.area.items["persist:root"] = _envelope(
            **{
                "global": {"is_sidebar_collapsed": True, "is_dark_mode": True},
                "api": {"queries": {"stale": {}}, "subscriptions": {}, "config": {}},
                PERSIST_KEY: {"version": -1, "rehydrated": True},
            }
        )
        store = make_store(self.config, api_slice=_offline_api())
        persistor = persist_store(store)
        self.assertEqual(
            store.get_state()["global"],
            {"is_sidebar_collapsed": False, "is_dark_mode": False},
        )

        await persistor.wait_bootstrapped()

        state = store.get_state()
        self.assertEqual(
            state["global"], {"is_sidebar_collapsed": True, "is_dark_mode": True}
        )
        self.assertEqual(state["api"]["queries"], {})

    async def test_changes_before_rehydration_are_overwritten(self):
        self.area.items["persist:root"] = _envelope(
            **{"global": {"is_sidebar_collapsed": False, "is_dark_mode": True}}
        )
        store = make_store(self.config, api_slice=_offline_api())
        persistor = persist_store(store)
        store.dispatch(set_is_sidebar_collapsed(True))

        await persistor.wait_bootstrapped()

        self.assertEqual(
            store.get_state()["global"],
            {"is_sidebar_collapsed": False, "is_dark_mode": True},
        )

    async def test_purge_removes_stored_state(self):
        store = make_store(self.config, api_slice=_offline_api())
        persistor = persist_store(store)
        await persistor.wait_bootstrapped()
        await persistor.flush()
        self.assertIn("persist:root", self.area.items)

        await persistor.purge()
        self.assertNotIn("persist:root", self.area.items)

    async def test_pause_stops_writes(self):
        store = make_store(self.config, api_slice=_offline_api())
        persistor = persist_store(store)
        await persistor.wait_bootstrapped()
        await persistor.flush()

        persistor.pause()
        store.dispatch(set_is_sidebar_collapsed(True))
        await persistor.flush()
        self.assertFalse(self._stored()["global"]["is_sidebar_collapsed"])

    async def test_write_failure_reaches_handler(self):
        handler = MagicMock()
        config = PersistConfig(
            key="root",
            storage=FailingStorage(),
            whitelist=["global"],
            write_fail_handler=handler,
        )
        store = make_store(config, api_slice=_offline_api())
        persistor = persist_store(store)
        await persistor.wait_bootstrapped()
        await persistor.flush()

        handler.assert_called()
        self.assertIsInstance(handler.call_args.args[0], OSError)

    async def test_rehydration_times_out(self):
        config = PersistConfig(
            key="root", storage=HangingStorage(), whitelist=["global"], timeout=0.01
        )
        store = make_store(config, api_slice=_offline_api())
        with self.assertLogs("state.persist", level="WARNING") as logs:
            persistor = persist_store(store)
            await asyncio.wait_for(persistor.wait_bootstrapped(), timeout=1)
        self.assertIn("timed out", logs.output[0])
        self.assertTrue(store.get_state()[PERSIST_KEY]["rehydrated"])

    async def test_migrate_runs_before_merge(self):
        self.area.items["persist:root"] = _envelope(
            **{"global": {"dark": True}, PERSIST_KEY: {"version": 0, "rehydrated": True}}
        )

        async def migrate(state, version):
            legacy = state["global"]
            return {**state, "global": {"is_sidebar_collapsed": False, "is_dark_mode": legacy["dark"]}}

        config = PersistConfig(
            key="root", storage=WebStorage(self.area), whitelist=["global"], version=1, migrate=migrate
        )
        store = make_store(config, api_slice=_offline_api())
        persistor = persist_store(store)
        await persistor.wait_bootstrapped()
        self.assertTrue(store.get_state()["global"]["is_dark_mode"])

    async def test_writes_land_in_staged_order(self):
        area = SlowFirstWriteArea()
        persistoid = Persistoid(
            PersistConfig(key="root", storage=WebStorage(area), whitelist=["global"])
        )
        persistoid.update({"global": {"is_dark_mode": True}})
        await asyncio.sleep(0.02)
        persistoid.update({"global": {"is_dark_mode": False}})
        await persistoid.flush()

        stored = json.loads(area.items["persist:root"])
        self.assertEqual(json.loads(stored["global"]), {"is_dark_mode": False})

    async def test_get_stored_state_empty(self):
        self.assertIsNone(await get_stored_state(self.config))

    async def test_noop_storage_still_bootstraps(self):
        config = PersistConfig(key="root", storage=NoopStorage(), whitelist=["global"])
        store = make_store(config, api_slice=_offline_api())
        persistor = persist_store(store)
        await persistor.wait_bootstrapped()
        store.dispatch(set_is_dark_mode(True))
        await persistor.flush()
        self.assertIsNone(await get_stored_state(config))


if __name__ == "__main__":
    unittest.main()
