import asyncio
import os
import time
import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from state.config import ClientSettings
from state.storage import (
    MemoryStorageArea,
    NoopStorage,
    WebStorage,
    create_storage_area,
    create_web_storage,
    get_storage,
    has_storage_context,
    select_storage,
)


def _settings(**overrides) -> ClientSettings:
    with patch.dict(os.environ, {}, clear=True):
        return ClientSettings(_env_file=None, **overrides)


class NoopStorageTests(unittest.IsolatedAsyncioTestCase):
    async def test_operations_succeed_without_storing(self):
        storage = NoopStorage()
        self.assertEqual(await storage.set_item("persist:root", "{}"), "{}")
        self.assertIsNone(await storage.get_item("persist:root"))
        self.assertIsNone(await storage.remove_item("persist:root"))
        self.assertIsNone(await storage.get_item("persist:root"))


class WebStorageTests(unittest.IsolatedAsyncioTestCase):
    async def test_delegates_to_area(self):
        area = MemoryStorageArea()
        storage = WebStorage(area)
        await storage.set_item("persist:root", '{"global": "{}"}')
        self.assertEqual(area.items, {"persist:root": '{"global": "{}"}'})
        self.assertEqual(await storage.get_item("persist:root"), '{"global": "{}"}')
        await storage.remove_item("persist:root")
        self.assertIsNone(await storage.get_item("persist:root"))

    async def test_slow_area_does_not_block_loop(self):
        area = MagicMock()
        area.set_item.side_effect = lambda key, value: time.sleep(0.2)
        storage = WebStorage(area)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        await storage.set_item("persist:root", "{}")
        task.cancel()

        self.assertGreater(ticks, 5)
        area.set_item.assert_called_once_with("persist:root", "{}")

    async def test_area_failure_propagates(self):
        area = MagicMock()
        area.set_item.side_effect = OSError("quota exceeded")
        storage = WebStorage(area)
        with self.assertRaises(OSError):
            await storage.set_item("persist:root", "{}")


class MemoryStorageAreaTests(unittest.TestCase):
    def test_instances_do_not_share_items(self):
        first = MemoryStorageArea()
        second = MemoryStorageArea()
        first.set_item("persist:root", "{}")
        self.assertIsNone(second.get_item("persist:root"))


class StorageSelectionTests(unittest.TestCase):
    def test_no_storage_context_selects_noop(self):
        settings = _settings()
        self.assertFalse(has_storage_context(settings))
        self.assertIsInstance(select_storage(settings), NoopStorage)

    @patch("state.storage.redis.Redis.from_url")
    def test_storage_context_selects_web_storage(self, mock_from_url):
        settings = _settings(storage_url="redis://localhost:6379/0")
        self.assertTrue(has_storage_context(settings))

        storage = select_storage(settings)
        self.assertIsInstance(storage, WebStorage)
        mock_from_url.assert_called_once_with(
            "redis://localhost:6379/0",
            decode_responses=True,
            socket_connect_timeout=2.0,
            socket_timeout=2.0,
        )
        mock_from_url.return_value.set.assert_called_once()
        mock_from_url.return_value.delete.assert_called_once()

    def test_unusable_area_falls_back_to_noop(self):
        area = MagicMock()
        area.set_item.side_effect = redis_exceptions.ConnectionError("refused")
        with self.assertLogs("state.storage", level="WARNING"):
            storage = create_web_storage("local", area=area)
        self.assertIsInstance(storage, NoopStorage)

    def test_session_kind_uses_memory_area(self):
        storage = create_web_storage("session", settings=_settings())
        self.assertIsInstance(storage, WebStorage)
        self.assertIsInstance(storage.area, MemoryStorageArea)

    def test_local_kind_requires_storage_url(self):
        with self.assertRaises(ValueError):
            create_storage_area("local", _settings())

    def test_unknown_kind_rejected(self):
        with self.assertRaises(ValueError):
            create_storage_area("cookie", _settings())

    def test_selection_happens_once(self):
        get_storage.cache_clear()
        self.addCleanup(get_storage.cache_clear)
        with patch("state.storage.select_storage", return_value=NoopStorage()) as mock_select:
            first = get_storage()
            second = get_storage()
        self.assertIs(first, second)
        mock_select.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
