import os
import unittest
from unittest.mock import AsyncMock, patch

import uvicorn

from backend.app import AppServer, create_app, main
from backend.config import Settings


class SettingsTests(unittest.TestCase):
    def test_port_defaults_to_3001(self):
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(Settings(_env_file=None).port, 3001)

    def test_port_read_from_environment(self):
        with patch.dict(os.environ, {"PORT": "5000"}, clear=True):
            self.assertEqual(Settings(_env_file=None).port, 5000)

    def test_cors_origin_list(self):
        settings = Settings(_env_file=None, cors_origins="http://a.test, http://b.test")
        self.assertEqual(settings.cors_origin_list, ["http://a.test", "http://b.test"])


class MainTests(unittest.TestCase):
    @patch("backend.app.AppServer")
    def test_main_binds_default_port(self, mock_server):
        with patch.dict(os.environ, {}, clear=True):
            main(Settings(_env_file=None))
        config = mock_server.call_args.args[0]
        self.assertEqual(config.port, 3001)
        mock_server.return_value.run.assert_called_once_with()

    @patch("backend.app.AppServer")
    def test_main_leaves_access_logging_to_middleware(self, mock_server):
        main(Settings(_env_file=None))
        config = mock_server.call_args.args[0]
        self.assertFalse(config.access_log)

    @patch("backend.app.AppServer")
    def test_main_binds_port_from_environment(self, mock_server):
        with patch.dict(os.environ, {"PORT": "5000"}, clear=True):
            main(Settings(_env_file=None))
        config = mock_server.call_args.args[0]
        self.assertEqual(config.port, 5000)


class AppServerStartupTests(unittest.IsolatedAsyncioTestCase):
    def _server(self, port: int) -> AppServer:
        config = uvicorn.Config(create_app(Settings(_env_file=None)), port=port)
        return AppServer(config)

    @patch.object(uvicorn.Server, "startup", new_callable=AsyncMock)
    async def test_logs_port_after_bind(self, _base_startup):
        server = self._server(5000)
        server.started = True
        with self.assertLogs("backend.app", level="INFO") as logs:
            await server.startup()
        self.assertIn("Server running on port 5000", logs.output[0])

    @patch.object(uvicorn.Server, "startup", new_callable=AsyncMock)
    async def test_no_log_when_bind_did_not_complete(self, _base_startup):
        server = self._server(5000)
        with self.assertNoLogs("backend.app", level="INFO"):
            await server.startup()


if __name__ == "__main__":
    unittest.main()
