import unittest

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from starlette.middleware import Middleware

from backend.middleware import (
    CrossOriginResourcePolicyMiddleware,
    SecurityHeadersMiddleware,
    UrlEncodedBodyParserMiddleware,
    format_common_log,
)


def _echo_app(*middleware: Middleware) -> FastAPI:
    app = FastAPI(middleware=list(middleware))

    @app.post("/echo")
    async def echo(request: Request):
        return {"body": request.state.body}

    @app.get("/framed")
    async def framed():
        return JSONResponse({}, headers={"x-frame-options": "DENY"})

    return app


class UrlEncodedParserTests(unittest.TestCase):
    def test_extended_mode_builds_nested_values(self):
        client = TestClient(
            _echo_app(Middleware(UrlEncodedBodyParserMiddleware, extended=True))
        )
        response = client.post(
            "/echo",
            content=b"item[name]=bolt&item[size]=m4&tags[]=a&tags[]=b&plain=1",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )
        self.assertEqual(
            response.json()["body"],
            {"item": {"name": "bolt", "size": "m4"}, "tags": ["a", "b"], "plain": "1"},
        )

    def test_blank_values_kept(self):
        client = TestClient(_echo_app(Middleware(UrlEncodedBodyParserMiddleware)))
        response = client.post(
            "/echo",
            content=b"a=&b=2",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )
        self.assertEqual(response.json()["body"], {"a": "", "b": "2"})

    def test_parameter_limit(self):
        client = TestClient(
            _echo_app(Middleware(UrlEncodedBodyParserMiddleware, parameter_limit=2))
        )
        response = client.post(
            "/echo",
            content=b"a=1&b=2&c=3",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )
        self.assertEqual(response.status_code, 413)


class HeaderMiddlewareTests(unittest.TestCase):
    def test_handler_headers_win_over_defaults(self):
        client = TestClient(_echo_app(Middleware(SecurityHeadersMiddleware)))
        response = client.get("/framed")
        self.assertEqual(response.headers["x-frame-options"], "DENY")
        self.assertEqual(response.headers["x-xss-protection"], "0")

    def test_inner_policy_overrides_security_default(self):
        client = TestClient(
            _echo_app(
                Middleware(SecurityHeadersMiddleware),
                Middleware(CrossOriginResourcePolicyMiddleware, policy="same-site"),
            )
        )
        response = client.get("/framed")
        self.assertEqual(response.headers["cross-origin-resource-policy"], "same-site")

    def test_unknown_policy_rejected(self):
        with self.assertRaises(ValueError):
            CrossOriginResourcePolicyMiddleware(app=None, policy="everyone")


class CommonLogFormatTests(unittest.TestCase):
    def test_missing_status_and_length(self):
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/dashboard",
            "query_string": b"",
            "headers": [(b"authorization", b"Basic YWxpY2U6c2VjcmV0")],
            "client": ("10.0.0.1", 1234),
            "http_version": "1.1",
        }
        line = format_common_log(scope, None, None)
        self.assertTrue(line.startswith("10.0.0.1 - alice ["))
        self.assertTrue(line.endswith('"POST /dashboard HTTP/1.1" - -'))


if __name__ == "__main__":
    unittest.main()
