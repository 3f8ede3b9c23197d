"""
ASGI middleware for the HTTP pipeline.

Each class wraps the next ASGI app and either forwards the request or
short-circuits it with an error response. Body parsers store the parsed body
in ``request.state.body`` so route handlers can read it without touching the
raw stream; the stream is replayed downstream unchanged.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qsl

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import ClientDisconnect
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

access_logger = logging.getLogger("backend.access")

DEFAULT_BODY_LIMIT = 100 * 1024
DEFAULT_PARAMETER_LIMIT = 1000

# Response headers written by SecurityHeadersMiddleware unless a handler or
# an inner middleware already set them.
DEFAULT_SECURITY_HEADERS: dict[str, str] = {
    "content-security-policy": (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
        "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "cross-origin-opener-policy": "same-origin",
    "cross-origin-resource-policy": "same-origin",
    "origin-agent-cluster": "?1",
    "referrer-policy": "no-referrer",
    "strict-transport-security": "max-age=15552000; includeSubDomains",
    "x-content-type-options": "nosniff",
    "x-dns-prefetch-control": "off",
    "x-download-options": "noopen",
    "x-frame-options": "SAMEORIGIN",
    "x-permitted-cross-domain-policies": "none",
    "x-xss-protection": "0",
}

CROSS_ORIGIN_RESOURCE_POLICIES = ("same-origin", "same-site", "cross-origin")


class BodyParseError(Exception):
    """Raised by a body parser; carries the HTTP status to answer with."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _request_state(scope: Scope) -> dict:
    return scope.setdefault("state", {})


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class _BodyParserMiddleware:
    """Shared flow for the body parsers: match, read, parse, replay."""

    media_type: str = ""

    def __init__(self, app: ASGIApp, limit: int = DEFAULT_BODY_LIMIT) -> None:
        self.app = app
        self.limit = limit

    def parse(self, body: bytes, charset: str) -> Any:
        raise NotImplementedError

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = _request_state(scope)
        state.setdefault("body", {})
        headers = Headers(scope=scope)
        media_type, charset = _content_type(headers)
        if state.get("body_parsed") or media_type != self.media_type:
            await self.app(scope, receive, send)
            return

        try:
            body = await self._read_body(headers, receive)
            parsed = self.parse(body, charset) if body else {}
        except BodyParseError as exc:
            response = JSONResponse({"detail": exc.detail}, status_code=exc.status_code)
            await response(scope, receive, send)
            return

        state["body"] = parsed
        state["body_parsed"] = True
        await self.app(scope, _replay_receive(body, receive), send)

    async def _read_body(self, headers: Headers, receive: Receive) -> bytes:
        declared = headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.limit:
            raise BodyParseError(413, "request entity too large")

        chunks: list[bytes] = []
        size = 0
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise ClientDisconnect()
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.limit:
                raise BodyParseError(413, "request entity too large")
            chunks.append(chunk)
            if not message.get("more_body", False):
                break
        return b"".join(chunks)


class JsonBodyParserMiddleware(_BodyParserMiddleware):
    """Parses ``application/json`` bodies. Only objects and arrays are accepted."""

    media_type = "application/json"

    def parse(self, body: bytes, charset: str) -> Any:
        text = _decode(body, charset)
        stripped = text.lstrip()
        if stripped[:1] not in ("{", "["):
            raise BodyParseError(400, "JSON body must be an object or an array")
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise BodyParseError(400, f"Malformed JSON body: {exc.msg}") from exc


class UrlEncodedBodyParserMiddleware(_BodyParserMiddleware):
    """
    Parses ``application/x-www-form-urlencoded`` bodies.

    With ``extended=False`` keys stay flat and repeated keys collect into a
    list. With ``extended=True`` bracket keys such as ``item[name]`` and
    ``tags[]`` build nested objects and lists.
    """

    media_type = "application/x-www-form-urlencoded"

    def __init__(
        self,
        app: ASGIApp,
        extended: bool = False,
        limit: int = DEFAULT_BODY_LIMIT,
        parameter_limit: int = DEFAULT_PARAMETER_LIMIT,
    ) -> None:
        super().__init__(app, limit=limit)
        self.extended = extended
        self.parameter_limit = parameter_limit

    def parse(self, body: bytes, charset: str) -> Any:
        text = _decode(body, charset)
        try:
            pairs = parse_qsl(
                text, keep_blank_values=True, max_num_fields=self.parameter_limit
            )
        except ValueError as exc:
            raise BodyParseError(413, "too many parameters") from exc

        result: dict[str, Any] = {}
        for key, value in pairs:
            if self.extended:
                _assign_nested(result, key, value)
            else:
                _assign_flat(result, key, value)
        return result


class SecurityHeadersMiddleware:
    """Adds a conservative set of security headers and drops ``X-Powered-By``."""

    def __init__(self, app: ASGIApp, headers: Optional[dict[str, str]] = None) -> None:
        self.app = app
        self.headers = dict(DEFAULT_SECURITY_HEADERS if headers is None else headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    response_headers.setdefault(name, value)
                if "x-powered-by" in response_headers:
                    del response_headers["x-powered-by"]
            await send(message)

        await self.app(scope, receive, send_with_headers)


class CrossOriginResourcePolicyMiddleware:
    """Sets ``Cross-Origin-Resource-Policy`` to the configured policy."""

    def __init__(self, app: ASGIApp, policy: str = "same-origin") -> None:
        if policy not in CROSS_ORIGIN_RESOURCE_POLICIES:
            raise ValueError(f"Unsupported Cross-Origin-Resource-Policy: {policy!r}")
        self.app = app
        self.policy = policy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_policy(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).setdefault(
                    "cross-origin-resource-policy", self.policy
                )
            await send(message)

        await self.app(scope, receive, send_with_policy)


class AccessLogMiddleware:
    """
    Writes one Apache common log format line per request, once the response
    has been sent:

        127.0.0.1 - - [19/Oct/2026:10:00:00 +0000] "GET /dashboard HTTP/1.1" 200 15
    """

    def __init__(self, app: ASGIApp, logger: Optional[logging.Logger] = None) -> None:
        self.app = app
        self.logger = logger or access_logger

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response: dict[str, Any] = {"status": None, "length": None}

        async def send_and_record(message: Message) -> None:
            if message["type"] == "http.response.start":
                response["status"] = message["status"]
                response["length"] = Headers(raw=message.get("headers", [])).get(
                    "content-length"
                )
            await send(message)

        try:
            await self.app(scope, receive, send_and_record)
        finally:
            self.logger.info(
                format_common_log(scope, response["status"], response["length"])
            )


def format_common_log(
    scope: Scope, status: Optional[int], content_length: Optional[str]
) -> str:
    client = scope.get("client")
    remote_addr = client[0] if client else "-"
    remote_user = _basic_auth_user(Headers(scope=scope)) or "-"
    timestamp = datetime.now(timezone.utc).strftime("%d/%b/%Y:%H:%M:%S +0000")
    url = scope.get("path", "")
    query = scope.get("query_string", b"")
    if query:
        url = f"{url}?{query.decode('latin-1')}"
    http_version = scope.get("http_version", "1.1")
    return (
        f'{remote_addr} - {remote_user} [{timestamp}] '
        f'"{scope.get("method", "-")} {url} HTTP/{http_version}" '
        f'{status if status is not None else "-"} {content_length or "-"}'
    )


def _basic_auth_user(headers: Headers) -> Optional[str]:
    authorization = headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "basic" or not credentials:
        return None
    try:
        decoded = base64.b64decode(credentials).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    user, sep, _ = decoded.partition(":")
    return user if sep else None


def _content_type(headers: Headers) -> tuple[str, str]:
    raw = headers.get("content-type", "")
    media_type, *params = [part.strip() for part in raw.split(";")]
    charset = "utf-8"
    for param in params:
        name, _, value = param.partition("=")
        if name.strip().lower() == "charset" and value:
            charset = value.strip().strip('"').lower()
    return media_type.lower(), charset


def _decode(body: bytes, charset: str) -> str:
    try:
        return body.decode(charset)
    except LookupError as exc:
        raise BodyParseError(415, f'unsupported charset "{charset.upper()}"') from exc
    except UnicodeDecodeError as exc:
        raise BodyParseError(400, "request body is not valid text") from exc


def _assign_flat(target: dict[str, Any], key: str, value: str) -> None:
    if key not in target:
        target[key] = value
    elif isinstance(target[key], list):
        target[key].append(value)
    else:
        target[key] = [target[key], value]


_BRACKET_KEY = re.compile(r"\[([^\[\]]*)\]")


def _assign_nested(target: dict[str, Any], key: str, value: str) -> None:
    head, bracket, _ = key.partition("[")
    if not bracket or not head:
        _assign_flat(target, key, value)
        return
    parts = [head] + _BRACKET_KEY.findall(key[len(head):])

    node: Any = target
    for index, part in enumerate(parts):
        last = index == len(parts) - 1
        if isinstance(node, list):
            # "tags[]" style keys append; nested objects inside lists start fresh
            if last:
                node.append(value)
                return
            child: Any = {}
            node.append(child)
            node = child
            continue
        if last:
            _assign_flat(node, part, value)
            return
        next_is_list = parts[index + 1] == ""
        existing = node.get(part)
        if next_is_list and not isinstance(existing, list):
            node[part] = [] if existing is None else [existing]
        elif not next_is_list and not isinstance(existing, dict):
            node[part] = {} if existing is None else {"0": existing}
        node = node[part]
