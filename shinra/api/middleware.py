"""Plain ASGI middleware for request limits and access logging.

Written as raw ASGI rather than ``@app.middleware("http")`` so streamed
media responses pass through untouched: no extra buffering between the
proxy and the client, and client disconnects reach the streaming body.
"""

import logging
import time
from urllib.parse import parse_qsl

from fastapi.responses import JSONResponse

from shinra.errors import error_envelope

http_logger = logging.getLogger("http")

_CORS_HEADERS = {"access-control-allow-origin": "*"}


class RequestLimitsMiddleware:
    """Reject over-long ``url=`` targets and oversized request bodies early.

    The resolver enforces the URL limit again; this check keeps obviously
    bad requests from reaching the router at all.
    """

    def __init__(self, app, max_url_length: int, max_body_bytes: int):
        self.app = app
        self.max_url_length = max_url_length
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        query = scope.get("query_string", b"").decode("latin-1")
        if query:
            for key, value in parse_qsl(query, keep_blank_values=True):
                if key == "url" and len(value) > self.max_url_length:
                    response = JSONResponse(
                        error_envelope("INVALID_TARGET", 400, "URL too long"),
                        status_code=400,
                        headers=_CORS_HEADERS,
                    )
                    await response(scope, receive, send)
                    return

        for name, value in scope.get("headers", []):
            if name == b"content-length":
                try:
                    too_large = int(value) > self.max_body_bytes
                except ValueError:
                    too_large = False
                if too_large:
                    response = JSONResponse(
                        error_envelope("PAYLOAD_TOO_LARGE", 413, "Request body too large"),
                        status_code=413,
                        headers=_CORS_HEADERS,
                    )
                    await response(scope, receive, send)
                    return
                break

        await self.app(scope, receive, send)


class RequestLogMiddleware:
    """Log one line per request once the response has started."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.monotonic()
        status = {"code": None}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
                http_logger.info(
                    "%s %s %d %.1fms",
                    scope["method"], scope["path"], message["status"],
                    (time.monotonic() - start) * 1000,
                )
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            if status["code"] is None:
                http_logger.warning(
                    "%s %s aborted before response after %.1fms",
                    scope["method"], scope["path"], (time.monotonic() - start) * 1000,
                )
