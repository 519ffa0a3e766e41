"""ASGI middleware applying the relay's CORS policy to every response."""

from __future__ import annotations

import logging
from typing import Sequence

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

ALLOW_METHODS = "POST, OPTIONS, GET"
ALLOW_HEADERS = "Content-Type, Authorization"
MAX_AGE = "86400"


class RelayCORSMiddleware:
    """Echo the caller's origin (credentialed) or fall back to ``*``.

    Preflight requests are answered here and never reach a route. When an
    allowlist is configured, requests from other origins are refused with 403
    before any route runs. Failures that escape the application still get an
    error envelope with CORS headers so browsers can read them.
    """

    def __init__(self, app: ASGIApp, *, allowed_origins: Sequence[str] = ()) -> None:
        self.app = app
        self.allowed_origins = frozenset(
            origin.rstrip("/") for origin in allowed_origins if origin
        )

    def origin_allowed(self, origin: str | None) -> bool:
        if not origin or not self.allowed_origins:
            return True
        return origin.rstrip("/") in self.allowed_origins

    def cors_headers(self, origin: str | None) -> dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": ALLOW_METHODS,
            "Access-Control-Allow-Headers": ALLOW_HEADERS,
            "Access-Control-Max-Age": MAX_AGE,
        }
        if not origin:
            headers["Access-Control-Allow-Origin"] = "*"
            return headers
        headers["Vary"] = "Origin"
        if not self.origin_allowed(origin):
            return headers
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
        return headers

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        origin = Headers(scope=scope).get("origin")
        cors_headers = self.cors_headers(origin)

        if not self.origin_allowed(origin):
            logger.info("Rejecting %s %s from origin %s", method, scope.get("path"), origin)
            response = JSONResponse(
                {"error": "Origin not allowed"},
                status_code=403,
                headers=cors_headers,
            )
            await response(scope, receive, send)
            return

        if method == "OPTIONS":
            response = Response(status_code=200, headers=cors_headers)
            await response(scope, receive, send)
            return

        response_started = False

        async def send_with_cors(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                headers = MutableHeaders(scope=message)
                for key, value in cors_headers.items():
                    headers[key] = value
            await send(message)

        try:
            await self.app(scope, receive, send_with_cors)
        except Exception:
            logger.exception("Unhandled error serving %s %s", method, scope.get("path"))
            if response_started:
                raise
            response = JSONResponse(
                {"error": "Internal server error"},
                status_code=500,
                headers=cors_headers,
            )
            await response(scope, receive, send)


__all__ = ["RelayCORSMiddleware"]
