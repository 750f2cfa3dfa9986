"""
Transport-boundary middleware: origin allow-list and request size ceiling
"""
import logging
from typing import Iterable

from starlette.datastructures import Headers
from fastapi import HTTPException
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)


class OriginAllowListMiddleware:
    """Answer 403 to browser requests from origins outside the allow-list.

    Requests without an Origin header (server-to-server, CLI) pass through;
    CORS response headers are left to CORSMiddleware.
    """

    def __init__(self, app: ASGIApp, allow_origins: Iterable[str]):
        self.app = app
        self.allow_origins = {origin.rstrip("/") for origin in allow_origins}
        self.allow_all = "*" in self.allow_origins

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] not in ("http", "websocket") or self.allow_all:
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")
        if origin is None or origin.rstrip("/") in self.allow_origins:
            await self.app(scope, receive, send)
            return

        logger.warning(f"Rejected request from origin {origin}")
        if scope["type"] == "websocket":
            await send({"type": "websocket.close", "code": 1008})
            return

        response = JSONResponse({"detail": "Origin not allowed"}, status_code=403)
        await response(scope, receive, send)


class RequestTooLarge(HTTPException):
    """Raised mid-stream; an HTTPException so FastAPI body parsing re-raises it as-is"""

    def __init__(self, max_bytes: int):
        super().__init__(
            status_code=413,
            detail=f"Request body exceeds the {max_bytes} byte limit",
        )


class BodySizeLimitMiddleware:
    """Reject request bodies above ``max_bytes`` before the handler runs"""

    def __init__(self, app: ASGIApp, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = Headers(scope=scope).get("content-length")
        if content_length is not None and content_length.isdigit() and int(content_length) > self.max_bytes:
            await self._reject(scope, receive, send)
            return

        # chunked bodies carry no length up front; count as they stream in
        received = 0
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    raise RequestTooLarge(self.max_bytes)
            return message

        async def tracking_send(message: Message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, tracking_send)
        except RequestTooLarge:
            if response_started:
                raise
            await self._reject(scope, receive, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send):
        response = JSONResponse(
            {"detail": f"Request body exceeds the {self.max_bytes} byte limit"},
            status_code=413,
        )
        await response(scope, receive, send)
