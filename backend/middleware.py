"""
HTTP middleware: security headers, request body cap and rate limiting.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from errors import RateLimited

logger = logging.getLogger(__name__)


def get_client_ip(request: Request, trust_proxy_headers: bool = True) -> str:
    """Client address, honouring X-Forwarded-For when running behind a reverse proxy."""
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "anonymous"


class FixedWindowRateLimiter:
    """In-memory per-key request counter over fixed time windows."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> tuple[bool, float]:
        """Count a request. Returns (allowed, seconds until the window resets)."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            if len(self._windows) > 10000:
                self._prune(now)
        retry_after = max(0.0, started + self.window_seconds - now)
        return count <= self.limit, retry_after

    def _prune(self, now: float) -> None:
        expired = [k for k, (s, _) in self._windows.items() if now - s >= self.window_seconds]
        for key in expired:
            del self._windows[key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


@dataclass
class RateLimitRule:
    path_prefix: str
    limiter: FixedWindowRateLimiter
    message: str


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply every rule whose prefix matches the request path."""

    def __init__(self, app: ASGIApp, *, rules: list[RateLimitRule], trust_proxy_headers: bool = True) -> None:
        super().__init__(app)
        self._rules = rules
        self._trust_proxy_headers = trust_proxy_headers

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        path = request.url.path
        client_ip = get_client_ip(request, self._trust_proxy_headers)
        for rule in self._rules:
            if not path.startswith(rule.path_prefix):
                continue
            allowed, retry_after = rule.limiter.hit(client_ip)
            if not allowed:
                logger.warning("[RATE] %s exceeded limit on %s", client_ip, rule.path_prefix)
                return JSONResponse(
                    status_code=RateLimited.status_code,
                    content={"error": rule.message},
                    headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
                )
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response


async def _drain_request_body(receive: Receive, initial: Message) -> None:
    more_body = bool(initial.get("more_body"))
    while more_body:
        message = await receive()
        more_body = bool(message.get("more_body"))


class BodySizeLimitMiddleware:
    """
    Reject requests whose body exceeds max_bytes.

    A declared Content-Length is checked up front. Bodies without one
    (chunked transfer encoding) are buffered and counted as they arrive,
    then replayed to the application.
    """

    def __init__(self, app: ASGIApp, *, max_bytes: int) -> None:
        self.app = app
        self._max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length: Optional[str] = Headers(scope=scope).get("content-length")
        if length is not None:
            try:
                too_large = int(length) > self._max_bytes
            except ValueError:
                response = JSONResponse(status_code=400, content={"error": "Invalid Content-Length"})
                await response(scope, receive, send)
                return
            if too_large:
                await self._reject(scope, receive, send)
                return
            await self.app(scope, receive, send)
            return

        buffered: list[Message] = []
        received = 0
        while True:
            message = await receive()
            buffered.append(message)
            if message["type"] != "http.request":
                break
            received += len(message.get("body", b""))
            if received > self._max_bytes:
                await _drain_request_body(receive, message)
                await self._reject(scope, receive, send)
                return
            if not message.get("more_body", False):
                break

        async def replay_receive() -> Message:
            if buffered:
                return buffered.pop(0)
            return await receive()

        await self.app(scope, replay_receive, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.warning("[HTTP] Rejected %s %s: body over %d bytes", scope.get("method"), scope.get("path"), self._max_bytes)
        response = JSONResponse(status_code=413, content={"error": "Request body too large"})
        await response(scope, receive, send)
