"""HTTP middleware for the node API.

Provides:
- Request ID tracing bound into structlog context, plus request metrics
- Per-client rate limiting of OPRF session openings and public lookups
- Request body size cap
- CORS configuration helper
"""

from __future__ import annotations

import re
import time
import uuid
from collections import OrderedDict
from typing import Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from toprf.api.metrics import REQUEST_COUNT, REQUEST_LATENCY

log = structlog.get_logger()

_SESSION_INIT = re.compile(r"^/api/([^/]+)/oprf/init$")


def _endpoint_label(request: Request) -> str:
    """Route template rather than raw path, so metric label cardinality stays bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach an X-Request-ID to every request and response, and record request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(http_request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("http_request_id")
        endpoint = _endpoint_label(request)
        REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.perf_counter() - start)
        response.headers["X-Request-ID"] = request_id
        return response


class TokenBucket:
    """Token bucket refilled continuously at ``refill_rate`` tokens per second."""

    __slots__ = ("capacity", "refill_rate", "tokens", "last_refill")

    def __init__(self, capacity: float, refill_rate: float) -> None:
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = capacity
        self.last_refill = time.monotonic()

    def consume(self, n: float = 1.0) -> bool:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now
        if self.tokens < n:
            return False
        self.tokens -= n
        return True


def rate_group(method: str, path: str) -> str | None:
    """Rate group for a request, or ``None`` when it is not limited.

    Each module's session init has its own group; finish and abort requests
    are not limited.
    """
    if path.startswith("/api/v1/"):
        return "public"
    if method == "POST":
        match = _SESSION_INIT.match(path)
        if match:
            return f"init:{match.group(1)}"
    return None


class RateLimiter:
    """Per-client token buckets, one per rate group.

    Buckets are kept in LRU order and the least recently used are dropped
    once ``max_buckets`` is exceeded; a dropped client simply starts again
    with a full bucket.
    """

    def __init__(self, capacity: float = 60, rate: float = 10, max_buckets: int = 10_000) -> None:
        self._default = (capacity, rate)
        self._group_limits: dict[str, tuple[float, float]] = {}
        self._buckets: OrderedDict[tuple[str, str], TokenBucket] = OrderedDict()
        self._max_buckets = max_buckets

    def limit_group(self, group: str, capacity: float, rate: float) -> None:
        self._group_limits[group] = (capacity, rate)

    def allow(self, client: str, group: str) -> bool:
        key = (client, group)
        bucket = self._buckets.get(key)
        if bucket is None:
            capacity, rate = self._group_limits.get(group, self._default)
            bucket = self._buckets[key] = TokenBucket(capacity, rate)
            if len(self._buckets) > self._max_buckets:
                self._buckets.popitem(last=False)
        else:
            self._buckets.move_to_end(key)
        return bucket.consume()

    def __len__(self) -> int:
        return len(self._buckets)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: object, limiter: RateLimiter) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        group = rate_group(request.method, request.url.path)
        if group is None:
            return await call_next(request)
        client = request.client.host if request.client else "unknown"
        if not self._limiter.allow(client, group):
            log.warning("rate_limited", client_ip=client, group=group)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests"},
                headers={"Retry-After": "1"},
            )
        return await call_next(request)


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject request bodies larger than ``max_bytes`` with 413."""

    def __init__(self, app: object, max_bytes: int) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method not in ("POST", "PUT", "PATCH"):
            return await call_next(request)
        declared = request.headers.get("content-length")
        if declared is None:
            size = len(await request.body())
        else:
            try:
                size = int(declared)
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})
        if size > self._max_bytes:
            client = request.client.host if request.client else "unknown"
            log.warning("request_body_too_large", client_ip=client, size=size, limit=self._max_bytes)
            return JSONResponse(
                status_code=413,
                content={"detail": f"Request body exceeds {self._max_bytes} bytes"},
            )
        return await call_next(request)


def get_cors_origins(env_value: str = "") -> list[str]:
    """Parse CORS origins; browser clients call the OPRF endpoints directly."""
    if not env_value:
        return ["*"]
    return [o.strip() for o in env_value.split(",") if o.strip()]
