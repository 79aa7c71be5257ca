"""Tests for API middleware (request ids, rate limiting, body size cap, CORS)."""

from __future__ import annotations

import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from toprf.api.middleware import (
    BodySizeLimitMiddleware,
    RateLimitMiddleware,
    RateLimiter,
    RequestIdMiddleware,
    TokenBucket,
    get_cors_origins,
    rate_group,
)


class TestTokenBucket:
    def test_initial_capacity(self) -> None:
        b = TokenBucket(capacity=10, refill_rate=1)
        assert b.tokens == 10

    def test_consume_within_capacity(self) -> None:
        b = TokenBucket(capacity=3, refill_rate=0.001)
        for _ in range(3):
            assert b.consume() is True
        assert b.consume() is False

    def test_refill(self) -> None:
        b = TokenBucket(capacity=1, refill_rate=100)
        assert b.consume() is True
        assert b.consume() is False
        b.last_refill = time.monotonic() - 1.0
        assert b.consume() is True


class TestRateGroup:
    @pytest.mark.parametrize(
        "method,path,expected",
        [
            ("POST", "/api/default/oprf/init", "init:default"),
            ("POST", "/api/login/oprf/init", "init:login"),
            ("POST", "/api/default/oprf/finish", None),
            ("DELETE", "/api/default/oprf/0f6c2a44-8c1e-4a5e-9a55-7f0d3c1e2b11", None),
            ("GET", "/api/v1/info", "public"),
            ("GET", "/api/v1/oprf_public_key/0x2a", "public"),
            ("GET", "/health", None),
            ("GET", "/metrics", None),
        ],
    )
    def test_classification(self, method: str, path: str, expected: str | None) -> None:
        assert rate_group(method, path) == expected


class TestRateLimiter:
    def test_separate_buckets_per_client(self) -> None:
        limiter = RateLimiter(capacity=1, rate=0.001)
        assert limiter.allow("1.1.1.1", "init:default") is True
        assert limiter.allow("1.1.1.1", "init:default") is False
        assert limiter.allow("2.2.2.2", "init:default") is True

    def test_separate_buckets_per_module(self) -> None:
        limiter = RateLimiter(capacity=1, rate=0.001)
        assert limiter.allow("1.1.1.1", "init:default") is True
        assert limiter.allow("1.1.1.1", "init:login") is True

    def test_group_limit_overrides_default(self) -> None:
        limiter = RateLimiter(capacity=1, rate=0.001)
        limiter.limit_group("public", capacity=3, rate=0.001)
        results = [limiter.allow("1.1.1.1", "public") for _ in range(4)]
        assert results == [True, True, True, False]

    def test_least_recently_used_bucket_dropped(self) -> None:
        limiter = RateLimiter(capacity=1, rate=0.001, max_buckets=2)
        limiter.allow("1.1.1.1", "public")
        limiter.allow("2.2.2.2", "public")
        limiter.allow("1.1.1.1", "public")
        limiter.allow("3.3.3.3", "public")
        assert len(limiter) == 2
        # 2.2.2.2 was evicted and starts with a full bucket again
        assert limiter.allow("2.2.2.2", "public") is True
        assert limiter.allow("3.3.3.3", "public") is False


def _app(limiter: RateLimiter, max_bytes: int = 1024) -> FastAPI:
    app = FastAPI()

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/{module}/oprf/init")
    async def init(module: str) -> dict:
        return {"module": module}

    @app.post("/api/{module}/oprf/finish")
    async def finish(module: str) -> dict:
        return {"module": module}

    app.add_middleware(RateLimitMiddleware, limiter=limiter)
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=max_bytes)
    app.add_middleware(RequestIdMiddleware)
    return app


class TestMiddlewareStack:
    def test_request_id_generated(self) -> None:
        client = TestClient(_app(RateLimiter()))
        resp = client.post("/api/default/oprf/init")
        assert resp.status_code == 200
        assert len(resp.headers["X-Request-ID"]) == 32

    def test_request_id_propagated(self) -> None:
        client = TestClient(_app(RateLimiter()))
        resp = client.get("/health", headers={"X-Request-ID": "trace-abc"})
        assert resp.headers["X-Request-ID"] == "trace-abc"

    def test_init_rate_limited(self) -> None:
        client = TestClient(_app(RateLimiter(capacity=1, rate=0.001)))
        assert client.post("/api/default/oprf/init").status_code == 200
        resp = client.post("/api/default/oprf/init")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "1"
        assert "X-Request-ID" in resp.headers

    def test_finish_not_limited(self) -> None:
        client = TestClient(_app(RateLimiter(capacity=1, rate=0.001)))
        for _ in range(5):
            assert client.post("/api/default/oprf/finish").status_code == 200

    def test_health_not_limited(self) -> None:
        client = TestClient(_app(RateLimiter(capacity=1, rate=0.001)))
        for _ in range(5):
            assert client.get("/health").status_code == 200


class TestBodySizeLimit:
    def test_body_at_limit_accepted(self) -> None:
        client = TestClient(_app(RateLimiter(), max_bytes=64))
        resp = client.post("/api/default/oprf/finish", content=b"x" * 64)
        assert resp.status_code == 200

    def test_oversized_body_rejected(self) -> None:
        client = TestClient(_app(RateLimiter(), max_bytes=64))
        resp = client.post("/api/default/oprf/init", content=b"x" * 65)
        assert resp.status_code == 413
        assert "64 bytes" in resp.json()["detail"]
        assert "X-Request-ID" in resp.headers

    def test_oversized_chunked_body_rejected(self) -> None:
        client = TestClient(_app(RateLimiter(), max_bytes=64))
        resp = client.post("/api/default/oprf/init", content=iter([b"x" * 40, b"x" * 40]))
        assert resp.status_code == 413

    def test_get_not_checked(self) -> None:
        client = TestClient(_app(RateLimiter(), max_bytes=1))
        assert client.get("/health").status_code == 200


class TestCorsOrigins:
    def test_empty_allows_all(self) -> None:
        assert get_cors_origins("") == ["*"]

    def test_parses_list(self) -> None:
        assert get_cors_origins("https://a.example, https://b.example,") == [
            "https://a.example",
            "https://b.example",
        ]
