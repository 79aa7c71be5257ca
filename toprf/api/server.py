"""FastAPI server for the OPRF node.

Endpoints:
- POST   /api/{module}/oprf/init           — Open a session, return partial commitments
  (requires a compatible X-Toprf-Protocol-Version header)
- POST   /api/{module}/oprf/finish         — Answer the aggregated challenge with a proof share
- DELETE /api/{module}/oprf/{request_id}   — Abandon an open session
- GET    /api/v1/info                      — Node identity and configured modules
- GET    /api/v1/oprf_public_key/{key_id}  — Latest public key held for a key id
- GET    /health                           — "healthy" once key event processing has started
- GET    /metrics                          — Prometheus metrics
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Protocol

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response
from starlette.responses import JSONResponse as StarletteJSONResponse

from toprf.api.metrics import metrics_response
from toprf.api.middleware import (
    BodySizeLimitMiddleware,
    RateLimiter,
    RateLimitMiddleware,
    RequestIdMiddleware,
    get_cors_origins,
)
from toprf.api.models import (
    InfoResponse,
    OprfFinishRequest,
    OprfFinishResponse,
    OprfInitRequest,
    OprfInitResponse,
    PublicKeyResponse,
)
from toprf.api.versioning import DEFAULT_VERSION_REQUIREMENT, PROTOCOL_VERSION_HEADER, VersionRequirement
from toprf.core.auth import AuthError
from toprf.core.key_material import format_key_id, parse_key_id
from toprf.core.oprf_service import (
    InvalidRequestError,
    KeyIdMismatchError,
    OprfNodeService,
    SessionConflictError,
    SessionNotFoundError,
    UnknownModuleError,
)
from toprf.core.secret_manager import KeyMaterialNotFoundError, SecretManager, SecretManagerError
from toprf.utils.curve import InvalidPointError

log = structlog.get_logger()


class StartedService(Protocol):
    @property
    def started(self) -> bool: ...


def create_app(
    oprf_service: OprfNodeService,
    secret_manager: SecretManager,
    started_services: Sequence[StartedService] = (),
    wallet_address: str = "",
    cors_origins: str = "",
    rate_limit_capacity: int = 200,
    rate_limit_rate: int = 100,
    session_cleanup_interval: float = 30.0,
    client_version_requirement: str = DEFAULT_VERSION_REQUIREMENT,
    max_request_bytes: int = 8192,
) -> FastAPI:
    """Create the FastAPI application with injected dependencies."""
    accepted_versions = VersionRequirement(client_version_requirement)

    async def _session_cleanup() -> None:
        while True:
            await asyncio.sleep(session_cleanup_interval)
            removed = oprf_service.cleanup_expired()
            if removed:
                log.info("oprf_sessions_expired", count=removed)

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        cleanup_task = asyncio.create_task(_session_cleanup())
        yield
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass

    from toprf import __version__

    app = FastAPI(
        title="Threshold OPRF Node",
        version=__version__,
        description="Distributed verifiable OPRF evaluation node",
        lifespan=_lifespan,
    )

    # Catch unhandled exceptions; never leak stack traces to clients
    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> StarletteJSONResponse:
        log.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return StarletteJSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(cors_origins),
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    limiter = RateLimiter(capacity=rate_limit_capacity, rate=rate_limit_rate)
    limiter.limit_group("public", capacity=30, rate=5)
    app.add_middleware(RateLimitMiddleware, limiter=limiter)
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=max_request_bytes)

    # Request ID tracing (outermost, so added last)
    app.add_middleware(RequestIdMiddleware)

    def _check_client_version(version: str | None) -> None:
        if version is None:
            raise HTTPException(status_code=400, detail=f"Missing {PROTOCOL_VERSION_HEADER} header")
        try:
            accepted = accepted_versions.matches(version)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not accepted:
            log.warning("client_version_rejected", client_version=version, accepted=str(accepted_versions))
            raise HTTPException(status_code=400, detail=f"Invalid version, expected: {accepted_versions}")

    @app.post("/api/{module}/oprf/init", response_model=OprfInitResponse)
    async def oprf_init(
        module: str,
        req: OprfInitRequest,
        http_request: Request,
    ) -> OprfInitResponse:
        _check_client_version(http_request.headers.get(PROTOCOL_VERSION_HEADER))
        try:
            request = req.to_domain()
        except (InvalidPointError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        try:
            response = await oprf_service.init_session(module, request)
        except UnknownModuleError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except AuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
        except KeyIdMismatchError as e:
            raise HTTPException(status_code=403, detail=str(e))
        except KeyMaterialNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidRequestError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SessionConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except SecretManagerError as e:
            log.error("secret_manager_error", error=str(e), module=module)
            raise HTTPException(status_code=500, detail="Key material unavailable")
        return OprfInitResponse.from_domain(response)

    @app.post("/api/{module}/oprf/finish", response_model=OprfFinishResponse)
    async def oprf_finish(module: str, req: OprfFinishRequest) -> OprfFinishResponse:
        try:
            request = req.to_domain()
        except (InvalidPointError, ValueError) as e:
            oprf_service.abort_session(module, req.request_id)
            raise HTTPException(status_code=400, detail=str(e))
        try:
            response = oprf_service.finish_session(module, request)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidRequestError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return OprfFinishResponse.from_domain(response)

    @app.delete("/api/{module}/oprf/{request_id}")
    async def oprf_abort(module: str, request_id: uuid.UUID) -> dict:
        return {"request_id": str(request_id), "aborted": oprf_service.abort_session(module, request_id)}

    @app.get("/api/v1/info", response_model=InfoResponse)
    async def info() -> InfoResponse:
        return InfoResponse(
            version=__version__,
            party_id=oprf_service.party_id,
            wallet_address=wallet_address,
            modules=oprf_service.modules,
            open_sessions=oprf_service.open_sessions,
        )

    @app.get("/api/v1/oprf_public_key/{key_id}", response_model=PublicKeyResponse)
    async def oprf_public_key(key_id: str) -> PublicKeyResponse:
        try:
            parsed = parse_key_id(key_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid key id")
        try:
            material = await secret_manager.latest_oprf_key_material(parsed)
        except KeyMaterialNotFoundError:
            raise HTTPException(status_code=404, detail=f"Unknown key {format_key_id(parsed)}")
        return PublicKeyResponse(
            key_id=format_key_id(material.key_id),
            epoch=material.epoch,
            public_key=material.public_key.to_hex(),
            threshold=material.threshold,
            num_parties=material.num_parties,
        )

    @app.get("/health")
    async def health() -> PlainTextResponse:
        """Plain-text liveness: 503 until background services finished their first cycle."""
        headers = {"Cache-Control": "no-cache"}
        if all(s.started for s in started_services):
            return PlainTextResponse("healthy", status_code=200, headers=headers)
        return PlainTextResponse("starting", status_code=503, headers=headers)

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=metrics_response(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
