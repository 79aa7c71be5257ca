"""Node-side OPRF evaluation.

A client session has two steps. ``init`` authenticates the request and
returns this node's partial commitments; ``finish`` takes the aggregated
challenge and returns the proof share. Between the steps the nonces live in
an open-session table keyed by request id, and each request id is used once.
"""

from __future__ import annotations

import random
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import structlog

from toprf.api.metrics import OPRF_OPEN_SESSIONS, OPRF_REQUESTS, OPRF_SESSION_DURATION
from toprf.core.auth import AuthError, OprfRequestAuthenticator
from toprf.core.dleq import DLogSession
from toprf.core.key_material import MAX_PARTY_ID, OprfKeyMaterial, format_key_id
from toprf.core.messages import ChallengeRequest, ChallengeResponse, OprfRequest, OprfResponse
from toprf.core.secret_manager import KeyMaterialNotFoundError, SecretManager
from toprf.utils.curve import InvalidPointError

log = structlog.get_logger()


class OprfSessionError(Exception):
    """Base for request errors reported back to the client."""


class UnknownModuleError(OprfSessionError):
    pass


class KeyIdMismatchError(OprfSessionError):
    pass


class InvalidRequestError(OprfSessionError):
    pass


class SessionConflictError(OprfSessionError):
    pass


class SessionNotFoundError(OprfSessionError):
    pass


@dataclass
class OpenSession:
    module: str
    dlog: DLogSession
    material: OprfKeyMaterial
    created_at: float


class OprfNodeService:
    def __init__(
        self,
        party_id: int,
        secret_manager: SecretManager,
        authenticators: Mapping[str, OprfRequestAuthenticator],
        session_lifetime: float = 60.0,
        max_open_sessions: int = 10_000,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 1 <= party_id <= MAX_PARTY_ID:
            raise ValueError(f"Party id must be in [1, {MAX_PARTY_ID}]")
        self.party_id = party_id
        self._secret_manager = secret_manager
        self._authenticators = dict(authenticators)
        self._session_lifetime = session_lifetime
        self._max_open_sessions = max_open_sessions
        self._rng = rng
        self._clock = clock
        self._sessions: dict[uuid.UUID, OpenSession] = {}

    @property
    def modules(self) -> list[str]:
        return sorted(self._authenticators)

    @property
    def open_sessions(self) -> int:
        return len(self._sessions)

    async def init_session(self, module: str, request: OprfRequest) -> OprfResponse:
        authenticator = self._authenticators.get(module)
        if authenticator is None:
            raise UnknownModuleError(f"Unknown module {module!r}")

        requested = request.share_identifier
        try:
            key_id = await authenticator.authenticate(request)
        except AuthError:
            OPRF_REQUESTS.labels(step="init", result="auth_failed").inc()
            log.warning("oprf_auth_failed", module=module, request_id=str(request.request_id))
            raise
        if key_id != requested.key_id:
            OPRF_REQUESTS.labels(step="init", result="auth_failed").inc()
            log.warning(
                "oprf_key_id_mismatch",
                module=module,
                request_id=str(request.request_id),
                requested=format_key_id(requested.key_id),
                authorized=format_key_id(key_id),
            )
            raise KeyIdMismatchError("Auth does not grant the requested key")

        try:
            material = await self._secret_manager.get_oprf_key_material(requested.key_id, requested.epoch)
        except KeyMaterialNotFoundError:
            OPRF_REQUESTS.labels(step="init", result="not_found").inc()
            raise

        try:
            blinded_query = request.blinded_query.validate()
        except InvalidPointError as exc:
            OPRF_REQUESTS.labels(step="init", result="invalid").inc()
            raise InvalidRequestError(f"Invalid blinded query: {exc}") from exc

        self.cleanup_expired()
        if request.request_id in self._sessions:
            OPRF_REQUESTS.labels(step="init", result="invalid").inc()
            raise SessionConflictError(f"Request id {request.request_id} already in use")
        if len(self._sessions) >= self._max_open_sessions:
            OPRF_REQUESTS.labels(step="init", result="error").inc()
            raise SessionConflictError("Too many open sessions")

        dlog, commitments = DLogSession.start(self.party_id, blinded_query, material.share, self._rng)
        self._sessions[request.request_id] = OpenSession(
            module=module,
            dlog=dlog,
            material=material,
            created_at=self._clock(),
        )
        OPRF_OPEN_SESSIONS.set(len(self._sessions))
        OPRF_REQUESTS.labels(step="init", result="ok").inc()
        log.debug(
            "oprf_session_opened",
            module=module,
            request_id=str(request.request_id),
            key_id=format_key_id(requested.key_id),
            epoch=requested.epoch,
        )
        return OprfResponse(
            request_id=request.request_id,
            commitments=commitments,
            oprf_public_key=material.public_key,
            epoch=material.epoch,
        )

    def finish_session(self, module: str, request: ChallengeRequest) -> ChallengeResponse:
        session = self._sessions.pop(request.request_id, None)
        OPRF_OPEN_SESSIONS.set(len(self._sessions))
        if session is None or session.module != module:
            OPRF_REQUESTS.labels(step="finish", result="not_found").inc()
            raise SessionNotFoundError(f"No open session for request {request.request_id}")
        try:
            if self._clock() - session.created_at > self._session_lifetime:
                raise SessionNotFoundError(f"Session for request {request.request_id} expired")

            challenge = request.challenge
            parties = challenge.parties
            if len(parties) != session.material.threshold:
                raise InvalidRequestError(
                    f"Challenge names {len(parties)} parties, key threshold is {session.material.threshold}"
                )
            if len(set(parties)) != len(parties) or list(parties) != sorted(parties):
                raise InvalidRequestError("Challenge parties must be sorted and unique")
            if self.party_id not in parties:
                raise InvalidRequestError("Challenge does not include this node")
            if any(not 1 <= p <= session.material.num_parties for p in parties):
                raise InvalidRequestError("Challenge names an unknown party")
            try:
                for point in challenge.points():
                    point.validate(allow_identity=True)
            except InvalidPointError as exc:
                raise InvalidRequestError(f"Invalid challenge point: {exc}") from exc

            share = session.dlog.challenge(
                request.request_id.bytes,
                challenge,
                session.material.share,
                session.material.public_key,
            )
        except OprfSessionError:
            OPRF_REQUESTS.labels(step="finish", result="invalid").inc()
            raise
        finally:
            session.dlog.wipe()

        OPRF_REQUESTS.labels(step="finish", result="ok").inc()
        OPRF_SESSION_DURATION.observe(self._clock() - session.created_at)
        return ChallengeResponse(request_id=request.request_id, proof_share=share)

    def abort_session(self, module: str, request_id: uuid.UUID) -> bool:
        session = self._sessions.get(request_id)
        if session is None or session.module != module:
            return False
        del self._sessions[request_id]
        session.dlog.wipe()
        OPRF_OPEN_SESSIONS.set(len(self._sessions))
        return True

    def cleanup_expired(self) -> int:
        """Drop sessions older than the session lifetime; return how many."""
        now = self._clock()
        expired = [rid for rid, s in self._sessions.items() if now - s.created_at > self._session_lifetime]
        for rid in expired:
            self._sessions.pop(rid).dlog.wipe()
        if expired:
            OPRF_OPEN_SESSIONS.set(len(self._sessions))
        return len(expired)
