"""Request authenticators resolving an OPRF request to the key it may use.

Each OPRF module is configured with one authenticator. The node only
evaluates when the resolved key id equals the key id the request asks for.
"""

from __future__ import annotations

import abc
import hashlib
import hmac
import time
import uuid
from typing import Any

from toprf.core.key_material import OprfKeyId, format_key_id, parse_key_id
from toprf.core.messages import OprfRequest


class AuthError(Exception):
    """The request's auth payload was rejected."""


class OprfRequestAuthenticator(abc.ABC):
    @abc.abstractmethod
    async def authenticate(self, request: OprfRequest) -> OprfKeyId:
        """Return the key id this request is entitled to, or raise AuthError."""


class PassThroughAuthenticator(OprfRequestAuthenticator):
    """Grants whatever key the request names. Dev and test deployments only."""

    async def authenticate(self, request: OprfRequest) -> OprfKeyId:
        return request.share_identifier.key_id


def _token_message(key_id: int, request_id: uuid.UUID, expires_at: int) -> bytes:
    return f"{format_key_id(key_id)}:{request_id}:{expires_at}".encode()


def create_auth_token(
    secret: bytes,
    key_id: int,
    request_id: uuid.UUID,
    expires_at: int,
) -> dict[str, Any]:
    """Issue the auth payload accepted by :class:`HmacTokenAuthenticator`."""
    token = hmac.new(secret, _token_message(key_id, request_id, expires_at), hashlib.sha256).hexdigest()
    return {"key_id": format_key_id(key_id), "expires_at": expires_at, "token": token}


class HmacTokenAuthenticator(OprfRequestAuthenticator):
    """Tokens issued by a relying party sharing ``secret`` with the nodes.

    A token binds one key id to one request id until ``expires_at`` (unix
    seconds), so it cannot be replayed for another request.
    """

    def __init__(self, secret: bytes, max_validity: int = 300) -> None:
        if len(secret) < 16:
            raise ValueError("HMAC secret must be at least 16 bytes")
        self._secret = secret
        self._max_validity = max_validity

    async def authenticate(self, request: OprfRequest) -> OprfKeyId:
        auth = request.auth
        try:
            key_id = parse_key_id(auth["key_id"])
            expires_at = int(auth["expires_at"])
            token = str(auth["token"])
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError("Malformed auth payload") from exc

        now = int(time.time())
        if expires_at < now:
            raise AuthError("Auth token expired")
        if expires_at - now > self._max_validity:
            raise AuthError("Auth token validity too long")

        expected = hmac.new(
            self._secret, _token_message(key_id, request.request_id, expires_at), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, token):
            raise AuthError("Invalid auth token")
        return key_id
