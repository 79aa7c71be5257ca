"""Tests for OPRF request authenticators."""

from __future__ import annotations

import time
import uuid

import pytest

from toprf.core.auth import AuthError, HmacTokenAuthenticator, PassThroughAuthenticator, create_auth_token
from toprf.core.key_material import OprfKeyId, ShareEpoch, ShareIdentifier
from toprf.core.messages import OprfRequest
from toprf.utils.curve import GENERATOR

SECRET = b"0123456789abcdef-secret"


def _request(key_id: int = 0x10, auth: dict | None = None, request_id: uuid.UUID | None = None) -> OprfRequest:
    return OprfRequest(
        request_id=request_id or uuid.uuid4(),
        blinded_query=GENERATOR,
        share_identifier=ShareIdentifier(OprfKeyId(key_id), ShareEpoch(1)),
        auth=auth or {},
    )


class TestPassThrough:
    @pytest.mark.asyncio
    async def test_grants_requested_key(self) -> None:
        assert await PassThroughAuthenticator().authenticate(_request(0x99)) == 0x99


class TestHmacToken:
    @pytest.mark.asyncio
    async def test_valid_token(self) -> None:
        rid = uuid.uuid4()
        auth = create_auth_token(SECRET, 0x10, rid, int(time.time()) + 60)
        assert await HmacTokenAuthenticator(SECRET).authenticate(_request(auth=auth, request_id=rid)) == 0x10

    @pytest.mark.asyncio
    async def test_token_bound_to_request_id(self) -> None:
        auth = create_auth_token(SECRET, 0x10, uuid.uuid4(), int(time.time()) + 60)
        with pytest.raises(AuthError, match="Invalid auth token"):
            await HmacTokenAuthenticator(SECRET).authenticate(_request(auth=auth))

    @pytest.mark.asyncio
    async def test_wrong_secret(self) -> None:
        rid = uuid.uuid4()
        auth = create_auth_token(b"another-secret-of-16", 0x10, rid, int(time.time()) + 60)
        with pytest.raises(AuthError, match="Invalid auth token"):
            await HmacTokenAuthenticator(SECRET).authenticate(_request(auth=auth, request_id=rid))

    @pytest.mark.asyncio
    async def test_expired(self) -> None:
        rid = uuid.uuid4()
        auth = create_auth_token(SECRET, 0x10, rid, int(time.time()) - 1)
        with pytest.raises(AuthError, match="expired"):
            await HmacTokenAuthenticator(SECRET).authenticate(_request(auth=auth, request_id=rid))

    @pytest.mark.asyncio
    async def test_validity_too_long(self) -> None:
        rid = uuid.uuid4()
        auth = create_auth_token(SECRET, 0x10, rid, int(time.time()) + 3600)
        with pytest.raises(AuthError, match="too long"):
            await HmacTokenAuthenticator(SECRET, max_validity=300).authenticate(_request(auth=auth, request_id=rid))

    @pytest.mark.asyncio
    async def test_malformed(self) -> None:
        with pytest.raises(AuthError, match="Malformed"):
            await HmacTokenAuthenticator(SECRET).authenticate(_request(auth={"key_id": "0x10"}))

    @pytest.mark.asyncio
    async def test_token_for_other_key_resolves_other_key(self) -> None:
        # The node then rejects the mismatch; the authenticator only resolves
        rid = uuid.uuid4()
        auth = create_auth_token(SECRET, 0x20, rid, int(time.time()) + 60)
        assert await HmacTokenAuthenticator(SECRET).authenticate(_request(0x10, auth=auth, request_id=rid)) == 0x20

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            HmacTokenAuthenticator(b"short")
