"""Pydantic request/response models for the OPRF node REST API.

Points travel as 128 hex characters (``x || y``), scalars as 64. Models only
check the encoding; curve and subgroup membership are checked when a model is
converted into domain types.
"""

from __future__ import annotations

import re
import uuid
from typing import Any

from pydantic import BaseModel, Field, field_validator

from toprf.core.dleq import DLogCommitments, DLogProofShare, PartialDLogCommitments
from toprf.core.key_material import MAX_PARTY_ID, ShareEpoch, ShareIdentifier, format_key_id, parse_key_id
from toprf.core.messages import ChallengeRequest, ChallengeResponse, OprfRequest, OprfResponse
from toprf.utils.crypto import scalar_from_hex, scalar_to_bytes
from toprf.utils.curve import Point

_POINT_RE = re.compile(r"^[0-9a-fA-F]{128}$")
_SCALAR_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_KEY_ID_RE = re.compile(r"^0x[0-9a-fA-F]{1,40}$")


def _validate_point(v: str) -> str:
    if not _POINT_RE.match(v):
        raise ValueError("point must be 128 hex characters")
    return v.lower()


def _validate_scalar(v: str) -> str:
    if not _SCALAR_RE.match(v):
        raise ValueError("scalar must be 64 hex characters")
    return v.lower()


class ShareIdentifierModel(BaseModel):
    key_id: str
    epoch: int = Field(ge=0, le=2**32 - 1)

    @field_validator("key_id")
    @classmethod
    def validate_key_id(cls, v: str) -> str:
        if not _KEY_ID_RE.match(v):
            raise ValueError("key_id must be a 0x-prefixed hex uint160")
        return v.lower()

    def to_domain(self) -> ShareIdentifier:
        return ShareIdentifier(key_id=parse_key_id(self.key_id), epoch=ShareEpoch(self.epoch))

    @classmethod
    def from_domain(cls, ident: ShareIdentifier) -> ShareIdentifierModel:
        return cls(key_id=format_key_id(ident.key_id), epoch=ident.epoch)


class OprfInitRequest(BaseModel):
    """POST /api/{module}/oprf/init"""

    request_id: uuid.UUID
    blinded_query: str
    share_identifier: ShareIdentifierModel
    auth: dict[str, Any] = Field(default_factory=dict)

    @field_validator("blinded_query")
    @classmethod
    def validate_blinded_query(cls, v: str) -> str:
        return _validate_point(v)

    def to_domain(self) -> OprfRequest:
        return OprfRequest(
            request_id=self.request_id,
            blinded_query=Point.from_hex(self.blinded_query),
            share_identifier=self.share_identifier.to_domain(),
            auth=self.auth,
        )

    @classmethod
    def from_domain(cls, request: OprfRequest) -> OprfInitRequest:
        return cls(
            request_id=request.request_id,
            blinded_query=request.blinded_query.to_hex(),
            share_identifier=ShareIdentifierModel.from_domain(request.share_identifier),
            auth=request.auth,
        )


class PartialCommitmentsModel(BaseModel):
    party_id: int = Field(ge=1, le=MAX_PARTY_ID)
    c: str
    d1: str
    d2: str
    e1: str
    e2: str

    @field_validator("c", "d1", "d2", "e1", "e2")
    @classmethod
    def validate_points(cls, v: str) -> str:
        return _validate_point(v)


class OprfInitResponse(BaseModel):
    request_id: uuid.UUID
    commitments: PartialCommitmentsModel
    oprf_public_key: str
    epoch: int = Field(ge=0)

    @field_validator("oprf_public_key")
    @classmethod
    def validate_public_key(cls, v: str) -> str:
        return _validate_point(v)

    def to_domain(self) -> OprfResponse:
        c = self.commitments
        return OprfResponse(
            request_id=self.request_id,
            commitments=PartialDLogCommitments(
                party_id=c.party_id,
                c=Point.from_hex(c.c),
                d1=Point.from_hex(c.d1),
                d2=Point.from_hex(c.d2),
                e1=Point.from_hex(c.e1),
                e2=Point.from_hex(c.e2),
            ),
            oprf_public_key=Point.from_hex(self.oprf_public_key),
            epoch=self.epoch,
        )

    @classmethod
    def from_domain(cls, response: OprfResponse) -> OprfInitResponse:
        c = response.commitments
        return cls(
            request_id=response.request_id,
            commitments=PartialCommitmentsModel(
                party_id=c.party_id,
                c=c.c.to_hex(),
                d1=c.d1.to_hex(),
                d2=c.d2.to_hex(),
                e1=c.e1.to_hex(),
                e2=c.e2.to_hex(),
            ),
            oprf_public_key=response.oprf_public_key.to_hex(),
            epoch=response.epoch,
        )


class ChallengeModel(BaseModel):
    c: str
    d1: str
    d2: str
    e1: str
    e2: str
    parties: list[int] = Field(min_length=1, max_length=MAX_PARTY_ID)

    @field_validator("c", "d1", "d2", "e1", "e2")
    @classmethod
    def validate_points(cls, v: str) -> str:
        return _validate_point(v)

    @field_validator("parties")
    @classmethod
    def validate_parties(cls, v: list[int]) -> list[int]:
        for p in v:
            if not 1 <= p <= MAX_PARTY_ID:
                raise ValueError(f"party ids must be 1-{MAX_PARTY_ID}, got {p}")
        return v


class OprfFinishRequest(BaseModel):
    """POST /api/{module}/oprf/finish"""

    request_id: uuid.UUID
    challenge: ChallengeModel

    def to_domain(self) -> ChallengeRequest:
        ch = self.challenge
        return ChallengeRequest(
            request_id=self.request_id,
            challenge=DLogCommitments(
                c=Point.from_hex(ch.c),
                d1=Point.from_hex(ch.d1, allow_identity=True),
                d2=Point.from_hex(ch.d2, allow_identity=True),
                e1=Point.from_hex(ch.e1, allow_identity=True),
                e2=Point.from_hex(ch.e2, allow_identity=True),
                parties=tuple(ch.parties),
            ),
        )

    @classmethod
    def from_domain(cls, request: ChallengeRequest) -> OprfFinishRequest:
        ch = request.challenge
        return cls(
            request_id=request.request_id,
            challenge=ChallengeModel(
                c=ch.c.to_hex(),
                d1=ch.d1.to_hex(),
                d2=ch.d2.to_hex(),
                e1=ch.e1.to_hex(),
                e2=ch.e2.to_hex(),
                parties=list(ch.parties),
            ),
        )


class OprfFinishResponse(BaseModel):
    request_id: uuid.UUID
    party_id: int = Field(ge=1, le=MAX_PARTY_ID)
    s: str

    @field_validator("s")
    @classmethod
    def validate_s(cls, v: str) -> str:
        return _validate_scalar(v)

    def to_domain(self) -> ChallengeResponse:
        return ChallengeResponse(
            request_id=self.request_id,
            proof_share=DLogProofShare(party_id=self.party_id, s=scalar_from_hex(self.s)),
        )

    @classmethod
    def from_domain(cls, response: ChallengeResponse) -> OprfFinishResponse:
        return cls(
            request_id=response.request_id,
            party_id=response.proof_share.party_id,
            s=scalar_to_bytes(response.proof_share.s).hex(),
        )


class PublicKeyResponse(BaseModel):
    key_id: str
    epoch: int
    public_key: str
    threshold: int
    num_parties: int


class InfoResponse(BaseModel):
    version: str
    party_id: int
    wallet_address: str
    modules: list[str]
    open_sessions: int
