"""Messages exchanged between the OPRF client and a node, transport independent."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from toprf.core.dleq import DLogCommitments, DLogProofShare, PartialDLogCommitments
from toprf.core.key_material import ShareIdentifier
from toprf.utils.curve import Point


@dataclass(frozen=True)
class OprfRequest:
    request_id: uuid.UUID
    blinded_query: Point
    share_identifier: ShareIdentifier
    auth: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OprfResponse:
    request_id: uuid.UUID
    commitments: PartialDLogCommitments
    oprf_public_key: Point
    epoch: int

    @property
    def party_id(self) -> int:
        return self.commitments.party_id


@dataclass(frozen=True)
class ChallengeRequest:
    request_id: uuid.UUID
    challenge: DLogCommitments


@dataclass(frozen=True)
class ChallengeResponse:
    request_id: uuid.UUID
    proof_share: DLogProofShare
