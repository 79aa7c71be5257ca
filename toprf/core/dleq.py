"""Chaum-Pedersen discrete-log-equality proofs, single-party and distributed.

A proof ``(e, s)`` shows that ``log_G(A) == log_B(C)`` without revealing the
exponent. In the threshold setting each node holds a Shamir share ``x_i`` of
the key and two nonces ``d_i, e_i``. The client aggregates the per-node
commitments, derives one challenge, and sums the per-node proof shares into a
regular proof that verifies against the public key.
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass

from toprf.utils.crypto import (
    SUBGROUP_ORDER,
    hash_to_scalar,
    lagrange_coefficient,
    lagrange_coefficients,
    random_scalar,
)
from toprf.utils.curve import GENERATOR, Point, sum_points

_CHALLENGE_LABEL = b"toprf-dleq-challenge-v1"
_NONCE_COMBINER_LABEL = b"FROST_2_NONCE_COMBINER"


def challenge_hash(a: Point, b: Point, c: Point, d: Point, r1: Point, r2: Point) -> int:
    return hash_to_scalar(
        _CHALLENGE_LABEL,
        a.to_bytes(),
        b.to_bytes(),
        c.to_bytes(),
        d.to_bytes(),
        r1.to_bytes(),
        r2.to_bytes(),
    )


@dataclass(frozen=True)
class DLogEqualityProof:
    e: int
    s: int

    def verify(self, a: Point, b: Point, c: Point, d: Point = GENERATOR) -> bool:
        """Check the proof for ``a = d*x`` and ``c = b*x``."""
        if not (0 <= self.e < SUBGROUP_ORDER and 0 <= self.s < SUBGROUP_ORDER):
            return False
        r1 = d * self.s - a * self.e
        r2 = b * self.s - c * self.e
        return challenge_hash(a, b, c, d, r1, r2) == self.e


def prove(x: int, b: Point, rng: random.Random | None = None, d: Point = GENERATOR) -> DLogEqualityProof:
    """Single-party proof that ``b * x`` was computed with the key behind ``d * x``."""
    k = random_scalar(rng)
    a = d * x
    c = b * x
    e = challenge_hash(a, b, c, d, d * k, b * k)
    s = (k + e * x) % SUBGROUP_ORDER
    return DLogEqualityProof(e=e, s=s)


@dataclass(frozen=True)
class PartialDLogCommitments:
    """One node's contribution: its result share and two nonce commitments per base."""

    party_id: int
    c: Point
    d1: Point
    d2: Point
    e1: Point
    e2: Point

    def points(self) -> tuple[Point, ...]:
        return (self.c, self.d1, self.d2, self.e1, self.e2)


@dataclass(frozen=True)
class DLogCommitments:
    """Aggregated commitments sent back to the contributing nodes as the challenge."""

    c: Point
    d1: Point
    d2: Point
    e1: Point
    e2: Point
    parties: tuple[int, ...]

    def points(self) -> tuple[Point, ...]:
        return (self.c, self.d1, self.d2, self.e1, self.e2)

    def binding_factor(self, session_id: bytes, public_key: Point) -> int:
        parties = b"".join(p.to_bytes(2, "big") for p in self.parties)
        return hash_to_scalar(
            _NONCE_COMBINER_LABEL,
            session_id,
            parties,
            public_key.to_bytes(),
            self.c.to_bytes(),
            self.d1.to_bytes(),
            self.d2.to_bytes(),
            self.e1.to_bytes(),
            self.e2.to_bytes(),
        )

    def combined_nonces(self, session_id: bytes, public_key: Point) -> tuple[int, Point, Point]:
        """Return the binding factor and the combined nonce commitments ``(r1, r2)``."""
        b = self.binding_factor(session_id, public_key)
        return b, self.d1 + self.e1 * b, self.d2 + self.e2 * b

    def challenge(self, session_id: bytes, public_key: Point, blinded_query: Point) -> int:
        _, r1, r2 = self.combined_nonces(session_id, public_key)
        return challenge_hash(public_key, blinded_query, self.c, GENERATOR, r1, r2)


@dataclass(frozen=True)
class DLogProofShare:
    party_id: int
    s: int


class DLogSession:
    """Node-side nonce state for one evaluation; answers at most one challenge."""

    __slots__ = ("party_id", "blinded_query", "_d", "_e")

    def __init__(self, party_id: int, blinded_query: Point, d: int, e: int) -> None:
        self.party_id = party_id
        self.blinded_query = blinded_query
        self._d: int | None = d
        self._e: int | None = e

    @classmethod
    def start(
        cls,
        party_id: int,
        blinded_query: Point,
        key_share: int,
        rng: random.Random | None = None,
    ) -> tuple[DLogSession, PartialDLogCommitments]:
        d = random_scalar(rng)
        e = random_scalar(rng)
        commitments = PartialDLogCommitments(
            party_id=party_id,
            c=blinded_query * key_share,
            d1=GENERATOR * d,
            d2=blinded_query * d,
            e1=GENERATOR * e,
            e2=blinded_query * e,
        )
        return cls(party_id, blinded_query, d, e), commitments

    @property
    def consumed(self) -> bool:
        return self._d is None

    def wipe(self) -> None:
        self._d = None
        self._e = None

    def challenge(
        self,
        session_id: bytes,
        challenge: DLogCommitments,
        key_share: int,
        public_key: Point,
    ) -> DLogProofShare:
        """Compute ``s_i = d_i + b*e_i + lambda_i * e * x_i`` and wipe the nonces."""
        if self._d is None or self._e is None:
            raise RuntimeError("DLog session already consumed")
        try:
            lam = lagrange_coefficient(self.party_id, challenge.parties)
            b, r1, r2 = challenge.combined_nonces(session_id, public_key)
            e = challenge_hash(public_key, self.blinded_query, challenge.c, GENERATOR, r1, r2)
            s = (self._d + b * self._e + lam * e * key_share) % SUBGROUP_ORDER
        finally:
            self.wipe()
        return DLogProofShare(party_id=self.party_id, s=s)

    def __repr__(self) -> str:
        return f"DLogSession(party_id={self.party_id}, consumed={self.consumed})"


def combine_commitments(partials: Sequence[PartialDLogCommitments]) -> DLogCommitments:
    """Aggregate partial commitments, Lagrange-weighting only the result share.

    Partials are ordered by party id; duplicate ids raise ValueError.
    """
    ordered = sorted(partials, key=lambda p: p.party_id)
    parties = tuple(p.party_id for p in ordered)
    lambdas = lagrange_coefficients(parties)
    return DLogCommitments(
        c=sum_points([p.c * lam for p, lam in zip(ordered, lambdas)]),
        d1=sum_points([p.d1 for p in ordered]),
        d2=sum_points([p.d2 for p in ordered]),
        e1=sum_points([p.e1 for p in ordered]),
        e2=sum_points([p.e2 for p in ordered]),
        parties=parties,
    )


def combine_proofs(
    session_id: bytes,
    commitments: DLogCommitments,
    shares: Sequence[DLogProofShare],
    public_key: Point,
    blinded_query: Point,
) -> DLogEqualityProof:
    """Sum proof shares into a full proof; shares must cover exactly the committed parties."""
    if sorted(s.party_id for s in shares) != list(commitments.parties):
        raise ValueError("Proof shares do not match the committed party set")
    e = commitments.challenge(session_id, public_key, blinded_query)
    s = sum(share.s for share in shares) % SUBGROUP_ORDER
    return DLogEqualityProof(e=e, s=s)