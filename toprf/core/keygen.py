"""Polynomials, Feldman commitments and share transport for key generation.

A producer commits to its polynomial with Feldman commitments ``G*a_j`` and
publishes a hash of them in round 1, so the commitments it reveals in round 2
cannot be chosen after seeing other parties' contributions. Shares travel
encrypted under a Diffie-Hellman key between ephemeral key pairs.
"""

from __future__ import annotations

import hashlib
import random
from collections.abc import Sequence
from dataclasses import dataclass

from toprf.utils.crypto import (
    SUBGROUP_ORDER,
    evaluate_polynomial,
    hash_to_scalar,
    random_scalar,
)
from toprf.utils.curve import GENERATOR, Point, sum_points

_KEYSTREAM_LABEL = b"toprf-share-encryption-v1"


class ShareVerificationError(ValueError):
    """A received share or commitment does not match what the producer committed to."""


def feldman_hash(commitments: Sequence[Point]) -> bytes:
    h = hashlib.sha256(b"toprf-feldman-v1")
    for c in commitments:
        h.update(c.to_bytes())
    return h.digest()


def evaluate_commitments(commitments: Sequence[Point], party_id: int) -> Point:
    """``sum(C_j * i^j)``, the public image of the share for ``party_id``."""
    result = commitments[-1]
    for c in reversed(commitments[:-1]):
        result = result * party_id + c
    return result


@dataclass(frozen=True)
class SharePacket:
    """An encrypted share addressed to one recipient."""

    recipient: int
    nonce: int
    ciphertext: int
    commitment: Point


def _keystream(shared_secret: Point, nonce: int) -> int:
    return hash_to_scalar(_KEYSTREAM_LABEL, shared_secret.to_bytes(), nonce.to_bytes(32, "big"))


def encrypt_share(
    share: int,
    recipient: int,
    my_secret_key: int,
    their_public_key: Point,
    rng: random.Random | None = None,
) -> SharePacket:
    nonce = random_scalar(rng)
    shared = their_public_key * my_secret_key
    return SharePacket(
        recipient=recipient,
        nonce=nonce,
        ciphertext=(share + _keystream(shared, nonce)) % SUBGROUP_ORDER,
        commitment=GENERATOR * share,
    )


def decrypt_share(packet: SharePacket, my_secret_key: int, their_public_key: Point) -> int:
    """Decrypt and check the share against its published commitment."""
    shared = their_public_key * my_secret_key
    share = (packet.ciphertext - _keystream(shared, packet.nonce)) % SUBGROUP_ORDER
    if GENERATOR * share != packet.commitment:
        raise ShareVerificationError("Decrypted share does not match its commitment")
    return share


class KeyGenPolynomial:
    """A producer's secret polynomial of degree ``threshold - 1``.

    Holds secret coefficients; call :meth:`wipe` once the shares are sent.
    """

    def __init__(self, coefficients: list[int]) -> None:
        if not coefficients:
            raise ValueError("Polynomial needs at least one coefficient")
        self._coefficients: list[int] | None = coefficients
        self.commitments: tuple[Point, ...] = tuple(GENERATOR * c for c in coefficients)

    @classmethod
    def random(cls, threshold: int, rng: random.Random | None = None) -> KeyGenPolynomial:
        return cls([random_scalar(rng) for _ in range(threshold)])

    @classmethod
    def reshare(cls, share: int, threshold: int, rng: random.Random | None = None) -> KeyGenPolynomial:
        """Polynomial whose constant term is an existing key share."""
        return cls([share] + [random_scalar(rng) for _ in range(threshold - 1)])

    @property
    def degree(self) -> int:
        return len(self.commitments) - 1

    @property
    def constant_commitment(self) -> Point:
        return self.commitments[0]

    @property
    def commitment_hash(self) -> bytes:
        return feldman_hash(self.commitments)

    def share_for(self, party_id: int) -> int:
        if self._coefficients is None:
            raise RuntimeError("Polynomial has been wiped")
        if party_id <= 0:
            raise ValueError("Party id must be positive")
        return evaluate_polynomial(self._coefficients, party_id)

    def wipe(self) -> None:
        self._coefficients = None

    def __repr__(self) -> str:
        return f"KeyGenPolynomial(degree={self.degree})"


def verify_producer_share(
    share_commitment: Point,
    party_id: int,
    commitments: Sequence[Point],
    commitment_hash: bytes,
    constant_commitment: Point,
    expected_degree: int,
) -> None:
    """Check a producer's round 2 data against its round 1 announcement."""
    if len(commitments) != expected_degree + 1:
        raise ShareVerificationError(
            f"Expected {expected_degree + 1} commitments, got {len(commitments)}"
        )
    if feldman_hash(commitments) != commitment_hash:
        raise ShareVerificationError("Feldman commitments do not match the round 1 hash")
    if commitments[0] != constant_commitment:
        raise ShareVerificationError("Constant commitment does not match round 1")
    if evaluate_commitments(commitments, party_id) != share_commitment:
        raise ShareVerificationError("Share is not on the committed polynomial")


def combined_public_key(constant_commitments: Sequence[Point], lagrange: Sequence[int] | None = None) -> Point:
    """Sum of the producers' constant commitments, optionally Lagrange weighted."""
    if lagrange is None:
        return sum_points(list(constant_commitments))
    return sum_points([c * lam for c, lam in zip(constant_commitments, lagrange)])
