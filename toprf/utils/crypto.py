"""Shamir Secret Sharing and scalar-field helpers over the BabyJubJub subgroup order."""

from __future__ import annotations

import hashlib
import random
import secrets
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

# BN254 scalar field prime (the base field of BabyJubJub)
BN254_PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

# Order of the BabyJubJub prime-order subgroup; all secret scalars live mod this
SUBGROUP_ORDER = 2736030358979909402780800718157159386076813972158567259200215660948447373041

_SYSTEM_RNG = secrets.SystemRandom()


@dataclass(frozen=True)
class Share:
    """A single Shamir share: (x, y) where y = f(x) for secret polynomial f."""

    x: int
    y: int

    def __repr__(self) -> str:
        return f"Share(x={self.x}, y=<redacted>)"


def _mod_inv(a: int, p: int) -> int:
    """Modular multiplicative inverse; raises ValueError for zero."""
    a %= p
    if a == 0:
        raise ValueError("Modular inverse does not exist")
    return pow(a, -1, p)


def random_scalar(rng: random.Random | None = None, order: int = SUBGROUP_ORDER) -> int:
    """Uniform non-zero scalar in [1, order)."""
    rng = rng or _SYSTEM_RNG
    return rng.randrange(1, order)


def hash_to_scalar(*parts: bytes, order: int = SUBGROUP_ORDER) -> int:
    """SHA-512 of length-prefixed parts, reduced mod order (negligible bias)."""
    h = hashlib.sha512()
    for part in parts:
        h.update(len(part).to_bytes(4, "big"))
        h.update(part)
    return int.from_bytes(h.digest(), "big") % order


def scalar_to_bytes(value: int) -> bytes:
    return value.to_bytes(32, "big")


def scalar_from_hex(value: str, order: int = SUBGROUP_ORDER) -> int:
    """Parse a 32-byte hex scalar, rejecting values outside the field."""
    raw = bytes.fromhex(value.removeprefix("0x"))
    if len(raw) != 32:
        raise ValueError(f"Scalar must be 32 bytes, got {len(raw)}")
    scalar = int.from_bytes(raw, "big")
    if scalar >= order:
        raise ValueError("Scalar out of range")
    return scalar


def evaluate_polynomial(coeffs: Sequence[int], x: int, prime: int = SUBGROUP_ORDER) -> int:
    """Horner evaluation of sum(coeffs[j] * x^j) mod prime."""
    y = 0
    for c in reversed(coeffs):
        y = (y * x + c) % prime
    return y


def split_secret(
    secret: int,
    n: int,
    k: int,
    prime: int = SUBGROUP_ORDER,
    rng: random.Random | None = None,
) -> list[Share]:
    """Split a secret integer into n Shamir shares with threshold k.

    Args:
        secret: The secret value to split (must be < prime).
        n: Total number of shares to generate.
        k: Minimum shares needed for reconstruction.
        prime: The prime field modulus.
        rng: Randomness source for the polynomial coefficients.

    Returns:
        List of n Share objects at x = 1..n.
    """
    if secret >= prime:
        raise ValueError(f"Secret must be < {prime}")
    if not 1 <= k <= n:
        raise ValueError(f"Threshold must be in [1, {n}], got {k}")
    rng = rng or _SYSTEM_RNG

    # Random polynomial coefficients: a_0 = secret, a_1..a_{k-1} random
    coeffs = [secret] + [rng.randrange(prime) for _ in range(k - 1)]
    return [Share(x=i, y=evaluate_polynomial(coeffs, i, prime)) for i in range(1, n + 1)]


def lagrange_coefficient(
    party_id: int,
    party_ids: Iterable[int],
    prime: int = SUBGROUP_ORDER,
) -> int:
    """Lagrange basis polynomial for ``party_id`` evaluated at zero.

    Raises ValueError on duplicate ids, a zero id, or when ``party_id`` is
    not a member of ``party_ids``.
    """
    ids = list(party_ids)
    if len(set(ids)) != len(ids):
        raise ValueError("Duplicate party ids")
    if party_id not in ids:
        raise ValueError(f"Party {party_id} not in contributing set")
    if any(i % prime == 0 for i in ids):
        raise ValueError("Party id must be non-zero")

    numerator = 1
    denominator = 1
    for j in ids:
        if j == party_id:
            continue
        numerator = (numerator * (0 - j)) % prime
        denominator = (denominator * (party_id - j)) % prime
    return (numerator * _mod_inv(denominator, prime)) % prime


def lagrange_coefficients(party_ids: Sequence[int], prime: int = SUBGROUP_ORDER) -> list[int]:
    """Lagrange coefficients at zero for every id, in the given order."""
    return [lagrange_coefficient(i, party_ids, prime) for i in party_ids]


def reconstruct_secret(
    shares: list[Share],
    prime: int = SUBGROUP_ORDER,
) -> int:
    """Reconstruct the secret from k or more Shamir shares using Lagrange interpolation.

    Args:
        shares: At least k shares from the same polynomial.
        prime: The prime field modulus.

    Returns:
        The original secret value.
    """
    ids = [s.x for s in shares]
    secret = 0
    for share, coeff in zip(shares, lagrange_coefficients(ids, prime)):
        secret = (secret + share.y * coeff) % prime
    return secret
