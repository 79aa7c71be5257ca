"""2Hash-DH OPRF primitives: blinding, unblinding and output finalization.

The function computed is ``F(k, q) = H(ds, q, encode(ds, q) * k)``. The
client only ever sends ``encode(ds, q) * beta`` for a fresh random ``beta``.
"""

from __future__ import annotations

import hashlib
import random
from types import TracebackType

from toprf.utils.crypto import BN254_PRIME, SUBGROUP_ORDER, random_scalar
from toprf.utils.curve import Point, hash_to_curve

# Fixed, non-secret domain separator binding outputs to this protocol
DOMAIN_SEPARATOR = int.from_bytes(b"OPRF", "big") % BN254_PRIME


def _field_bytes(value: int) -> bytes:
    return value.to_bytes(32, "big")


def query_from_bytes(data: bytes) -> int:
    """Map arbitrary input bytes (e.g. an action string) to a field element."""
    digest = hashlib.sha512(b"toprf-query-v1" + data).digest()
    return int.from_bytes(digest, "big") % BN254_PRIME


def _check_query(query: int) -> None:
    if not 0 <= query < BN254_PRIME:
        raise ValueError("Query must be an element of the base field")


def encode_query(query: int, domain_separator: int = DOMAIN_SEPARATOR) -> Point:
    _check_query(query)
    return hash_to_curve(_field_bytes(domain_separator) + _field_bytes(query))


class BlindingFactor:
    """Random scalar masking a query; wiped when the ``with`` block exits.

    Usage::

        with BlindingFactor.random(rng) as beta:
            blinded = blind_query(query, beta)
            ...
    """

    __slots__ = ("_beta",)

    def __init__(self, beta: int) -> None:
        if not 0 < beta < SUBGROUP_ORDER:
            raise ValueError("Blinding factor must be a non-zero scalar")
        self._beta: int | None = beta

    @classmethod
    def random(cls, rng: random.Random | None = None) -> BlindingFactor:
        return cls(random_scalar(rng))

    @property
    def beta(self) -> int:
        if self._beta is None:
            raise RuntimeError("Blinding factor has been wiped")
        return self._beta

    def inverse(self) -> int:
        return pow(self.beta, -1, SUBGROUP_ORDER)

    def wipe(self) -> None:
        self._beta = None

    @property
    def wiped(self) -> bool:
        return self._beta is None

    def __enter__(self) -> BlindingFactor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "BlindingFactor(<redacted>)"


def blind_query(
    query: int,
    blinding_factor: BlindingFactor,
    domain_separator: int = DOMAIN_SEPARATOR,
) -> Point:
    return encode_query(query, domain_separator) * blinding_factor.beta


def unblind(blinded_response: Point, blinding_factor: BlindingFactor) -> Point:
    return blinded_response * blinding_factor.inverse()


def finalize_query(
    query: int,
    unblinded: Point,
    domain_separator: int = DOMAIN_SEPARATOR,
) -> int:
    """Hash the unblinded point together with the query into the output field element."""
    _check_query(query)
    digest = hashlib.sha512(
        b"toprf-finalize-v1"
        + _field_bytes(domain_separator)
        + _field_bytes(query)
        + _field_bytes(unblinded.x)
        + _field_bytes(unblinded.y)
    ).digest()
    return int.from_bytes(digest, "big") % BN254_PRIME


def evaluate(secret_key: int, query: int, domain_separator: int = DOMAIN_SEPARATOR) -> int:
    """Non-distributed reference evaluation with the full key."""
    return finalize_query(query, encode_query(query, domain_separator) * secret_key, domain_separator)
