"""BabyJubJub twisted Edwards curve arithmetic.

The curve is ``a*x^2 + y^2 = 1 + d*x^2*y^2`` over the BN254 scalar field.
Only the prime-order subgroup is used by the protocol; every point received
from outside the process must pass :meth:`Point.validate` before use.

Points use affine coordinates. The addition law is complete for this curve,
so no special cases are needed for doubling or the identity.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from toprf.utils.crypto import BN254_PRIME, SUBGROUP_ORDER

Q = BN254_PRIME
L = SUBGROUP_ORDER
A = 168700
D = 168696
COFACTOR = 8

POINT_BYTES = 64

_GENERATOR_TAG = b"toprf-babyjubjub-generator-v1"
_ENCODE_TAG = b"toprf-babyjubjub-encode-v1"


def _find_non_residue() -> int:
    z = 2
    while pow(z, (Q - 1) // 2, Q) != Q - 1:
        z += 1
    return z


_TS_S = ((Q - 1) & -(Q - 1)).bit_length() - 1
_TS_Q = (Q - 1) >> _TS_S
_TS_Z = _find_non_residue()


def sqrt_mod(n: int) -> int | None:
    """Square root in the base field (Tonelli-Shanks), or None for a non-residue."""
    n %= Q
    if n == 0:
        return 0
    if pow(n, (Q - 1) // 2, Q) != 1:
        return None
    m = _TS_S
    c = pow(_TS_Z, _TS_Q, Q)
    t = pow(n, _TS_Q, Q)
    r = pow(n, (_TS_Q + 1) // 2, Q)
    while t != 1:
        i, t2 = 0, t
        while t2 != 1:
            t2 = t2 * t2 % Q
            i += 1
        b = pow(c, 1 << (m - i - 1), Q)
        m, c = i, b * b % Q
        t = t * c % Q
        r = r * b % Q
    return r


class InvalidPointError(ValueError):
    """Point is malformed, off the curve, or outside the prime-order subgroup."""


@dataclass(frozen=True)
class Point:
    x: int
    y: int

    def __add__(self, other: Point) -> Point:
        x1, y1, x2, y2 = self.x, self.y, other.x, other.y
        t = D * x1 * x2 % Q * y1 * y2 % Q
        x3 = (x1 * y2 + y1 * x2) * pow((1 + t) % Q, -1, Q) % Q
        y3 = (y1 * y2 - A * x1 * x2) * pow((1 - t) % Q, -1, Q) % Q
        return Point(x3, y3)

    def __neg__(self) -> Point:
        return Point((-self.x) % Q, self.y)

    def __sub__(self, other: Point) -> Point:
        return self + (-other)

    def __mul__(self, k: int) -> Point:
        if k < 0:
            return (-self) * (-k)
        result = IDENTITY
        addend = self
        while k:
            if k & 1:
                result = result + addend
            addend = addend + addend
            k >>= 1
        return result

    __rmul__ = __mul__

    def is_identity(self) -> bool:
        return self.x == 0 and self.y == 1

    def is_on_curve(self) -> bool:
        if not (0 <= self.x < Q and 0 <= self.y < Q):
            return False
        xx, yy = self.x * self.x % Q, self.y * self.y % Q
        return (A * xx + yy) % Q == (1 + D * xx % Q * yy) % Q

    def is_in_subgroup(self) -> bool:
        return (self * L).is_identity()

    def validate(self, *, allow_identity: bool = False) -> Point:
        """Return self if on-curve and in the prime-order subgroup."""
        if not self.is_on_curve():
            raise InvalidPointError("Point is not on the curve")
        if not allow_identity and self.is_identity():
            raise InvalidPointError("Point is the identity")
        if not self.is_in_subgroup():
            raise InvalidPointError("Point is not in the prime-order subgroup")
        return self

    def to_bytes(self) -> bytes:
        return self.x.to_bytes(32, "big") + self.y.to_bytes(32, "big")

    def to_hex(self) -> str:
        return self.to_bytes().hex()

    @classmethod
    def from_bytes(cls, data: bytes, *, allow_identity: bool = False) -> Point:
        if len(data) != POINT_BYTES:
            raise InvalidPointError(f"Point must be {POINT_BYTES} bytes, got {len(data)}")
        point = cls(int.from_bytes(data[:32], "big"), int.from_bytes(data[32:], "big"))
        return point.validate(allow_identity=allow_identity)

    @classmethod
    def from_hex(cls, value: str, *, allow_identity: bool = False) -> Point:
        try:
            raw = bytes.fromhex(value.removeprefix("0x"))
        except ValueError as exc:
            raise InvalidPointError("Point is not valid hex") from exc
        return cls.from_bytes(raw, allow_identity=allow_identity)

    def __repr__(self) -> str:
        return f"Point(0x{self.x:064x}, 0x{self.y:064x})"


IDENTITY = Point(0, 1)


def hash_to_curve(data: bytes, tag: bytes = _ENCODE_TAG) -> Point:
    """Deterministically map bytes to a non-identity subgroup point.

    Try-and-increment: hash to a candidate y, solve for x, clear the cofactor.
    """
    for counter in range(256):
        digest = hashlib.sha512(
            len(tag).to_bytes(1, "big") + tag + counter.to_bytes(1, "big") + data
        ).digest()
        y = int.from_bytes(digest, "big") % Q
        yy = y * y % Q
        denominator = (A - D * yy) % Q
        if denominator == 0:
            continue
        x = sqrt_mod((1 - yy) * pow(denominator, -1, Q))
        if x is None:
            continue
        if x & 1:
            x = Q - x
        point = Point(x, y) * COFACTOR
        if not point.is_identity():
            return point
    raise ValueError("hash_to_curve exhausted its counter")


GENERATOR = hash_to_curve(b"", tag=_GENERATOR_TAG)


def sum_points(points: list[Point]) -> Point:
    total = IDENTITY
    for p in points:
        total = total + p
    return total
