"""Identifiers and per-node key material for threshold OPRF keys."""

from __future__ import annotations

from dataclasses import dataclass
from typing import NewType

from toprf.utils.crypto import SUBGROUP_ORDER
from toprf.utils.curve import GENERATOR, Point

# uint160 on the key registry
OprfKeyId = NewType("OprfKeyId", int)
ShareEpoch = NewType("ShareEpoch", int)

MAX_KEY_ID = (1 << 160) - 1
MAX_PARTY_ID = 0xFFFF


def parse_key_id(value: str | int) -> OprfKeyId:
    """Accept a decimal int or a 0x-prefixed hex string."""
    if isinstance(value, str):
        value = int(value, 16) if value.lower().startswith("0x") else int(value)
    if not 0 <= value <= MAX_KEY_ID:
        raise ValueError(f"Key id out of range: {value}")
    return OprfKeyId(value)


def format_key_id(key_id: int) -> str:
    return f"0x{key_id:040x}"


@dataclass(frozen=True)
class ShareIdentifier:
    key_id: OprfKeyId
    epoch: ShareEpoch


@dataclass(frozen=True)
class OprfKeyMaterial:
    """One node's Shamir share of an OPRF key for a single epoch."""

    key_id: OprfKeyId
    epoch: ShareEpoch
    share: int
    public_key: Point
    threshold: int
    num_parties: int

    def __post_init__(self) -> None:
        if not 0 < self.share < SUBGROUP_ORDER:
            raise ValueError("Key share out of range")
        if not 1 <= self.threshold <= self.num_parties:
            raise ValueError(
                f"Invalid threshold {self.threshold} for {self.num_parties} parties"
            )
        if self.epoch < 0:
            raise ValueError("Epoch must be non-negative")

    @property
    def identifier(self) -> ShareIdentifier:
        return ShareIdentifier(self.key_id, self.epoch)

    def public_share(self) -> Point:
        return GENERATOR * self.share

    def __repr__(self) -> str:
        return (
            f"OprfKeyMaterial(key_id={format_key_id(self.key_id)}, epoch={self.epoch}, "
            f"threshold={self.threshold}, num_parties={self.num_parties}, share=<redacted>)"
        )
