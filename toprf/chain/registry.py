"""Key registry interface: the event source and bulletin board for key generation."""

from __future__ import annotations

import abc
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from toprf.core.key_material import OprfKeyId, ShareEpoch
from toprf.core.secret_gen import Round1Contribution, Round2Contribution, Round3Contribution
from toprf.utils.curve import Point


class RegistryEventKind(Enum):
    SECRET_GEN_ROUND1 = "SecretGenRound1"
    RESHARE_ROUND1 = "ReshareRound1"
    SECRET_GEN_ROUND2 = "SecretGenRound2"
    SECRET_GEN_ROUND3 = "SecretGenRound3"
    RESHARE_ROUND3 = "ReshareRound3"
    SECRET_GEN_FINALIZE = "SecretGenFinalize"
    SECRET_GEN_ABORT = "SecretGenAbort"
    KEY_DELETION = "KeyDeletion"


@dataclass(frozen=True)
class KeyRegistryEvent:
    kind: RegistryEventKind
    key_id: OprfKeyId
    block_number: int
    log_index: int = 0
    epoch: ShareEpoch | None = None
    threshold: int | None = None
    parties: tuple[int, ...] = ()

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class KeyRegistry(abc.ABC):
    """Read events and contributions, submit this node's contributions."""

    @abc.abstractmethod
    async def latest_block(self) -> int: ...

    @abc.abstractmethod
    async def fetch_events(self, from_block: int, to_block: int) -> list[KeyRegistryEvent]:
        """Events in ``[from_block, to_block]`` ordered by (block, log index)."""

    @abc.abstractmethod
    async def load_round1(self, key_id: OprfKeyId) -> list[Round1Contribution]: ...

    @abc.abstractmethod
    async def load_round2(self, key_id: OprfKeyId, party_id: int) -> list[Round2Contribution]:
        """Every producer's round 2 data, with packets limited to those for ``party_id``."""

    @abc.abstractmethod
    async def load_public_key(self, key_id: OprfKeyId) -> Point: ...

    @abc.abstractmethod
    async def submit_round1(self, key_id: OprfKeyId, contribution: Round1Contribution) -> None: ...

    @abc.abstractmethod
    async def submit_round2(self, key_id: OprfKeyId, contribution: Round2Contribution) -> None: ...

    @abc.abstractmethod
    async def submit_round3(self, key_id: OprfKeyId, contribution: Round3Contribution) -> None: ...

    @abc.abstractmethod
    async def confirm_finalize(self, key_id: OprfKeyId, epoch: ShareEpoch, party_id: int) -> None: ...

    async def close(self) -> None:
        """Release connections."""


def sorted_events(events: Sequence[KeyRegistryEvent]) -> list[KeyRegistryEvent]:
    return sorted(events, key=lambda e: e.position)
