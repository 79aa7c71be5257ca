"""Distributed key generation and resharing of OPRF keys.

Each node runs one :class:`GenerationRun` per key id, driven by registry
events. The run moves through an explicit state machine::

    NOT_STARTED -> ROUND_EXCHANGE(1..3) -> FINALIZING -> COMMITTED
                \\______________ any non-terminal ______/-> ABORTED

Only the committed result is durable (it lives in the secret manager). A run
interrupted by a restart is lost; the registry times it out and the key is
generated again from round 1.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog

from toprf.api.metrics import SECRET_GEN_ABORTS, SECRET_GEN_ACTIVE_RUNS
from toprf.core.key_material import OprfKeyId, OprfKeyMaterial, ShareEpoch, format_key_id
from toprf.core.keygen import (
    KeyGenPolynomial,
    SharePacket,
    ShareVerificationError,
    combined_public_key,
    decrypt_share,
    encrypt_share,
    verify_producer_share,
)
from toprf.utils.crypto import SUBGROUP_ORDER, lagrange_coefficients, random_scalar
from toprf.utils.curve import GENERATOR, InvalidPointError, Point

log = structlog.get_logger()

NUM_ROUNDS = 3


class GenPhase(Enum):
    NOT_STARTED = "not_started"
    ROUND_EXCHANGE = "round_exchange"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    ABORTED = "aborted"


class GenKind(Enum):
    KEYGEN = "keygen"
    RESHARE = "reshare"


_TRANSITIONS: dict[GenPhase, frozenset[GenPhase]] = {
    GenPhase.NOT_STARTED: frozenset({GenPhase.ROUND_EXCHANGE, GenPhase.ABORTED}),
    GenPhase.ROUND_EXCHANGE: frozenset({GenPhase.ROUND_EXCHANGE, GenPhase.FINALIZING, GenPhase.ABORTED}),
    GenPhase.FINALIZING: frozenset({GenPhase.COMMITTED, GenPhase.ABORTED}),
    GenPhase.COMMITTED: frozenset(),
    GenPhase.ABORTED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass(frozen=True)
class GenState:
    phase: GenPhase = GenPhase.NOT_STARTED
    round: int = 0

    @property
    def terminal(self) -> bool:
        return self.phase in (GenPhase.COMMITTED, GenPhase.ABORTED)

    def __str__(self) -> str:
        if self.phase is GenPhase.ROUND_EXCHANGE:
            return f"{self.phase.value}({self.round})"
        return self.phase.value


def transition(state: GenState, phase: GenPhase, round: int = 0) -> GenState:
    """Return the next state, rejecting moves the protocol does not allow.

    ``ROUND_EXCHANGE`` must advance one round at a time and ``FINALIZING``
    is only reachable after the last round.
    """
    if phase not in _TRANSITIONS[state.phase]:
        raise InvalidTransitionError(f"Cannot move from {state} to {phase.value}")
    if phase is GenPhase.ROUND_EXCHANGE:
        if round != state.round + 1 or round > NUM_ROUNDS:
            raise InvalidTransitionError(f"Cannot move from {state} to round {round}")
        return GenState(phase, round)
    if phase is GenPhase.FINALIZING and state.round != NUM_ROUNDS:
        raise InvalidTransitionError(f"Cannot finalize from {state}")
    return GenState(phase, state.round)


class ProtocolAbortError(Exception):
    """A generation run was aborted; the key needs a fresh generation run."""

    def __init__(self, key_id: int, reason: str, *, kind: str = "verification", party_id: int | None = None) -> None:
        super().__init__(f"Secret generation for key {format_key_id(key_id)} aborted: {reason}")
        self.key_id = key_id
        self.reason = reason
        self.kind = kind
        self.party_id = party_id


@dataclass(frozen=True)
class Round1Contribution:
    """Ephemeral key and, for producers, commitments to the new polynomial."""

    party_id: int
    ephemeral_public_key: Point
    comm_share: Point | None = None
    comm_coeffs: bytes | None = None

    @property
    def is_producer(self) -> bool:
        return self.comm_share is not None


@dataclass(frozen=True)
class Round2Contribution:
    party_id: int
    commitments: tuple[Point, ...]
    packets: tuple[SharePacket, ...]

    def packet_for(self, recipient: int) -> SharePacket | None:
        return next((p for p in self.packets if p.recipient == recipient), None)


@dataclass(frozen=True)
class Round3Contribution:
    party_id: int
    public_share: Point


@dataclass
class GenerationRun:
    key_id: OprfKeyId
    epoch: ShareEpoch
    threshold: int
    kind: GenKind
    started_at: float
    updated_at: float
    state: GenState = field(default_factory=GenState)
    ephemeral_secret: int | None = None
    polynomial: KeyGenPolynomial | None = None
    previous: OprfKeyMaterial | None = None
    round1: dict[int, Round1Contribution] = field(default_factory=dict)
    round1_contribution: Round1Contribution | None = None
    num_parties: int = 0
    share: int | None = None
    public_key: Point | None = None
    # Results already handed out, by the state they moved the run into
    replies: dict[GenState, object] = field(default_factory=dict)

    def advance(self, phase: GenPhase, now: float, round: int = 0) -> None:
        self.state = transition(self.state, phase, round)
        self.updated_at = now

    def wipe(self) -> None:
        if self.polynomial is not None:
            self.polynomial.wipe()
        self.polynomial = None
        self.ephemeral_secret = None
        self.share = None


class SecretGenService:
    """Node-local side of the key generation protocol."""

    def __init__(
        self,
        party_id: int,
        round_timeout: float = 300.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if party_id < 1:
            raise ValueError("Party id must be positive")
        self.party_id = party_id
        self._round_timeout = round_timeout
        self._rng = rng
        self._clock = clock
        self._runs: dict[int, GenerationRun] = {}

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    def state_of(self, key_id: int) -> GenState:
        run = self._runs.get(key_id)
        return run.state if run is not None else GenState()

    def _run(self, key_id: int, phase: GenPhase, round: int = 0) -> GenerationRun:
        run = self._runs.get(key_id)
        if run is None:
            raise ProtocolAbortError(key_id, "no generation run in progress", kind="registry")
        if run.state.phase is not phase or (phase is GenPhase.ROUND_EXCHANGE and run.state.round != round):
            reason = f"expected state {GenState(phase, round)}, run is in {run.state}"
            self._abort_run(run)
            raise ProtocolAbortError(key_id, reason, kind="registry")
        return run

    def _replayed(self, key_id: int, state: GenState) -> tuple[bool, object]:
        """A retried event for a step this run already completed gets the same answer."""
        run = self._runs.get(key_id)
        if run is not None and run.state == state and state in run.replies:
            log.info("secret_gen_step_replayed", key_id=format_key_id(key_id), state=str(state))
            return True, run.replies[state]
        return False, None

    def _abort_run(self, run: GenerationRun) -> None:
        if not run.state.terminal:
            run.advance(GenPhase.ABORTED, self._clock())
        run.wipe()
        self._runs.pop(run.key_id, None)
        SECRET_GEN_ACTIVE_RUNS.set(len(self._runs))

    def _fail(self, run: GenerationRun, reason: str, *, kind: str = "verification", party_id: int | None = None) -> ProtocolAbortError:
        self._abort_run(run)
        SECRET_GEN_ABORTS.labels(reason=kind).inc()
        return ProtocolAbortError(run.key_id, reason, kind=kind, party_id=party_id)

    # -- round 1 --

    def round1(
        self,
        key_id: OprfKeyId,
        epoch: ShareEpoch,
        threshold: int,
        *,
        kind: GenKind = GenKind.KEYGEN,
        previous: OprfKeyMaterial | None = None,
    ) -> Round1Contribution:
        """Start a run. Keygen and reshare holders are producers; new reshare parties only consume."""
        existing = self._runs.get(key_id)
        if existing is not None:
            if existing.epoch == epoch and existing.round1_contribution is not None:
                log.info("secret_gen_round1_replayed", key_id=format_key_id(key_id), epoch=epoch)
                return existing.round1_contribution
            raise ProtocolAbortError(
                key_id, f"run for epoch {existing.epoch} still in progress", kind="registry"
            )
        if threshold < 1:
            raise ProtocolAbortError(key_id, f"invalid threshold {threshold}", kind="registry")

        now = self._clock()
        run = GenerationRun(
            key_id=key_id,
            epoch=epoch,
            threshold=threshold,
            kind=kind,
            started_at=now,
            updated_at=now,
            previous=previous,
        )
        run.ephemeral_secret = random_scalar(self._rng)
        ephemeral_public_key = GENERATOR * run.ephemeral_secret

        if kind is GenKind.KEYGEN:
            run.polynomial = KeyGenPolynomial.random(threshold, self._rng)
        elif previous is not None:
            run.polynomial = KeyGenPolynomial.reshare(previous.share, threshold, self._rng)

        if run.polynomial is not None:
            contribution = Round1Contribution(
                party_id=self.party_id,
                ephemeral_public_key=ephemeral_public_key,
                comm_share=run.polynomial.constant_commitment,
                comm_coeffs=run.polynomial.commitment_hash,
            )
        else:
            contribution = Round1Contribution(party_id=self.party_id, ephemeral_public_key=ephemeral_public_key)
        run.round1_contribution = contribution
        run.advance(GenPhase.ROUND_EXCHANGE, now, round=1)
        self._runs[key_id] = run
        SECRET_GEN_ACTIVE_RUNS.set(len(self._runs))
        log.info(
            "secret_gen_round1",
            key_id=format_key_id(key_id),
            epoch=epoch,
            kind=kind.value,
            threshold=threshold,
            producer=contribution.is_producer,
        )
        return contribution

    # -- round 2 --

    def round2(self, key_id: OprfKeyId, round1: Sequence[Round1Contribution]) -> Round2Contribution | None:
        """Validate the round 1 set and, as a producer, encrypt one share per party."""
        done, reply = self._replayed(key_id, GenState(GenPhase.ROUND_EXCHANGE, 2))
        if done:
            return reply  # type: ignore[return-value]
        run = self._run(key_id, GenPhase.ROUND_EXCHANGE, 1)
        by_party = {c.party_id: c for c in round1}
        num_parties = len(round1)
        if len(by_party) != num_parties or sorted(by_party) != list(range(1, num_parties + 1)):
            raise self._fail(run, "round 1 party ids must be exactly 1..n")
        if num_parties < run.threshold:
            raise self._fail(
                run, f"{num_parties} parties cannot meet threshold {run.threshold}", kind="insufficient_parties"
            )
        own = by_party.get(self.party_id)
        if own is None or own != run.round1_contribution:
            raise self._fail(run, "registry does not hold this node's round 1 contribution", kind="registry")
        for contribution in round1:
            try:
                contribution.ephemeral_public_key.validate()
                if contribution.comm_share is not None:
                    contribution.comm_share.validate()
            except InvalidPointError as exc:
                raise self._fail(run, f"invalid round 1 point: {exc}", party_id=contribution.party_id) from exc
            if contribution.is_producer and (contribution.comm_coeffs is None or len(contribution.comm_coeffs) != 32):
                raise self._fail(run, "producer is missing its coefficient commitment", party_id=contribution.party_id)

        producers = [c.party_id for c in round1 if c.is_producer]
        if run.kind is GenKind.KEYGEN and len(producers) != num_parties:
            raise self._fail(run, "every party must contribute to a fresh key", kind="insufficient_parties")
        if not producers:
            raise self._fail(run, "no producers in reshare", kind="insufficient_parties")
        if run.previous is not None and len(producers) < run.previous.threshold:
            raise self._fail(
                run,
                f"{len(producers)} producers cannot reconstruct a threshold {run.previous.threshold} key",
                kind="insufficient_parties",
            )

        run.round1 = by_party
        run.num_parties = num_parties
        result: Round2Contribution | None = None
        if run.polynomial is not None:
            if run.ephemeral_secret is None:
                raise self._fail(run, "ephemeral key already wiped", kind="state")
            packets = tuple(
                encrypt_share(
                    run.polynomial.share_for(party),
                    party,
                    run.ephemeral_secret,
                    by_party[party].ephemeral_public_key,
                    self._rng,
                )
                for party in range(1, num_parties + 1)
            )
            result = Round2Contribution(
                party_id=self.party_id,
                commitments=run.polynomial.commitments,
                packets=packets,
            )
            run.polynomial.wipe()
            run.polynomial = None
        run.advance(GenPhase.ROUND_EXCHANGE, self._clock(), round=2)
        run.replies[run.state] = result
        log.info(
            "secret_gen_round2",
            key_id=format_key_id(key_id),
            num_parties=num_parties,
            producers=len(producers),
        )
        return result

    # -- round 3 --

    def round3(
        self,
        key_id: OprfKeyId,
        contributions: Sequence[Round2Contribution],
        producers: Sequence[int] | None = None,
    ) -> Round3Contribution:
        """Verify and combine the shares addressed to this node.

        For keygen every producer's share is summed. For a reshare the
        registry picks the producer set and shares are Lagrange-combined over it.
        """
        done, reply = self._replayed(key_id, GenState(GenPhase.ROUND_EXCHANGE, 3))
        if done:
            return reply  # type: ignore[return-value]
        run = self._run(key_id, GenPhase.ROUND_EXCHANGE, 2)
        if run.ephemeral_secret is None:
            raise self._fail(run, "ephemeral key already wiped", kind="state")
        by_party = {c.party_id: c for c in contributions}
        if producers is None:
            producers = sorted(p for p, c in run.round1.items() if c.is_producer)
        producers = sorted(producers)
        if len(set(producers)) != len(producers):
            raise self._fail(run, "duplicate producers", kind="registry")
        if run.kind is GenKind.RESHARE and run.previous is not None and len(producers) < run.previous.threshold:
            raise self._fail(run, "too few producers to reshare", kind="insufficient_parties")

        lagrange = lagrange_coefficients(producers) if run.kind is GenKind.RESHARE else [1] * len(producers)
        shares: list[int] = []
        constant_commitments: list[Point] = []
        for producer in producers:
            announced = run.round1.get(producer)
            contribution = by_party.get(producer)
            if announced is None or not announced.is_producer or contribution is None:
                raise self._fail(run, "missing round 2 contribution", kind="insufficient_parties", party_id=producer)
            packet = contribution.packet_for(self.party_id)
            if packet is None:
                raise self._fail(run, "no share addressed to this node", party_id=producer)
            if announced.comm_share is None or announced.comm_coeffs is None:
                raise self._fail(run, "producer commitments missing", party_id=producer)
            try:
                for point in contribution.commitments:
                    point.validate(allow_identity=True)
                share = decrypt_share(packet, run.ephemeral_secret, announced.ephemeral_public_key)
                verify_producer_share(
                    packet.commitment,
                    self.party_id,
                    contribution.commitments,
                    announced.comm_coeffs,
                    announced.comm_share,
                    expected_degree=run.threshold - 1,
                )
            except (ShareVerificationError, InvalidPointError) as exc:
                log.error(
                    "secret_gen_share_rejected",
                    key_id=format_key_id(key_id),
                    producer=producer,
                    err=str(exc),
                )
                raise self._fail(run, str(exc), party_id=producer) from exc
            shares.append(share)
            constant_commitments.append(announced.comm_share)

        run.share = sum(s * lam for s, lam in zip(shares, lagrange)) % SUBGROUP_ORDER
        run.public_key = combined_public_key(constant_commitments, lagrange)
        if run.share == 0 or run.public_key.is_identity():
            raise self._fail(run, "degenerate key share")
        if run.previous is not None and run.public_key != run.previous.public_key:
            raise self._fail(run, "reshared key does not match the previous public key")
        run.advance(GenPhase.ROUND_EXCHANGE, self._clock(), round=3)
        contribution = Round3Contribution(party_id=self.party_id, public_share=GENERATOR * run.share)
        run.replies[run.state] = contribution
        log.info("secret_gen_round3", key_id=format_key_id(key_id), producers=len(producers))
        return contribution

    # -- finalize --

    def finalize(self, key_id: OprfKeyId, epoch: ShareEpoch, public_key: Point) -> OprfKeyMaterial:
        """Check the registry's public key and hand back the material to commit."""
        done, reply = self._replayed(key_id, GenState(GenPhase.FINALIZING, NUM_ROUNDS))
        if done:
            return reply  # type: ignore[return-value]
        run = self._run(key_id, GenPhase.ROUND_EXCHANGE, NUM_ROUNDS)
        if epoch != run.epoch:
            raise self._fail(run, f"finalize for epoch {epoch}, run is for epoch {run.epoch}", kind="registry")
        if public_key != run.public_key:
            raise self._fail(run, "registry public key differs from the locally derived key")
        if run.share is None:
            raise self._fail(run, "no key share derived", kind="state")
        run.advance(GenPhase.FINALIZING, self._clock())
        material = OprfKeyMaterial(
            key_id=key_id,
            epoch=epoch,
            share=run.share,
            public_key=public_key,
            threshold=run.threshold,
            num_parties=run.num_parties,
        )
        run.replies[run.state] = material
        return material

    def mark_committed(self, key_id: OprfKeyId) -> None:
        """The material is durable; drop the in-memory run."""
        run = self._run(key_id, GenPhase.FINALIZING)
        run.advance(GenPhase.COMMITTED, self._clock())
        run.wipe()
        self._runs.pop(key_id, None)
        SECRET_GEN_ACTIVE_RUNS.set(len(self._runs))
        log.info("secret_gen_committed", key_id=format_key_id(key_id), epoch=run.epoch)

    def abort(self, key_id: OprfKeyId, reason: str = "aborted by registry") -> bool:
        run = self._runs.get(key_id)
        if run is None:
            return False
        self._abort_run(run)
        SECRET_GEN_ABORTS.labels(reason="registry").inc()
        log.warning("secret_gen_aborted", key_id=format_key_id(key_id), epoch=run.epoch, reason=reason)
        return True

    def expire_stale(self) -> list[ProtocolAbortError]:
        """Abort runs that have waited longer than the round timeout."""
        now = self._clock()
        expired = []
        for run in list(self._runs.values()):
            if now - run.updated_at > self._round_timeout:
                log.warning(
                    "secret_gen_round_timeout",
                    key_id=format_key_id(run.key_id),
                    state=str(run.state),
                    waited_s=round(now - run.updated_at, 1),
                )
                expired.append(self._fail(run, f"timed out in {run.state}", kind="timeout"))
        return expired
