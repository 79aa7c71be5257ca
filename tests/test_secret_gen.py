"""Tests for the distributed key generation state machine."""

from __future__ import annotations

import dataclasses
import random

import pytest

from toprf.core.key_material import OprfKeyId, OprfKeyMaterial, ShareEpoch
from toprf.core.secret_gen import (
    GenKind,
    GenPhase,
    GenState,
    InvalidTransitionError,
    ProtocolAbortError,
    SecretGenService,
    transition,
)
from toprf.utils.crypto import SUBGROUP_ORDER, lagrange_coefficients
from toprf.utils.curve import GENERATOR

KEY = OprfKeyId(0xABC)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _services(n: int, rng: random.Random, clock: FakeClock | None = None) -> list[SecretGenService]:
    return [SecretGenService(i, rng=rng, clock=clock or FakeClock()) for i in range(1, n + 1)]


def _keygen(services: list[SecretGenService], threshold: int, epoch: int = 1) -> list[OprfKeyMaterial]:
    round1 = [s.round1(KEY, ShareEpoch(epoch), threshold) for s in services]
    round2 = [s.round2(KEY, round1) for s in services]
    contributions = [c for c in round2 if c is not None]
    round3 = [s.round3(KEY, contributions) for s in services]
    public_key = _interpolate_public_key(round3, threshold)
    materials = [s.finalize(KEY, ShareEpoch(epoch), public_key) for s in services]
    for s in services:
        s.mark_committed(KEY)
    return materials


def _interpolate_public_key(round3, threshold):
    chosen = sorted(round3, key=lambda c: c.party_id)[:threshold]
    lambdas = lagrange_coefficients([c.party_id for c in chosen])
    result = chosen[0].public_share * lambdas[0]
    for c, lam in zip(chosen[1:], lambdas[1:]):
        result = result + c.public_share * lam
    return result


def _secret_from(materials: list[OprfKeyMaterial], ids: list[int]) -> int:
    lambdas = lagrange_coefficients(ids)
    return sum(materials[i - 1].share * lam for i, lam in zip(ids, lambdas)) % SUBGROUP_ORDER


class TestTransitions:
    def test_rounds_advance_one_at_a_time(self) -> None:
        state = transition(GenState(), GenPhase.ROUND_EXCHANGE, 1)
        with pytest.raises(InvalidTransitionError):
            transition(state, GenPhase.ROUND_EXCHANGE, 3)

    def test_finalize_only_after_last_round(self) -> None:
        state = transition(GenState(), GenPhase.ROUND_EXCHANGE, 1)
        with pytest.raises(InvalidTransitionError, match="Cannot finalize"):
            transition(state, GenPhase.FINALIZING)

    def test_terminal_states_are_final(self) -> None:
        aborted = transition(GenState(), GenPhase.ABORTED)
        assert aborted.terminal
        with pytest.raises(InvalidTransitionError):
            transition(aborted, GenPhase.ROUND_EXCHANGE, 1)

    def test_str(self) -> None:
        assert str(GenState(GenPhase.ROUND_EXCHANGE, 2)) == "round_exchange(2)"
        assert str(GenState()) == "not_started"


class TestKeygen:
    def test_full_keygen(self, rng: random.Random) -> None:
        services = _services(5, rng)
        materials = _keygen(services, threshold=3)
        public_key = materials[0].public_key
        assert all(m.public_key == public_key for m in materials)
        assert all(m.epoch == 1 and m.threshold == 3 and m.num_parties == 5 for m in materials)
        # Every threshold subset reconstructs the same secret
        secret = _secret_from(materials, [1, 2, 3])
        assert GENERATOR * secret == public_key
        assert _secret_from(materials, [2, 4, 5]) == secret
        assert all(s.active_runs == 0 for s in services)

    def test_keygen_threshold_one(self, rng: random.Random) -> None:
        materials = _keygen(_services(3, rng), threshold=1)
        assert len({m.share for m in materials}) == 1

    def test_reshare_keeps_public_key(self, rng: random.Random) -> None:
        services = _services(5, rng)
        old = _keygen(services, threshold=3)
        round1 = [
            s.round1(KEY, ShareEpoch(2), 3, kind=GenKind.RESHARE, previous=old[i])
            for i, s in enumerate(services)
        ]
        round2 = [s.round2(KEY, round1) for s in services]
        producers = [1, 3, 5]
        contributions = [c for c in round2 if c is not None and c.party_id in producers]
        round3 = [s.round3(KEY, contributions, producers) for s in services]
        public_key = _interpolate_public_key(round3, 3)
        assert public_key == old[0].public_key
        new = [s.finalize(KEY, ShareEpoch(2), public_key) for s in services]
        assert all(m.epoch == 2 for m in new)
        assert [m.share for m in new] != [m.share for m in old]
        assert _secret_from(new, [2, 3, 4]) == _secret_from(old, [1, 2, 3])

    def test_reshare_with_new_consumer(self, rng: random.Random) -> None:
        old = _keygen(_services(3, rng), threshold=2)
        services = _services(4, rng)
        previous = [old[0], old[1], old[2], None]
        round1 = [
            s.round1(KEY, ShareEpoch(2), 2, kind=GenKind.RESHARE, previous=previous[i])
            for i, s in enumerate(services)
        ]
        assert not round1[3].is_producer
        round2 = [s.round2(KEY, round1) for s in services]
        assert round2[3] is None
        contributions = [c for c in round2 if c is not None]
        round3 = [s.round3(KEY, contributions, [1, 2, 3]) for s in services]
        new = [s.finalize(KEY, ShareEpoch(2), _interpolate_public_key(round3, 2)) for s in services]
        assert new[3].num_parties == 4
        assert _secret_from(new, [1, 4]) == _secret_from(old, [2, 3])


class TestAborts:
    def test_round1_ids_must_be_contiguous(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round1[2] = dataclasses.replace(round1[2], party_id=4)
        with pytest.raises(ProtocolAbortError, match="exactly 1..n") as excinfo:
            services[0].round2(KEY, round1)
        assert excinfo.value.kind == "verification"
        assert services[0].state_of(KEY) == GenState()

    def test_insufficient_parties(self, rng: random.Random) -> None:
        services = _services(2, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 3) for s in services]
        with pytest.raises(ProtocolAbortError) as excinfo:
            services[0].round2(KEY, round1)
        assert excinfo.value.kind == "insufficient_parties"

    def test_own_contribution_missing(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round1[0] = dataclasses.replace(round1[0], ephemeral_public_key=GENERATOR * 9)
        with pytest.raises(ProtocolAbortError, match="this node's round 1") as excinfo:
            services[0].round2(KEY, round1)
        assert excinfo.value.kind == "registry"

    def test_tampered_share_names_producer(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        bad = round2[1]
        packets = tuple(
            dataclasses.replace(p, ciphertext=(p.ciphertext + 1) % SUBGROUP_ORDER) if p.recipient == 1 else p
            for p in bad.packets
        )
        round2[1] = dataclasses.replace(bad, packets=packets)
        with pytest.raises(ProtocolAbortError) as excinfo:
            services[0].round3(KEY, round2)
        assert excinfo.value.party_id == 2
        assert excinfo.value.kind == "verification"
        # Other recipients are unaffected
        services[2].round3(KEY, round2)

    def test_commitments_swapped_after_round1(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        round2[2] = dataclasses.replace(round2[2], commitments=round2[1].commitments)
        with pytest.raises(ProtocolAbortError, match="round 1 hash"):
            services[0].round3(KEY, round2)

    def test_missing_producer(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        with pytest.raises(ProtocolAbortError) as excinfo:
            services[0].round3(KEY, round2[:2])
        assert excinfo.value.party_id == 3

    def test_wrong_public_key_at_finalize(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        for s in services:
            s.round3(KEY, round2)
        with pytest.raises(ProtocolAbortError, match="differs"):
            services[0].finalize(KEY, ShareEpoch(1), GENERATOR)
        assert services[0].active_runs == 0

    def test_out_of_order_event(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        with pytest.raises(ProtocolAbortError, match="expected state") as excinfo:
            services[0].round3(KEY, [])
        assert excinfo.value.kind == "registry"
        assert services[0].state_of(KEY) == GenState()
        assert round1

    def test_wiped_run_aborts_round3(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        services[0]._runs[KEY].wipe()
        with pytest.raises(ProtocolAbortError, match="already wiped") as excinfo:
            services[0].round3(KEY, round2)
        assert excinfo.value.kind == "state"
        assert services[0].active_runs == 0

    def test_wiped_run_aborts_finalize(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        round3 = [s.round3(KEY, round2) for s in services]
        services[0]._runs[KEY].wipe()
        with pytest.raises(ProtocolAbortError, match="no key share") as excinfo:
            services[0].finalize(KEY, ShareEpoch(1), _interpolate_public_key(round3, 2))
        assert excinfo.value.kind == "state"

    def test_no_run(self) -> None:
        with pytest.raises(ProtocolAbortError, match="no generation run"):
            SecretGenService(1).round2(KEY, [])

    def test_registry_abort(self, rng: random.Random) -> None:
        service = _services(1, rng)[0]
        service.round1(KEY, ShareEpoch(1), 1)
        assert service.abort(KEY)
        assert not service.abort(KEY)
        assert service.active_runs == 0

    def test_round_timeout(self, rng: random.Random) -> None:
        clock = FakeClock()
        service = SecretGenService(1, round_timeout=60.0, rng=rng, clock=clock)
        service.round1(KEY, ShareEpoch(1), 1)
        clock.now += 30
        assert service.expire_stale() == []
        clock.now += 31
        expired = service.expire_stale()
        assert len(expired) == 1
        assert expired[0].kind == "timeout"
        assert service.active_runs == 0

    def test_concurrent_epoch_rejected(self, rng: random.Random) -> None:
        service = _services(1, rng)[0]
        service.round1(KEY, ShareEpoch(1), 1)
        with pytest.raises(ProtocolAbortError, match="still in progress"):
            service.round1(KEY, ShareEpoch(2), 1)

    def test_invalid_party_id(self) -> None:
        with pytest.raises(ValueError):
            SecretGenService(0)


class TestReplay:
    def test_round1_replay_returns_same_contribution(self, rng: random.Random) -> None:
        service = _services(1, rng)[0]
        first = service.round1(KEY, ShareEpoch(1), 1)
        assert service.round1(KEY, ShareEpoch(1), 1) is first

    def test_round2_and_round3_replay(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        assert services[0].round2(KEY, round1) is round2[0]
        round3 = services[0].round3(KEY, round2)
        assert services[0].round3(KEY, round2) is round3

    def test_finalize_replay(self, rng: random.Random) -> None:
        services = _services(3, rng)
        round1 = [s.round1(KEY, ShareEpoch(1), 2) for s in services]
        round2 = [s.round2(KEY, round1) for s in services]
        round3 = [s.round3(KEY, round2) for s in services]
        pk = _interpolate_public_key(round3, 2)
        material = services[0].finalize(KEY, ShareEpoch(1), pk)
        assert services[0].finalize(KEY, ShareEpoch(1), pk) is material
        assert services[0].state_of(KEY).phase is GenPhase.FINALIZING
