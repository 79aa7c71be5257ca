"""Tests for the key registry watcher driving secret generation."""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock, patch

import pytest

from toprf.core.key_event_watcher import KeyEventWatcher
from toprf.core.key_material import OprfKeyId
from toprf.core.secret_gen import SecretGenService
from toprf.core.secret_manager_sqlite import SqliteSecretManager
from toprf.utils.crypto import SUBGROUP_ORDER, lagrange_coefficients
from toprf.utils.curve import GENERATOR
from tests.fakes import InMemoryKeyRegistry

KEY = OprfKeyId(0xD06)


def _watchers(registry: InMemoryKeyRegistry, rng: random.Random) -> list[KeyEventWatcher]:
    return [
        KeyEventWatcher(registry, SecretGenService(i, rng=rng), SqliteSecretManager(), poll_interval=0.01)
        for i in range(1, registry.num_parties + 1)
    ]


async def _poll_all(watchers: list[KeyEventWatcher], cycles: int = 5) -> None:
    for _ in range(cycles):
        for w in watchers:
            await w.poll_once()


async def _materials(watchers: list[KeyEventWatcher], epoch: int) -> list:
    return [await w._secret_manager.get_oprf_key_material(KEY, epoch) for w in watchers]


class TestKeygen:
    @pytest.mark.asyncio
    async def test_keygen_commits_on_every_node(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(5)
        watchers = _watchers(registry, rng)
        registry.init_keygen(KEY, threshold=3)
        await _poll_all(watchers)
        materials = await _materials(watchers, 1)
        public_key = registry.keys[KEY].public_key
        assert all(m.public_key == public_key for m in materials)
        assert registry.keys[KEY].confirmations == {1, 2, 3, 4, 5}
        ids = [1, 3, 5]
        secret = sum(materials[i - 1].share * lam for i, lam in zip(ids, lagrange_coefficients(ids))) % SUBGROUP_ORDER
        assert GENERATOR * secret == public_key
        assert all(w.aborts == [] for w in watchers)

    @pytest.mark.asyncio
    async def test_reshare_keeps_public_key(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(5)
        watchers = _watchers(registry, rng)
        registry.init_keygen(KEY, threshold=3)
        await _poll_all(watchers)
        registry.init_reshare(KEY)
        await _poll_all(watchers)
        old = await _materials(watchers, 1)
        new = await _materials(watchers, 2)
        assert all(m.public_key == old[0].public_key for m in new)
        assert [m.share for m in new] != [m.share for m in old]
        assert (await watchers[0]._secret_manager.latest_oprf_key_material(KEY)).epoch == 2

    @pytest.mark.asyncio
    async def test_started_after_first_cycle(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(1)
        watcher = _watchers(registry, rng)[0]
        assert not watcher.started
        assert await watcher.poll_once() == 0
        assert watcher.started

    @pytest.mark.asyncio
    async def test_events_handled_once(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(1)
        watcher = _watchers(registry, rng)[0]
        registry.init_keygen(KEY, threshold=1)
        assert await watcher.poll_once() == 1
        assert watcher.next_block == 2
        # The block cursor moved on; a second poll sees only the follow-up event
        assert await watcher.poll_once() == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_submit_is_retried(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(3)
        watchers = _watchers(registry, rng)
        registry.init_keygen(KEY, threshold=2)
        registry.fail_submits = 1
        with pytest.raises(ConnectionError):
            await watchers[0].poll_once()
        assert watchers[0].next_block == 0
        await _poll_all(watchers)
        assert registry.keys[KEY].confirmations == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_registry_abort(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(3)
        watchers = _watchers(registry, rng)
        registry.init_keygen(KEY, threshold=2)
        await _poll_all(watchers, cycles=1)
        registry.abort(KEY)
        await _poll_all(watchers, cycles=1)
        assert all(w._secret_gen.active_runs == 0 for w in watchers)

    @pytest.mark.asyncio
    async def test_key_deletion(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(3)
        watchers = _watchers(registry, rng)
        registry.init_keygen(KEY, threshold=2)
        await _poll_all(watchers)
        registry.delete_key(KEY)
        await _poll_all(watchers, cycles=1)
        assert not await watchers[0]._secret_manager.has_oprf_key_material(KEY, 1)

    @pytest.mark.asyncio
    async def test_event_without_local_run_is_skipped(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(3)
        watchers = _watchers(registry, rng)
        registry.init_keygen(KEY, threshold=2)
        for w in watchers:
            await w.poll_once()
        # A node that joins late never saw round 1 and sits the run out
        late = KeyEventWatcher(registry, SecretGenService(3, rng=rng), SqliteSecretManager(), start_block=2)
        assert await late.poll_once() == 1
        assert late.aborts == []

    @pytest.mark.asyncio
    async def test_protocol_abort_is_recorded(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(2)
        watchers = _watchers(registry, rng)
        # Threshold above the party count cannot complete
        registry.init_keygen(KEY, threshold=3)
        await _poll_all(watchers, cycles=2)
        assert [a.kind for a in watchers[0].aborts] == ["insufficient_parties"]

    @pytest.mark.asyncio
    async def test_run_backs_off_on_poll_errors(self, rng: random.Random) -> None:
        registry = InMemoryKeyRegistry(1)
        registry.fail_fetches = 2
        watcher = _watchers(registry, rng)[0]
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)
            if len(sleeps) >= 3:
                raise asyncio.CancelledError

        with patch("toprf.core.key_event_watcher.asyncio.sleep", AsyncMock(side_effect=fake_sleep)), pytest.raises(
            asyncio.CancelledError
        ):
            await watcher.run()
        assert len(sleeps) == 3
        assert sleeps[1] > sleeps[0] * 0.5
        assert sleeps[2] == 0.01
        assert watcher.started
