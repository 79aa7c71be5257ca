"""Polls the key registry and drives the secret generation protocol.

The watcher keeps a block cursor and only moves it past events it has
handled. A failed cycle leaves the cursor where it was, so the same events
are read again after a backoff. A protocol abort consumes its event: the run
is dropped and the registry is expected to start a new one.
"""

from __future__ import annotations

import asyncio
import random

import structlog

from toprf.api.metrics import SECRET_GEN_EVENTS, WATCHER_POLL_ERRORS
from toprf.chain.registry import KeyRegistry, KeyRegistryEvent, RegistryEventKind, sorted_events
from toprf.core.key_material import ShareEpoch, format_key_id
from toprf.core.secret_gen import GenKind, GenPhase, ProtocolAbortError, SecretGenService
from toprf.core.secret_manager import KeyMaterialExistsError, SecretManager

log = structlog.get_logger()


class KeyEventWatcher:
    def __init__(
        self,
        registry: KeyRegistry,
        secret_gen: SecretGenService,
        secret_manager: SecretManager,
        *,
        start_block: int = 0,
        poll_interval: float = 2.0,
        max_backoff: float = 60.0,
        max_block_range: int = 1000,
    ) -> None:
        self._registry = registry
        self._secret_gen = secret_gen
        self._secret_manager = secret_manager
        self._party_id = secret_gen.party_id
        self._next_block = start_block
        self._last_handled: tuple[int, int] | None = None
        self._poll_interval = poll_interval
        self._max_backoff = max_backoff
        self._max_block_range = max_block_range
        self._started = False
        self.aborts: list[ProtocolAbortError] = []

    @property
    def started(self) -> bool:
        """True once the first poll cycle has completed."""
        return self._started

    @property
    def next_block(self) -> int:
        return self._next_block

    async def run(self) -> None:
        log.info("key_event_watcher_started", party_id=self._party_id, start_block=self._next_block)
        consecutive_errors = 0
        while True:
            try:
                await self.poll_once()
                consecutive_errors = 0
            except asyncio.CancelledError:
                log.info("key_event_watcher_cancelled")
                return
            except Exception as e:
                consecutive_errors += 1
                WATCHER_POLL_ERRORS.inc()
                base = min(self._poll_interval * (2**consecutive_errors), self._max_backoff)
                backoff = base * (0.5 + random.random())  # jitter: 50-150% of base
                level = "critical" if consecutive_errors >= 10 else "error"
                getattr(log, level)(
                    "key_event_poll_error",
                    err=str(e),
                    error_type=type(e).__name__,
                    consecutive=consecutive_errors,
                    backoff_s=round(backoff, 1),
                    started=self._started,
                )
                await asyncio.sleep(backoff)
                continue
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> int:
        """Handle all new events up to the chain head; return how many were handled."""
        latest = await self._registry.latest_block()
        handled = 0
        while self._next_block <= latest:
            to_block = min(latest, self._next_block + self._max_block_range - 1)
            events = sorted_events(await self._registry.fetch_events(self._next_block, to_block))
            for event in events:
                if self._last_handled is not None and event.position <= self._last_handled:
                    continue
                await self.handle_event(event)
                self._last_handled = event.position
                handled += 1
            self._next_block = to_block + 1

        for abort in self._secret_gen.expire_stale():
            self._record_abort(abort)

        if not self._started:
            self._started = True
            log.info("key_event_watcher_ready", next_block=self._next_block)
        return handled

    def _record_abort(self, exc: ProtocolAbortError) -> None:
        self.aborts.append(exc)
        log.error(
            "secret_gen_protocol_abort",
            key_id=format_key_id(exc.key_id),
            reason=exc.reason,
            kind=exc.kind,
            party_id=exc.party_id,
            msg="key generation must be restarted by the registry",
        )

    async def handle_event(self, event: KeyRegistryEvent) -> None:
        SECRET_GEN_EVENTS.labels(kind=event.kind.value).inc()
        log.info(
            "key_registry_event",
            kind=event.kind.value,
            key_id=format_key_id(event.key_id),
            block=event.block_number,
        )
        try:
            await self._dispatch(event)
        except ProtocolAbortError as exc:
            self._record_abort(exc)

    async def _dispatch(self, event: KeyRegistryEvent) -> None:
        kind = event.kind
        if kind in (RegistryEventKind.SECRET_GEN_ROUND1, RegistryEventKind.RESHARE_ROUND1):
            await self._round1(event)
        elif kind is RegistryEventKind.SECRET_GEN_ROUND2:
            await self._round2(event)
        elif kind in (RegistryEventKind.SECRET_GEN_ROUND3, RegistryEventKind.RESHARE_ROUND3):
            await self._round3(event)
        elif kind is RegistryEventKind.SECRET_GEN_FINALIZE:
            await self._finalize(event)
        elif kind is RegistryEventKind.SECRET_GEN_ABORT:
            self._secret_gen.abort(event.key_id)
        elif kind is RegistryEventKind.KEY_DELETION:
            self._secret_gen.abort(event.key_id, reason="key deleted")
            await self._secret_manager.delete_oprf_key(event.key_id)

    def _participating(self, event: KeyRegistryEvent) -> bool:
        if self._secret_gen.state_of(event.key_id).phase is GenPhase.NOT_STARTED:
            log.warning(
                "key_registry_event_skipped",
                kind=event.kind.value,
                key_id=format_key_id(event.key_id),
                reason="no local run for this key",
            )
            return False
        return True

    async def _round1(self, event: KeyRegistryEvent) -> None:
        if event.epoch is None or event.threshold is None:
            raise ProtocolAbortError(event.key_id, "round 1 event without epoch or threshold", kind="registry")
        epoch = ShareEpoch(event.epoch)
        if await self._secret_manager.has_oprf_key_material(event.key_id, epoch):
            log.info("secret_gen_already_committed", key_id=format_key_id(event.key_id), epoch=epoch)
            return
        if event.kind is RegistryEventKind.RESHARE_ROUND1:
            previous = await self._secret_manager.get_previous_material(event.key_id, epoch)
            contribution = self._secret_gen.round1(
                event.key_id, epoch, event.threshold, kind=GenKind.RESHARE, previous=previous
            )
        else:
            contribution = self._secret_gen.round1(event.key_id, epoch, event.threshold)
        await self._registry.submit_round1(event.key_id, contribution)

    async def _round2(self, event: KeyRegistryEvent) -> None:
        if not self._participating(event):
            return
        round1 = await self._registry.load_round1(event.key_id)
        contribution = self._secret_gen.round2(event.key_id, round1)
        if contribution is not None:
            await self._registry.submit_round2(event.key_id, contribution)

    async def _round3(self, event: KeyRegistryEvent) -> None:
        if not self._participating(event):
            return
        contributions = await self._registry.load_round2(event.key_id, self._party_id)
        producers = event.parties or None
        contribution = self._secret_gen.round3(event.key_id, contributions, producers)
        await self._registry.submit_round3(event.key_id, contribution)

    async def _finalize(self, event: KeyRegistryEvent) -> None:
        if event.epoch is None:
            raise ProtocolAbortError(event.key_id, "finalize event without epoch", kind="registry")
        epoch = ShareEpoch(event.epoch)
        if await self._secret_manager.has_oprf_key_material(event.key_id, epoch):
            # Committed before a crash or a failed acknowledgement; announce again
            log.info("secret_gen_reannounce", key_id=format_key_id(event.key_id), epoch=epoch)
            await self._registry.confirm_finalize(event.key_id, epoch, self._party_id)
            return
        if not self._participating(event):
            return
        public_key = await self._registry.load_public_key(event.key_id)
        material = self._secret_gen.finalize(event.key_id, epoch, public_key)
        try:
            await self._secret_manager.store_oprf_key_material(material)
        except KeyMaterialExistsError as exc:
            self._secret_gen.abort(event.key_id, reason="conflicting material already stored")
            raise ProtocolAbortError(event.key_id, str(exc), kind="verification") from exc
        self._secret_gen.mark_committed(event.key_id)
        await self._registry.confirm_finalize(event.key_id, epoch, self._party_id)
