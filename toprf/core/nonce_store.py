"""Serialized transaction nonce allocation for the node wallet.

All registry transactions from one node share a single account, so nonces
are handed out under one lock. A failed submission releases its nonce: the
most recent reservation is rolled back, anything older forces a resync from
the chain's pending transaction count before the next reservation.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog

from toprf.api.metrics import NONCE_RESYNCS

log = structlog.get_logger()

NonceFetcher = Callable[[], Awaitable[int]]


class NonceStoreError(Exception):
    """Could not obtain a nonce from chain state."""


class NonceReservation:
    __slots__ = ("nonce", "submitted")

    def __init__(self, nonce: int) -> None:
        self.nonce = nonce
        self.submitted = False

    def mark_submitted(self) -> None:
        """The transaction reached the mempool; the nonce is now spent."""
        self.submitted = True


class TransactionNonceStore:
    def __init__(self, fetch_pending_nonce: NonceFetcher | None = None) -> None:
        self._fetch = fetch_pending_nonce
        self._lock = asyncio.Lock()
        self._next: int | None = None
        self._needs_resync = False

    @property
    def next_nonce(self) -> int | None:
        return self._next

    async def _sync(self) -> None:
        if self._fetch is None:
            if self._next is None:
                self._next = 0
            self._needs_resync = False
            return
        try:
            chain_nonce = await self._fetch()
        except Exception as exc:
            raise NonceStoreError("Failed to fetch pending nonce from chain") from exc
        log.info("nonce_synced", previous=self._next, chain_nonce=chain_nonce)
        self._next = chain_nonce
        self._needs_resync = False

    async def reserve_next_nonce(self) -> int:
        async with self._lock:
            if self._next is None or self._needs_resync:
                await self._sync()
            nonce = self._next
            if nonce is None:
                raise NonceStoreError("Nonce store did not sync")
            self._next = nonce + 1
            return nonce

    async def release(self, nonce: int) -> None:
        """Give back a nonce whose transaction never reached the chain."""
        async with self._lock:
            if self._next is not None and nonce == self._next - 1:
                self._next = nonce
                log.debug("nonce_rolled_back", nonce=nonce)
            else:
                self._needs_resync = True
                NONCE_RESYNCS.inc()
                log.warning("nonce_resync_scheduled", nonce=nonce, next_nonce=self._next)

    def mark_for_resync(self) -> None:
        self._needs_resync = True

    @asynccontextmanager
    async def reservation(self) -> AsyncIterator[NonceReservation]:
        """Reserve a nonce, releasing it if the block raises before submission."""
        reservation = NonceReservation(await self.reserve_next_nonce())
        try:
            yield reservation
        except BaseException:
            if not reservation.submitted:
                await self.release(reservation.nonce)
            raise
