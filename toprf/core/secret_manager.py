"""Per-node storage of OPRF key material and the node's wallet key.

:class:`SecretManager` is the interface the rest of the node talks to. Backends
implement the ``_``-prefixed primitives; the base class adds the bounded epoch
cache and the concurrency guarantees for wallet bootstrap.
"""

from __future__ import annotations

import abc
import asyncio
import threading
from collections import OrderedDict

import structlog
from eth_account import Account
from eth_account.signers.local import LocalAccount

from toprf.api.metrics import KEY_MATERIAL_CACHE, KEY_MATERIAL_STORED
from toprf.core.key_material import OprfKeyId, OprfKeyMaterial, format_key_id

log = structlog.get_logger()

DEFAULT_MAX_CACHE_SIZE = 128


class SecretManagerError(Exception):
    """Backend failure while reading or writing secrets (internal error)."""


class KeyMaterialNotFoundError(SecretManagerError):
    def __init__(self, key_id: int, epoch: int) -> None:
        super().__init__(f"No key material for key {format_key_id(key_id)} epoch {epoch}")
        self.key_id = key_id
        self.epoch = epoch


class KeyMaterialExistsError(SecretManagerError):
    """Different material is already stored for the same (key_id, epoch)."""

    def __init__(self, key_id: int, epoch: int) -> None:
        super().__init__(f"Key material for key {format_key_id(key_id)} epoch {epoch} already exists")
        self.key_id = key_id
        self.epoch = epoch


class EpochCache:
    """Bounded LRU cache of immutable key material keyed by (key_id, epoch).

    Entries are inserted whole under a lock, so readers never see a partially
    installed epoch. Lookups only hold the lock for the dict operations.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_CACHE_SIZE) -> None:
        if max_size < 1:
            raise ValueError("Cache size must be at least 1")
        self._max_size = max_size
        self._entries: OrderedDict[tuple[int, int], OprfKeyMaterial] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key_id: int, epoch: int) -> OprfKeyMaterial | None:
        with self._lock:
            material = self._entries.get((key_id, epoch))
            if material is not None:
                self._entries.move_to_end((key_id, epoch))
            return material

    def put(self, material: OprfKeyMaterial) -> None:
        key = (material.key_id, material.epoch)
        with self._lock:
            self._entries[key] = material
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)

    def evict_key(self, key_id: int) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == key_id]:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple[int, int]) -> bool:
        return key in self._entries


class SecretManager(abc.ABC):
    """Key material store with a shared LRU cache in front of the backend."""

    def __init__(self, max_cache_size: int = DEFAULT_MAX_CACHE_SIZE) -> None:
        self.cache = EpochCache(max_cache_size)
        self._wallet_lock = asyncio.Lock()
        self._wallet: LocalAccount | None = None

    # -- backend primitives --

    @abc.abstractmethod
    async def _load_material(self, key_id: int, epoch: int) -> OprfKeyMaterial | None:
        """Return stored material or None; raise SecretManagerError on backend failure."""

    @abc.abstractmethod
    async def _load_all_material(self) -> list[OprfKeyMaterial]: ...

    @abc.abstractmethod
    async def _insert_material(self, material: OprfKeyMaterial) -> bool:
        """Insert if absent. Return False when the pair already existed."""

    @abc.abstractmethod
    async def _delete_key(self, key_id: int) -> int: ...

    @abc.abstractmethod
    async def _insert_wallet_key_if_absent(self, private_key: bytes) -> bytes:
        """Store ``private_key`` unless one exists; return the persisted key."""

    async def close(self) -> None:
        """Release backend resources."""

    # -- public contract --

    async def load_address(self) -> str:
        account = await self.load_or_insert_wallet_private_key()
        return account.address

    async def load_secrets(self) -> dict[OprfKeyId, OprfKeyMaterial]:
        """Latest epoch of every key this node holds; warms the cache."""
        latest: dict[OprfKeyId, OprfKeyMaterial] = {}
        for material in await self._load_all_material():
            current = latest.get(material.key_id)
            if current is None or material.epoch > current.epoch:
                latest[material.key_id] = material
        for material in latest.values():
            self.cache.put(material)
        log.info("secrets_loaded", keys=len(latest))
        return latest

    async def get_oprf_key_material(self, key_id: int, epoch: int) -> OprfKeyMaterial:
        cached = self.cache.get(key_id, epoch)
        if cached is not None:
            KEY_MATERIAL_CACHE.labels(result="hit").inc()
            return cached
        KEY_MATERIAL_CACHE.labels(result="miss").inc()
        material = await self._load_material(key_id, epoch)
        if material is None:
            raise KeyMaterialNotFoundError(key_id, epoch)
        self.cache.put(material)
        return material

    async def has_oprf_key_material(self, key_id: int, epoch: int) -> bool:
        try:
            await self.get_oprf_key_material(key_id, epoch)
        except KeyMaterialNotFoundError:
            return False
        return True

    async def get_previous_material(self, key_id: int, epoch: int) -> OprfKeyMaterial | None:
        """Material for ``epoch - 1``, the input share of a reshare into ``epoch``."""
        if epoch <= 1:
            return None
        try:
            return await self.get_oprf_key_material(key_id, epoch - 1)
        except KeyMaterialNotFoundError:
            return None

    async def latest_oprf_key_material(self, key_id: int) -> OprfKeyMaterial:
        candidates = [m for m in await self._load_all_material() if m.key_id == key_id]
        if not candidates:
            raise KeyMaterialNotFoundError(key_id, 0)
        return max(candidates, key=lambda m: m.epoch)

    async def store_oprf_key_material(self, material: OprfKeyMaterial) -> None:
        """Persist material write-once; identical re-inserts are a no-op."""
        inserted = await self._insert_material(material)
        if not inserted:
            existing = await self._load_material(material.key_id, material.epoch)
            if existing != material:
                raise KeyMaterialExistsError(material.key_id, material.epoch)
            log.info(
                "key_material_already_stored",
                key_id=format_key_id(material.key_id),
                epoch=material.epoch,
            )
        else:
            KEY_MATERIAL_STORED.inc()
            log.info(
                "key_material_stored",
                key_id=format_key_id(material.key_id),
                epoch=material.epoch,
                threshold=material.threshold,
                num_parties=material.num_parties,
            )
        self.cache.put(material)

    async def delete_oprf_key(self, key_id: int) -> None:
        removed = await self._delete_key(key_id)
        self.cache.evict_key(key_id)
        log.info("key_material_deleted", key_id=format_key_id(key_id), epochs=removed)

    async def load_or_insert_wallet_private_key(self) -> LocalAccount:
        """Return the node wallet, generating and persisting it on first use."""
        async with self._wallet_lock:
            if self._wallet is None:
                candidate = Account.create()
                stored = await self._insert_wallet_key_if_absent(bytes(candidate.key))
                self._wallet = Account.from_key(stored)
                if stored == bytes(candidate.key):
                    log.info("wallet_key_created", address=self._wallet.address)
                else:
                    log.info("wallet_key_loaded", address=self._wallet.address)
            return self._wallet

