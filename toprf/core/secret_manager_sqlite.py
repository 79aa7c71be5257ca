"""SQLite-backed secret manager.

Stores each node's key shares per (key_id, epoch) and the node wallet key.
Falls back to in-memory SQLite when no db_path is provided (useful for tests).
"""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path

import structlog

from toprf.core.key_material import OprfKeyId, OprfKeyMaterial, ShareEpoch
from toprf.core.secret_manager import DEFAULT_MAX_CACHE_SIZE, SecretManager, SecretManagerError
from toprf.utils.crypto import scalar_from_hex, scalar_to_bytes
from toprf.utils.curve import InvalidPointError, Point

log = structlog.get_logger()


class SqliteSecretManager(SecretManager):
    _MAX_CONNECT_RETRIES = 3

    def __init__(
        self,
        db_path: str | Path | None = None,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE,
    ) -> None:
        super().__init__(max_cache_size)
        self._lock = threading.Lock()
        if db_path is not None:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = self._connect_with_retry(str(path))
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    @staticmethod
    def _connect_with_retry(path: str) -> sqlite3.Connection:
        """Connect to SQLite with retry on OperationalError."""
        for attempt in range(SqliteSecretManager._MAX_CONNECT_RETRIES):
            try:
                return sqlite3.connect(path, check_same_thread=False)
            except sqlite3.OperationalError:
                if attempt == SqliteSecretManager._MAX_CONNECT_RETRIES - 1:
                    raise
                delay = 2**attempt
                log.warning("db_connect_retry", attempt=attempt + 1, delay_s=delay, path=path)
                time.sleep(delay)
        raise RuntimeError("unreachable")

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS key_material (
                key_id TEXT NOT NULL,
                epoch INTEGER NOT NULL,
                share TEXT NOT NULL,
                public_key TEXT NOT NULL,
                threshold INTEGER NOT NULL,
                num_parties INTEGER NOT NULL,
                stored_at REAL NOT NULL,
                PRIMARY KEY (key_id, epoch)
            );
            CREATE TABLE IF NOT EXISTS wallet (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                private_key BLOB NOT NULL,
                created_at REAL NOT NULL
            );
        """)
        self._conn.commit()

    @staticmethod
    def _row_to_material(row: tuple) -> OprfKeyMaterial:
        key_id, epoch, share, public_key, threshold, num_parties = row
        try:
            return OprfKeyMaterial(
                key_id=OprfKeyId(int(key_id, 16)),
                epoch=ShareEpoch(epoch),
                share=scalar_from_hex(share),
                public_key=Point.from_hex(public_key),
                threshold=threshold,
                num_parties=num_parties,
            )
        except (InvalidPointError, ValueError) as exc:
            raise SecretManagerError(f"Corrupt key material row for key {key_id} epoch {epoch}") from exc

    async def _load_material(self, key_id: int, epoch: int) -> OprfKeyMaterial | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT key_id, epoch, share, public_key, threshold, num_parties "
                    "FROM key_material WHERE key_id = ? AND epoch = ?",
                    (f"{key_id:040x}", epoch),
                ).fetchone()
        except sqlite3.Error as exc:
            raise SecretManagerError("Failed to load key material") from exc
        return self._row_to_material(row) if row else None

    async def _load_all_material(self) -> list[OprfKeyMaterial]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT key_id, epoch, share, public_key, threshold, num_parties "
                    "FROM key_material ORDER BY key_id, epoch",
                ).fetchall()
        except sqlite3.Error as exc:
            raise SecretManagerError("Failed to load key material") from exc
        return [self._row_to_material(row) for row in rows]

    async def _insert_material(self, material: OprfKeyMaterial) -> bool:
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO key_material "
                    "(key_id, epoch, share, public_key, threshold, num_parties, stored_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        f"{material.key_id:040x}",
                        material.epoch,
                        scalar_to_bytes(material.share).hex(),
                        material.public_key.to_hex(),
                        material.threshold,
                        material.num_parties,
                        time.time(),
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise SecretManagerError("Failed to store key material") from exc
        return cursor.rowcount == 1

    async def _delete_key(self, key_id: int) -> int:
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM key_material WHERE key_id = ?", (f"{key_id:040x}",)
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise SecretManagerError("Failed to delete key material") from exc
        return cursor.rowcount

    async def _insert_wallet_key_if_absent(self, private_key: bytes) -> bytes:
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR IGNORE INTO wallet (id, private_key, created_at) VALUES (1, ?, ?)",
                    (private_key, time.time()),
                )
                self._conn.commit()
                row = self._conn.execute("SELECT private_key FROM wallet WHERE id = 1").fetchone()
        except sqlite3.Error as exc:
            raise SecretManagerError("Failed to load wallet key") from exc
        return bytes(row[0])

    async def close(self) -> None:
        with self._lock:
            self._conn.close()
