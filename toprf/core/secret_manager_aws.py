"""AWS Secrets Manager backend.

Each OPRF key is one secret named ``{prefix}/oprf/{key_id}`` whose JSON value
holds every epoch this node has committed. The wallet key is a separate
secret. boto3 is blocking, so every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import threading
from typing import Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from toprf.core.key_material import OprfKeyId, OprfKeyMaterial, ShareEpoch
from toprf.core.secret_manager import DEFAULT_MAX_CACHE_SIZE, SecretManager, SecretManagerError
from toprf.utils.crypto import scalar_from_hex, scalar_to_bytes
from toprf.utils.curve import InvalidPointError, Point

log = structlog.get_logger()


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class AwsSecretManager(SecretManager):
    def __init__(
        self,
        secret_prefix: str,
        wallet_secret_id: str,
        region_name: str | None = None,
        client: Any = None,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE,
    ) -> None:
        super().__init__(max_cache_size)
        self._prefix = secret_prefix.rstrip("/")
        self._wallet_secret_id = wallet_secret_id
        self._client = client or boto3.client("secretsmanager", region_name=region_name)
        # Read-modify-write of a key's secret is serialized within the process
        self._write_lock = threading.Lock()

    def _secret_id(self, key_id: int) -> str:
        return f"{self._prefix}/oprf/{key_id:040x}"

    # -- sync helpers (run in threads) --

    def _get_secret_json(self, secret_id: str) -> dict | None:
        try:
            response = self._client.get_secret_value(SecretId=secret_id)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return None
            raise SecretManagerError(f"Failed to read secret {secret_id}") from exc
        except BotoCoreError as exc:
            raise SecretManagerError(f"Failed to read secret {secret_id}") from exc
        try:
            return json.loads(response["SecretString"])
        except (KeyError, ValueError) as exc:
            raise SecretManagerError(f"Secret {secret_id} is not valid JSON") from exc

    @staticmethod
    def _decode_epochs(document: dict) -> list[OprfKeyMaterial]:
        try:
            key_id = OprfKeyId(int(document["key_id"], 16))
            return [
                OprfKeyMaterial(
                    key_id=key_id,
                    epoch=ShareEpoch(int(epoch)),
                    share=scalar_from_hex(entry["share"]),
                    public_key=Point.from_hex(entry["public_key"]),
                    threshold=int(entry["threshold"]),
                    num_parties=int(entry["num_parties"]),
                )
                for epoch, entry in document["epochs"].items()
            ]
        except (KeyError, TypeError, ValueError, InvalidPointError) as exc:
            raise SecretManagerError("Corrupt key material secret") from exc

    @staticmethod
    def _encode_entry(material: OprfKeyMaterial) -> dict:
        return {
            "share": scalar_to_bytes(material.share).hex(),
            "public_key": material.public_key.to_hex(),
            "threshold": material.threshold,
            "num_parties": material.num_parties,
        }

    def _load_material_sync(self, key_id: int, epoch: int) -> OprfKeyMaterial | None:
        document = self._get_secret_json(self._secret_id(key_id))
        if document is None or str(epoch) not in document.get("epochs", {}):
            return None
        return next(m for m in self._decode_epochs(document) if m.epoch == epoch)

    def _load_all_sync(self) -> list[OprfKeyMaterial]:
        materials: list[OprfKeyMaterial] = []
        try:
            paginator = self._client.get_paginator("list_secrets")
            pages = paginator.paginate(Filters=[{"Key": "name", "Values": [f"{self._prefix}/oprf/"]}])
            names = [entry["Name"] for page in pages for entry in page.get("SecretList", [])]
        except (ClientError, BotoCoreError) as exc:
            raise SecretManagerError("Failed to list secrets") from exc
        for name in names:
            document = self._get_secret_json(name)
            if document is not None:
                materials.extend(self._decode_epochs(document))
        return materials

    def _insert_material_sync(self, material: OprfKeyMaterial) -> bool:
        secret_id = self._secret_id(material.key_id)
        with self._write_lock:
            document = self._get_secret_json(secret_id)
            try:
                if document is None:
                    document = {"key_id": f"{material.key_id:040x}", "epochs": {}}
                    document["epochs"][str(material.epoch)] = self._encode_entry(material)
                    self._client.create_secret(Name=secret_id, SecretString=json.dumps(document))
                    return True
                if str(material.epoch) in document["epochs"]:
                    return False
                document["epochs"][str(material.epoch)] = self._encode_entry(material)
                self._client.put_secret_value(SecretId=secret_id, SecretString=json.dumps(document))
                return True
            except ClientError as exc:
                if _error_code(exc) == "ResourceExistsException":
                    # Created concurrently by another writer; let the caller compare
                    return False
                raise SecretManagerError(f"Failed to write secret {secret_id}") from exc
            except BotoCoreError as exc:
                raise SecretManagerError(f"Failed to write secret {secret_id}") from exc

    def _delete_key_sync(self, key_id: int) -> int:
        secret_id = self._secret_id(key_id)
        with self._write_lock:
            document = self._get_secret_json(secret_id)
            if document is None:
                return 0
            try:
                self._client.delete_secret(SecretId=secret_id, ForceDeleteWithoutRecovery=True)
            except (ClientError, BotoCoreError) as exc:
                raise SecretManagerError(f"Failed to delete secret {secret_id}") from exc
            return len(document.get("epochs", {}))

    def _insert_wallet_sync(self, private_key: bytes) -> bytes:
        try:
            self._client.create_secret(Name=self._wallet_secret_id, SecretString=private_key.hex())
            return private_key
        except ClientError as exc:
            if _error_code(exc) != "ResourceExistsException":
                raise SecretManagerError("Failed to create wallet secret") from exc
        except BotoCoreError as exc:
            raise SecretManagerError("Failed to create wallet secret") from exc
        try:
            response = self._client.get_secret_value(SecretId=self._wallet_secret_id)
            return bytes.fromhex(response["SecretString"].removeprefix("0x"))
        except (ClientError, BotoCoreError, KeyError, ValueError) as exc:
            raise SecretManagerError("Failed to read wallet secret") from exc

    # -- SecretManager primitives --

    async def _load_material(self, key_id: int, epoch: int) -> OprfKeyMaterial | None:
        return await asyncio.to_thread(self._load_material_sync, key_id, epoch)

    async def _load_all_material(self) -> list[OprfKeyMaterial]:
        return await asyncio.to_thread(self._load_all_sync)

    async def _insert_material(self, material: OprfKeyMaterial) -> bool:
        return await asyncio.to_thread(self._insert_material_sync, material)

    async def _delete_key(self, key_id: int) -> int:
        return await asyncio.to_thread(self._delete_key_sync, key_id)

    async def _insert_wallet_key_if_absent(self, private_key: bytes) -> bytes:
        return await asyncio.to_thread(self._insert_wallet_sync, private_key)
