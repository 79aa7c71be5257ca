"""On-chain key registry backed by the OprfKeyRegistry contract.

Reads registry events with ``eth_getLogs`` and contributions with view
calls; submits this node's contributions as transactions signed by the node
wallet. Supports multiple RPC URLs with automatic failover on connection
errors.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.contract.async_contract import AsyncContractFunction
from web3.exceptions import TimeExhausted

from toprf.api.metrics import RPC_FAILOVERS, TRANSACTIONS_SUBMITTED
from toprf.chain.registry import KeyRegistry, KeyRegistryEvent, RegistryEventKind
from toprf.core.key_material import OprfKeyId, ShareEpoch, format_key_id
from toprf.core.keygen import SharePacket
from toprf.core.nonce_store import TransactionNonceStore
from toprf.core.secret_gen import Round1Contribution, Round2Contribution, Round3Contribution
from toprf.utils.circuit_breaker import CircuitBreaker
from toprf.utils.curve import POINT_BYTES, Point

log = structlog.get_logger()


def _event(name: str, *inputs: tuple[str, str, bool]) -> dict[str, Any]:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


_KEY_ID = ("oprfKeyId", "uint160", True)
_EPOCH = ("epoch", "uint32", False)
_THRESHOLD = ("threshold", "uint16", False)

_PACKET_COMPONENTS = [
    {"name": "recipient", "type": "uint16"},
    {"name": "nonce", "type": "uint256"},
    {"name": "ciphertext", "type": "uint256"},
    {"name": "commitment", "type": "bytes"},
]

# Minimal ABI: only the events and functions the node needs
KEY_REGISTRY_ABI: list[dict[str, Any]] = [
    _event("SecretGenRound1", _KEY_ID, _EPOCH, _THRESHOLD),
    _event("ReshareRound1", _KEY_ID, _EPOCH, _THRESHOLD),
    _event("SecretGenRound2", _KEY_ID, _EPOCH),
    _event("SecretGenRound3", _KEY_ID, _EPOCH),
    _event("ReshareRound3", _KEY_ID, _EPOCH, ("producers", "uint16[]", False)),
    _event("SecretGenFinalize", _KEY_ID, _EPOCH),
    _event("SecretGenAbort", _KEY_ID),
    _event("KeyDeletion", _KEY_ID),
    {
        "inputs": [{"name": "oprfKeyId", "type": "uint160"}],
        "name": "getRound1Contributions",
        "outputs": [
            {
                "components": [
                    {"name": "partyId", "type": "uint16"},
                    {"name": "ephemeralPublicKey", "type": "bytes"},
                    {"name": "commShare", "type": "bytes"},
                    {"name": "commCoeffs", "type": "bytes32"},
                ],
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "oprfKeyId", "type": "uint160"},
            {"name": "partyId", "type": "uint16"},
        ],
        "name": "getRound2Contributions",
        "outputs": [
            {
                "components": [
                    {"name": "partyId", "type": "uint16"},
                    {"name": "commitments", "type": "bytes"},
                    {"name": "packets", "type": "tuple[]", "components": _PACKET_COMPONENTS},
                ],
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "oprfKeyId", "type": "uint160"}],
        "name": "getOprfPublicKey",
        "outputs": [{"name": "", "type": "bytes"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "oprfKeyId", "type": "uint160"},
            {"name": "ephemeralPublicKey", "type": "bytes"},
            {"name": "commShare", "type": "bytes"},
            {"name": "commCoeffs", "type": "bytes32"},
        ],
        "name": "addRound1Contribution",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "oprfKeyId", "type": "uint160"},
            {"name": "commitments", "type": "bytes"},
            {"name": "packets", "type": "tuple[]", "components": _PACKET_COMPONENTS},
        ],
        "name": "addRound2Contribution",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "oprfKeyId", "type": "uint160"},
            {"name": "publicShare", "type": "bytes"},
        ],
        "name": "addRound3Contribution",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "oprfKeyId", "type": "uint160"},
            {"name": "epoch", "type": "uint32"},
        ],
        "name": "confirmFinalize",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def _event_topics() -> dict[bytes, RegistryEventKind]:
    topics = {}
    for entry in KEY_REGISTRY_ABI:
        if entry["type"] != "event":
            continue
        signature = f"{entry['name']}({','.join(i['type'] for i in entry['inputs'])})"
        topics[bytes(Web3.keccak(text=signature))] = RegistryEventKind(entry["name"])
    return topics


EVENT_TOPICS = _event_topics()

# Connection-type errors that indicate the RPC endpoint is unreachable
_FAILOVER_ERRORS = (ConnectionError, OSError, TimeoutError)


class TransactionFailedError(Exception):
    """A registry transaction was mined but reverted, or never confirmed."""


def _points_to_bytes(points: tuple[Point, ...]) -> bytes:
    return b"".join(p.to_bytes() for p in points)


def _points_from_bytes(data: bytes) -> tuple[Point, ...]:
    if len(data) % POINT_BYTES:
        raise ValueError(f"Commitment blob of {len(data)} bytes is not a list of points")
    return tuple(Point.from_bytes(data[i : i + POINT_BYTES]) for i in range(0, len(data), POINT_BYTES))


class Web3KeyRegistry(KeyRegistry):
    """Async client for the OprfKeyRegistry contract.

    Pass a comma-separated string or a list of RPC URLs. On connection
    failure the client rotates to the next endpoint and retries.
    """

    def __init__(
        self,
        rpc_url: str | list[str],
        registry_address: str,
        account: LocalAccount,
        nonce_store: TransactionNonceStore | None = None,
        chain_id: int = 31337,
        rpc_timeout: float = 30.0,
        confirmation_timeout: float = 120.0,
    ) -> None:
        if isinstance(rpc_url, str):
            self._rpc_urls = [u.strip() for u in rpc_url.split(",") if u.strip()]
        else:
            self._rpc_urls = list(rpc_url)
        if not self._rpc_urls:
            raise ValueError("At least one RPC URL is required")
        self._rpc_index = 0
        self._registry_address = registry_address
        self._account = account
        self._chain_id = chain_id
        self._rpc_timeout = rpc_timeout
        self._confirmation_timeout = confirmation_timeout
        self._circuit_breaker = CircuitBreaker(
            name="rpc",
            failure_threshold=3,
            recovery_timeout=30.0,
        )
        self._w3 = self._create_provider(self._rpc_urls[0])
        self._setup_contract()
        self.nonce_store = nonce_store or TransactionNonceStore(self._pending_nonce)

    def _create_provider(self, url: str) -> AsyncWeb3:
        return AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                url,
                request_kwargs={"timeout": self._rpc_timeout},
            )
        )

    def _setup_contract(self) -> None:
        self._registry: AsyncContract = self._w3.eth.contract(
            address=Web3.to_checksum_address(self._registry_address),
            abi=KEY_REGISTRY_ABI,
        )

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def rpc_url(self) -> str:
        """Current active RPC URL."""
        return self._rpc_urls[self._rpc_index]

    def _rotate_rpc(self) -> bool:
        """Switch to the next RPC URL. Returns True if a different URL was selected."""
        if len(self._rpc_urls) <= 1:
            return False
        old_index = self._rpc_index
        self._rpc_index = (self._rpc_index + 1) % len(self._rpc_urls)
        log.warning("rpc_failover", new_url=self.rpc_url, old_index=old_index, new_index=self._rpc_index)
        self._w3 = self._create_provider(self.rpc_url)
        self._setup_contract()
        return True

    async def _with_failover(self, make_call: Callable[[], Awaitable[Any]]) -> Any:
        """Run an RPC call behind the circuit breaker, rotating endpoints on connection errors.

        ``make_call`` is re-invoked after each rotation so it picks up the
        fresh provider and contract.
        """
        if not self._circuit_breaker.allow_request():
            raise ConnectionError("RPC circuit breaker open, all endpoints unhealthy")

        total = len(self._rpc_urls)
        for tried in range(1, total + 1):
            try:
                result = await make_call()
            except _FAILOVER_ERRORS as e:
                if tried < total and self._rotate_rpc():
                    RPC_FAILOVERS.inc()
                    log.warning("rpc_call_failed_retrying", err=str(e), tried=tried)
                    continue
                self._circuit_breaker.record_failure()
                raise
            self._circuit_breaker.record_success()
            return result
        raise ConnectionError("All RPC endpoints exhausted")

    async def _pending_nonce(self) -> int:
        return await self._with_failover(
            lambda: self._w3.eth.get_transaction_count(self._account.address, "pending")
        )

    async def latest_block(self) -> int:
        return await self._with_failover(lambda: self._w3.eth.block_number)

    async def fetch_events(self, from_block: int, to_block: int) -> list[KeyRegistryEvent]:
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": self._registry.address,
            "topics": [[Web3.to_hex(topic) for topic in EVENT_TOPICS]],
        }
        logs = await self._with_failover(lambda: self._w3.eth.get_logs(params))
        events = []
        for entry in logs:
            kind = EVENT_TOPICS.get(bytes(entry["topics"][0]))
            if kind is None:
                continue
            decoded = getattr(self._registry.events, kind.value)().process_log(entry)
            args = decoded["args"]
            events.append(
                KeyRegistryEvent(
                    kind=kind,
                    key_id=OprfKeyId(args["oprfKeyId"]),
                    block_number=decoded["blockNumber"],
                    log_index=decoded["logIndex"],
                    epoch=ShareEpoch(args["epoch"]) if "epoch" in args else None,
                    threshold=args.get("threshold"),
                    parties=tuple(args.get("producers", ())),
                )
            )
        return events

    async def load_round1(self, key_id: OprfKeyId) -> list[Round1Contribution]:
        rows = await self._with_failover(lambda: self._registry.functions.getRound1Contributions(key_id).call())
        contributions = []
        for party_id, ephemeral, comm_share, comm_coeffs in rows:
            contributions.append(
                Round1Contribution(
                    party_id=party_id,
                    ephemeral_public_key=Point.from_bytes(ephemeral),
                    comm_share=Point.from_bytes(comm_share) if comm_share else None,
                    comm_coeffs=bytes(comm_coeffs) if comm_share else None,
                )
            )
        return contributions

    async def load_round2(self, key_id: OprfKeyId, party_id: int) -> list[Round2Contribution]:
        rows = await self._with_failover(
            lambda: self._registry.functions.getRound2Contributions(key_id, party_id).call()
        )
        contributions = []
        for producer, commitments, packets in rows:
            contributions.append(
                Round2Contribution(
                    party_id=producer,
                    commitments=_points_from_bytes(commitments),
                    packets=tuple(
                        SharePacket(
                            recipient=recipient,
                            nonce=nonce,
                            ciphertext=ciphertext,
                            commitment=Point.from_bytes(commitment),
                        )
                        for recipient, nonce, ciphertext, commitment in packets
                    ),
                )
            )
        return contributions

    async def load_public_key(self, key_id: OprfKeyId) -> Point:
        raw = await self._with_failover(lambda: self._registry.functions.getOprfPublicKey(key_id).call())
        return Point.from_bytes(raw)

    async def submit_round1(self, key_id: OprfKeyId, contribution: Round1Contribution) -> None:
        comm_share = contribution.comm_share.to_bytes() if contribution.comm_share is not None else b""
        await self._transact(
            "round1",
            key_id,
            lambda: self._registry.functions.addRound1Contribution(
                key_id,
                contribution.ephemeral_public_key.to_bytes(),
                comm_share,
                contribution.comm_coeffs or bytes(32),
            ),
        )

    async def submit_round2(self, key_id: OprfKeyId, contribution: Round2Contribution) -> None:
        packets = [
            (p.recipient, p.nonce, p.ciphertext, p.commitment.to_bytes()) for p in contribution.packets
        ]
        await self._transact(
            "round2",
            key_id,
            lambda: self._registry.functions.addRound2Contribution(
                key_id, _points_to_bytes(contribution.commitments), packets
            ),
        )

    async def submit_round3(self, key_id: OprfKeyId, contribution: Round3Contribution) -> None:
        await self._transact(
            "round3",
            key_id,
            lambda: self._registry.functions.addRound3Contribution(key_id, contribution.public_share.to_bytes()),
        )

    async def confirm_finalize(self, key_id: OprfKeyId, epoch: ShareEpoch, party_id: int) -> None:
        await self._transact(
            "finalize",
            key_id,
            lambda: self._registry.functions.confirmFinalize(key_id, epoch),
        )

    async def _transact(
        self,
        label: str,
        key_id: OprfKeyId,
        make_function: Callable[[], AsyncContractFunction],
    ) -> None:
        """Sign and send a registry transaction, then wait for its receipt.

        The nonce is released if the transaction never reaches the node; once
        sent it is spent even if the transaction later reverts.
        """
        async with self.nonce_store.reservation() as reservation:
            try:
                tx = await self._with_failover(
                    lambda: make_function().build_transaction(
                        {
                            "from": self._account.address,
                            "nonce": reservation.nonce,
                            "chainId": self._chain_id,
                        }
                    )
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._with_failover(
                    lambda: self._w3.eth.send_raw_transaction(signed.raw_transaction)
                )
            except Exception:
                TRANSACTIONS_SUBMITTED.labels(result="error").inc()
                raise
            reservation.mark_submitted()

        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._confirmation_timeout
            )
        except TimeExhausted as exc:
            TRANSACTIONS_SUBMITTED.labels(result="error").inc()
            self.nonce_store.mark_for_resync()
            raise TransactionFailedError(f"{label} transaction {Web3.to_hex(tx_hash)} not confirmed") from exc
        if receipt["status"] != 1:
            TRANSACTIONS_SUBMITTED.labels(result="reverted").inc()
            log.error(
                "registry_transaction_reverted",
                step=label,
                key_id=format_key_id(key_id),
                tx_hash=Web3.to_hex(tx_hash),
            )
            raise TransactionFailedError(f"{label} transaction {Web3.to_hex(tx_hash)} reverted")
        TRANSACTIONS_SUBMITTED.labels(result="ok").inc()
        log.info(
            "registry_transaction_confirmed",
            step=label,
            key_id=format_key_id(key_id),
            tx_hash=Web3.to_hex(tx_hash),
            block=receipt["blockNumber"],
        )

    async def close(self) -> None:
        """Close the underlying HTTP provider session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is None:
            return
        try:
            await asyncio.wait_for(disconnect(), timeout=5.0)
        except asyncio.TimeoutError:
            log.warning("registry_client_close_timeout")
