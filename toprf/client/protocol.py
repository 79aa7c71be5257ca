"""Client side of the distributed verifiable OPRF.

The client blinds its query, fans the blinded point out to every service,
keeps the first ``threshold`` valid responses that agree on a public key,
and turns their commitments into one aggregated challenge. The summed proof
shares form a regular DLEQ proof; the output is only returned after that
proof verifies against the public key.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from toprf.client.connector import Connector, ConnectorSession
from toprf.core.dleq import DLogEqualityProof, combine_commitments, combine_proofs
from toprf.core.key_material import MAX_PARTY_ID, OprfKeyId, ShareEpoch, ShareIdentifier, format_key_id
from toprf.core.messages import ChallengeRequest, OprfRequest, OprfResponse
from toprf.core.oprf import BlindingFactor, blind_query, finalize_query, unblind
from toprf.utils.curve import Point

log = structlog.get_logger()


class OprfClientError(Exception):
    pass


class NonUniqueServicesError(OprfClientError):
    def __init__(self) -> None:
        super().__init__("services must be unique")


class NotEnoughOprfResponsesError(OprfClientError):
    """Fewer than ``threshold`` nodes answered with usable responses."""

    def __init__(self, threshold: int, received: int, errors: dict[str, str] | None = None) -> None:
        super().__init__(f"threshold not met: needed {threshold} responses, got {received}")
        self.threshold = threshold
        self.received = received
        self.errors = errors or {}


class InvalidDLogProofError(OprfClientError):
    def __init__(self) -> None:
        super().__init__("cannot verify dlog proof")


@dataclass(frozen=True)
class VerifiableOprfOutput:
    output: int
    dlog_proof: DLogEqualityProof
    blinded_response: Point
    blinded_request: Point
    oprf_public_key: Point
    epoch: int
    parties: tuple[int, ...]


@dataclass
class _Answer:
    service: str
    session: ConnectorSession
    response: OprfResponse


def _check_response(response: OprfResponse, request: OprfRequest) -> None:
    """Reject responses that are not for this request or carry invalid points."""
    if response.request_id != request.request_id:
        raise ValueError("response for a different request id")
    if response.epoch != request.share_identifier.epoch:
        raise ValueError(f"response for epoch {response.epoch}")
    if not 1 <= response.party_id <= MAX_PARTY_ID:
        raise ValueError(f"party id {response.party_id} out of range")
    response.oprf_public_key.validate()
    c = response.commitments
    c.c.validate()
    for point in (c.d1, c.d2, c.e1, c.e2):
        point.validate()


async def _collect(
    services: Sequence[str],
    module: str,
    threshold: int,
    request: OprfRequest,
    connector: Connector,
    oprf_public_key: Point | None,
) -> list[_Answer]:
    """Return ``threshold`` answers agreeing on one public key, closing every other session."""
    queue: asyncio.Queue[_Answer | tuple[str, Exception]] = asyncio.Queue()
    opened: list[ConnectorSession] = []

    async def _contact(service: str) -> None:
        # Every task puts exactly one item on the queue; any failure only excludes this node
        try:
            session = await connector.open_session(service, module)
            opened.append(session)
            response = await session.init(request)
            _check_response(response, request)
        except Exception as e:
            await queue.put((service, e))
            return
        await queue.put(_Answer(service=service, session=session, response=response))

    tasks = [asyncio.create_task(_contact(service)) for service in services]
    buckets: dict[Point, dict[int, _Answer]] = {}
    errors: dict[str, str] = {}
    selected: list[_Answer] | None = None
    try:
        for _ in range(len(tasks)):
            item = await queue.get()
            if isinstance(item, tuple):
                service, error = item
                errors[service] = str(error)
                log.warning(
                    "oprf_node_failed",
                    service=service,
                    request_id=str(request.request_id),
                    error_type=type(error).__name__,
                    error=str(error),
                )
                continue
            service, result = item.service, item.response
            public_key = result.oprf_public_key
            if oprf_public_key is not None and public_key != oprf_public_key:
                errors[service] = "unexpected public key"
                log.warning("oprf_node_public_key_mismatch", service=service, request_id=str(request.request_id))
                continue
            bucket = buckets.setdefault(public_key, {})
            if result.party_id in bucket:
                errors[service] = f"duplicate party id {result.party_id}"
                log.warning(
                    "oprf_duplicate_party_id",
                    service=service,
                    party_id=result.party_id,
                    other_service=bucket[result.party_id].service,
                )
                continue
            bucket[result.party_id] = item
            if len(bucket) >= threshold:
                selected = list(bucket.values())
                break
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        keep = {id(a.session) for a in selected or ()}
        await asyncio.gather(
            *(s.close() for s in opened if id(s) not in keep),
            return_exceptions=True,
        )

    if selected is None:
        received = max((len(b) for b in buckets.values()), default=0)
        raise NotEnoughOprfResponsesError(threshold, received, errors)
    return selected


async def distributed_oprf(
    services: Sequence[str],
    module: str,
    threshold: int,
    key_id: OprfKeyId,
    epoch: ShareEpoch,
    query: int,
    auth: dict[str, Any],
    connector: Connector,
    *,
    rng: random.Random | None = None,
    oprf_public_key: Point | None = None,
) -> VerifiableOprfOutput:
    """Evaluate the OPRF on ``query`` with any ``threshold`` of ``services``.

    Raises NotEnoughOprfResponsesError when too few nodes answer and
    InvalidDLogProofError when the combined proof does not verify.
    """
    if len(set(services)) != len(services):
        raise NonUniqueServicesError()
    if not 1 <= threshold <= len(services):
        raise OprfClientError(f"threshold must be in [1, {len(services)}], got {threshold}")

    request_id = uuid.uuid4()
    with BlindingFactor.random(rng) as blinding_factor:
        blinded_request = blind_query(query, blinding_factor)
        request = OprfRequest(
            request_id=request_id,
            blinded_query=blinded_request,
            share_identifier=ShareIdentifier(key_id=key_id, epoch=epoch),
            auth=auth,
        )
        answers = await _collect(services, module, threshold, request, connector, oprf_public_key)
        public_key = answers[0].response.oprf_public_key
        try:
            commitments = combine_commitments([a.response.commitments for a in answers])
            challenge = ChallengeRequest(request_id=request_id, challenge=commitments)
            results = await asyncio.gather(
                *(a.session.finish(challenge) for a in answers),
                return_exceptions=True,
            )
        finally:
            await asyncio.gather(*(a.session.close() for a in answers), return_exceptions=True)

        shares = []
        for answer, result in zip(answers, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                log.warning(
                    "oprf_node_finish_failed",
                    service=answer.service,
                    request_id=str(request_id),
                    error=str(result),
                )
                raise NotEnoughOprfResponsesError(
                    threshold, len(answers) - 1, {answer.service: str(result)}
                ) from result
            shares.append(result.proof_share)

        try:
            proof = combine_proofs(request_id.bytes, commitments, shares, public_key, blinded_request)
        except ValueError:
            proof = None
        if proof is None or not proof.verify(public_key, blinded_request, commitments.c):
            log.error(
                "dlog_proof_verification_failed",
                request_id=str(request_id),
                key_id=format_key_id(key_id),
                epoch=epoch,
                services=[a.service for a in answers],
                parties=list(commitments.parties),
            )
            raise InvalidDLogProofError()

        output = finalize_query(query, unblind(commitments.c, blinding_factor))

    log.debug(
        "oprf_evaluated",
        request_id=str(request_id),
        key_id=format_key_id(key_id),
        epoch=epoch,
        parties=list(commitments.parties),
    )
    return VerifiableOprfOutput(
        output=output,
        dlog_proof=proof,
        blinded_response=commitments.c,
        blinded_request=blinded_request,
        oprf_public_key=public_key,
        epoch=epoch,
        parties=commitments.parties,
    )
