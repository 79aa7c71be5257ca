"""Transports between the OPRF client and the nodes.

A connector opens one :class:`ConnectorSession` per node. The protocol code
only sees domain messages, so it works the same over HTTP and in-process.
"""

from __future__ import annotations

import abc
from collections.abc import Mapping

import httpx
import structlog

from toprf.api.models import OprfFinishRequest, OprfFinishResponse, OprfInitRequest, OprfInitResponse
from toprf.api.versioning import PROTOCOL_VERSION, PROTOCOL_VERSION_HEADER
from toprf.config import Config
from toprf.core.messages import ChallengeRequest, ChallengeResponse, OprfRequest, OprfResponse
from toprf.core.oprf_service import OprfNodeService

log = structlog.get_logger()

_VERSION_HEADERS = {PROTOCOL_VERSION_HEADER: PROTOCOL_VERSION}


class NodeRequestError(Exception):
    """A node answered with an error status or an unparseable body."""

    def __init__(self, service: str, status_code: int | None, detail: str) -> None:
        super().__init__(f"{service}: {status_code} {detail}")
        self.service = service
        self.status_code = status_code
        self.detail = detail


class ConnectorSession(abc.ABC):
    def __init__(self, service: str, module: str) -> None:
        self.service = service
        self.module = module

    @abc.abstractmethod
    async def init(self, request: OprfRequest) -> OprfResponse: ...

    @abc.abstractmethod
    async def finish(self, request: ChallengeRequest) -> ChallengeResponse: ...

    async def close(self) -> None:
        """Tell the node to drop the session, if it is still open."""


class Connector(abc.ABC):
    @abc.abstractmethod
    async def open_session(self, service: str, module: str) -> ConnectorSession: ...


class HttpConnectorSession(ConnectorSession):
    def __init__(self, client: httpx.AsyncClient, service: str, module: str) -> None:
        super().__init__(service, module)
        self._client = client
        self._base = f"{service.rstrip('/')}/api/{module}/oprf"
        self._request_id: str | None = None
        self._finished = False

    async def _post(self, url: str, payload: dict) -> dict:
        resp = await self._client.post(url, json=payload, headers=_VERSION_HEADERS)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.status_code != 200:
            detail = body.get("detail", resp.text) if isinstance(body, dict) else resp.text
            raise NodeRequestError(self.service, resp.status_code, str(detail))
        if not isinstance(body, dict):
            raise NodeRequestError(self.service, resp.status_code, "response body is not a JSON object")
        return body

    async def init(self, request: OprfRequest) -> OprfResponse:
        self._request_id = str(request.request_id)
        body = await self._post(
            f"{self._base}/init", OprfInitRequest.from_domain(request).model_dump(mode="json")
        )
        try:
            return OprfInitResponse.model_validate(body).to_domain()
        except ValueError as exc:
            raise NodeRequestError(self.service, 200, f"malformed init response: {exc}") from exc

    async def finish(self, request: ChallengeRequest) -> ChallengeResponse:
        body = await self._post(
            f"{self._base}/finish", OprfFinishRequest.from_domain(request).model_dump(mode="json")
        )
        self._finished = True
        try:
            return OprfFinishResponse.model_validate(body).to_domain()
        except ValueError as exc:
            raise NodeRequestError(self.service, 200, f"malformed finish response: {exc}") from exc

    async def close(self) -> None:
        if self._request_id is None or self._finished:
            return
        try:
            await self._client.delete(f"{self._base}/{self._request_id}")
        except httpx.HTTPError as e:
            log.debug("oprf_session_close_failed", service=self.service, err=str(e))


class HttpConnector(Connector):
    """JSON over HTTP(S) with httpx. Pass ``transport`` to route in-process in tests.

    ``timeout`` defaults to the configured ``HTTP_TIMEOUT``.
    """

    def __init__(
        self,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if timeout is None:
            timeout = Config().http_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    async def open_session(self, service: str, module: str) -> ConnectorSession:
        return HttpConnectorSession(self._client, service, module)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpConnector:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


class LocalConnectorSession(ConnectorSession):
    def __init__(self, node: OprfNodeService, service: str, module: str) -> None:
        super().__init__(service, module)
        self._node = node
        self._request_id = None
        self._finished = False

    async def init(self, request: OprfRequest) -> OprfResponse:
        self._request_id = request.request_id
        return await self._node.init_session(self.module, request)

    async def finish(self, request: ChallengeRequest) -> ChallengeResponse:
        self._finished = True
        return self._node.finish_session(self.module, request)

    async def close(self) -> None:
        if self._request_id is not None and not self._finished:
            self._node.abort_session(self.module, self._request_id)


class LocalConnector(Connector):
    """Dispatches directly to node services living in the same process."""

    def __init__(self, nodes: Mapping[str, OprfNodeService]) -> None:
        self._nodes = dict(nodes)

    async def open_session(self, service: str, module: str) -> ConnectorSession:
        node = self._nodes.get(service)
        if node is None:
            raise ConnectionError(f"No node at {service}")
        return LocalConnectorSession(node, service, module)
