"""Client for evaluating the OPRF against a set of nodes."""

from toprf.client.connector import Connector, ConnectorSession, HttpConnector, LocalConnector, NodeRequestError
from toprf.client.protocol import (
    InvalidDLogProofError,
    NonUniqueServicesError,
    NotEnoughOprfResponsesError,
    OprfClientError,
    VerifiableOprfOutput,
    distributed_oprf,
)

__all__ = [
    "Connector",
    "ConnectorSession",
    "HttpConnector",
    "InvalidDLogProofError",
    "LocalConnector",
    "NodeRequestError",
    "NonUniqueServicesError",
    "NotEnoughOprfResponsesError",
    "OprfClientError",
    "VerifiableOprfOutput",
    "distributed_oprf",
]
