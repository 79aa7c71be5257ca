"""Distributed verifiable threshold OPRF node and client."""

__version__ = "0.1.0"
