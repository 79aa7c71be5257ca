"""Shared test fixtures for the node test suite."""

from __future__ import annotations

import os
import random

import pytest

# Tests must not depend on a developer's local .env
os.environ["ENVIRONMENT"] = "test"
os.environ["AUTH_MODE"] = "passthrough"
os.environ["SECRET_MANAGER"] = "sqlite"
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("CORS_ORIGINS", "http://localhost:3000")


@pytest.fixture
def rng() -> random.Random:
    """Seeded randomness so failures reproduce; never use for real keys."""
    return random.Random(0x70F0)
