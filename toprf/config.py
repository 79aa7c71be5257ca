"""Node configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _int_env(key: str, default: str) -> int:
    val = os.getenv(key, default)
    try:
        return int(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid integer for {key}: {val!r}")


def _float_env(key: str, default: str) -> float:
    val = os.getenv(key, default)
    try:
        return float(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid float for {key}: {val!r}")


@dataclass(frozen=True)
class Config:
    environment: str = os.getenv("ENVIRONMENT", "dev")

    # Position in the key registry plus one; also the Lagrange index
    party_id: int = _int_env("PARTY_ID", "1")

    # Node API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = _int_env("API_PORT", "10000")
    cors_origins: str = os.getenv("CORS_ORIGINS", "")
    # Semver requirement on the X-Toprf-Protocol-Version header of session inits
    client_version_req: str = os.getenv("CLIENT_VERSION_REQ", "^1.0.0")
    max_request_bytes: int = _int_env("MAX_REQUEST_BYTES", "8192")

    # Comma-separated module names, each served under /api/{module}/oprf
    oprf_modules: str = os.getenv("OPRF_MODULES", "default")
    auth_mode: str = os.getenv("AUTH_MODE", "passthrough")
    auth_hmac_secret: str = os.getenv("AUTH_HMAC_SECRET", "")

    # Secret storage
    secret_manager: str = os.getenv("SECRET_MANAGER", "sqlite")
    data_dir: str = os.getenv("DATA_DIR", "data")
    aws_region: str = os.getenv("AWS_REGION", "")
    aws_secret_prefix: str = os.getenv("AWS_SECRET_PREFIX", "toprf")
    wallet_secret_id: str = os.getenv("WALLET_SECRET_ID", "toprf/wallet")
    max_epoch_cache_size: int = _int_env("MAX_EPOCH_CACHE_SIZE", "1024")

    # Chain (comma-separated URLs for failover)
    chain_rpc_url: str = os.getenv("CHAIN_RPC_URL", "http://127.0.0.1:8545")
    chain_id: int = _int_env("CHAIN_ID", "31337")
    key_registry_address: str = os.getenv("KEY_REGISTRY_ADDRESS", "")
    start_block: int = _int_env("START_BLOCK", "0")
    poll_interval: float = _float_env("POLL_INTERVAL", "2.0")

    @property
    def rpc_urls(self) -> list[str]:
        """Parse comma-separated RPC URLs for failover support."""
        return [u.strip() for u in self.chain_rpc_url.split(",") if u.strip()]

    @property
    def modules(self) -> list[str]:
        return [m.strip() for m in self.oprf_modules.split(",") if m.strip()]

    # Protocol timing (seconds)
    session_lifetime: float = _float_env("SESSION_LIFETIME", "60.0")
    secret_gen_round_timeout: float = _float_env("SECRET_GEN_ROUND_TIMEOUT", "300.0")
    tx_confirmation_timeout: float = _float_env("TX_CONFIRMATION_TIMEOUT", "120.0")

    # Timeouts (seconds)
    http_timeout: int = _int_env("HTTP_TIMEOUT", "30")
    rpc_timeout: int = _int_env("RPC_TIMEOUT", "30")

    # Rate limits (configurable without redeploy)
    rate_limit_capacity: int = _int_env("RATE_LIMIT_CAPACITY", "200")
    rate_limit_rate: int = _int_env("RATE_LIMIT_RATE", "100")

    @property
    def is_production(self) -> bool:
        return self.environment in ("prod", "production")

    def validate(self, *, strict: bool | None = None) -> list[str]:
        """Validate config at startup. Returns list of warnings (empty = all good).

        Args:
            strict: If True, raise ValueError on any warning. Defaults to True
                    when ENVIRONMENT is production.
        """
        if strict is None:
            strict = self.is_production
        import re

        from toprf.api.versioning import VersionRequirement

        warnings = []
        if not (1 <= self.party_id <= 0xFFFF):
            raise ValueError(f"PARTY_ID must be 1-65535, got {self.party_id}")
        if self.api_port < 1 or self.api_port > 65535:
            raise ValueError(f"API_PORT must be 1-65535, got {self.api_port}")
        try:
            VersionRequirement(self.client_version_req)
        except ValueError:
            raise ValueError(f"CLIENT_VERSION_REQ is not a valid version requirement: {self.client_version_req!r}")
        if not (256 <= self.max_request_bytes <= 1_048_576):
            raise ValueError(f"MAX_REQUEST_BYTES must be 256-1048576, got {self.max_request_bytes}")
        if not self.modules:
            raise ValueError("OPRF_MODULES must name at least one module")
        for module in self.modules:
            if not re.match(r"^[A-Za-z0-9_-]+$", module):
                raise ValueError(f"OPRF_MODULES entry {module!r} must be alphanumeric, '-' or '_'")
        if self.auth_mode not in ("passthrough", "hmac"):
            raise ValueError(f"AUTH_MODE must be 'passthrough' or 'hmac', got {self.auth_mode!r}")
        if self.auth_mode == "hmac" and len(self.auth_hmac_secret) < 16:
            raise ValueError("AUTH_HMAC_SECRET must be at least 16 characters when AUTH_MODE=hmac")
        if self.auth_mode == "passthrough":
            if self.is_production:
                raise ValueError("AUTH_MODE=passthrough is not allowed in production")
            warnings.append("AUTH_MODE=passthrough: every request is granted the key it asks for")
        if self.secret_manager not in ("sqlite", "aws"):
            raise ValueError(f"SECRET_MANAGER must be 'sqlite' or 'aws', got {self.secret_manager!r}")
        if self.secret_manager == "aws" and not self.aws_region:
            warnings.append("AWS_REGION not set: falling back to the boto3 default region")
        if self.max_epoch_cache_size < 1:
            raise ValueError(f"MAX_EPOCH_CACHE_SIZE must be >= 1, got {self.max_epoch_cache_size}")
        if not self.rpc_urls:
            raise ValueError("CHAIN_RPC_URL must contain at least one URL")
        if not self.key_registry_address:
            if self.is_production:
                raise ValueError("KEY_REGISTRY_ADDRESS must be set in production")
            warnings.append("KEY_REGISTRY_ADDRESS not set: key generation events will not be observed")
        elif not re.match(r"^0x[0-9a-fA-F]{40}$", self.key_registry_address):
            raise ValueError(f"KEY_REGISTRY_ADDRESS is not a valid Ethereum address: {self.key_registry_address!r}")
        if self.start_block < 0:
            raise ValueError(f"START_BLOCK must be >= 0, got {self.start_block}")
        if self.poll_interval <= 0:
            raise ValueError(f"POLL_INTERVAL must be > 0, got {self.poll_interval}")
        if self.session_lifetime < 1.0 or self.session_lifetime > 600.0:
            raise ValueError(f"SESSION_LIFETIME must be 1.0-600.0, got {self.session_lifetime}")
        if self.secret_gen_round_timeout < 10.0:
            raise ValueError(f"SECRET_GEN_ROUND_TIMEOUT must be >= 10.0, got {self.secret_gen_round_timeout}")
        if self.tx_confirmation_timeout < 1.0:
            raise ValueError(f"TX_CONFIRMATION_TIMEOUT must be >= 1.0, got {self.tx_confirmation_timeout}")
        if self.http_timeout < 1:
            raise ValueError(f"HTTP_TIMEOUT must be >= 1, got {self.http_timeout}")
        if self.rpc_timeout < 1:
            raise ValueError(f"RPC_TIMEOUT must be >= 1, got {self.rpc_timeout}")
        if self.rate_limit_capacity < 1:
            raise ValueError(f"RATE_LIMIT_CAPACITY must be >= 1, got {self.rate_limit_capacity}")
        if self.rate_limit_rate < 1:
            raise ValueError(f"RATE_LIMIT_RATE must be >= 1, got {self.rate_limit_rate}")
        known_envs = ("dev", "test", "staging", "prod", "production")
        if self.environment not in known_envs:
            warnings.append(f"ENVIRONMENT={self.environment!r} is not recognized ({', '.join(known_envs)})")
        if strict and warnings:
            raise ValueError("Config validation failed in strict mode:\n" + "\n".join(f"  - {w}" for w in warnings))
        return warnings
