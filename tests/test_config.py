"""Tests for node configuration loading and validation."""

from __future__ import annotations

import pytest

from toprf.config import Config, _float_env, _int_env

VALID_REGISTRY = "0x" + "ab" * 20


def _config(**overrides: object) -> Config:
    """Create a Config with overridden fields (bypasses frozen restriction)."""
    config = Config()
    for k, v in overrides.items():
        object.__setattr__(config, k, v)
    return config


class TestConfigDefaults:
    def test_defaults(self) -> None:
        config = Config()
        assert config.api_port == 10000
        assert config.party_id == 1
        assert config.modules == ["default"]

    def test_environment_from_conftest(self) -> None:
        assert Config().environment == "test"

    def test_rpc_urls_split(self) -> None:
        config = _config(chain_rpc_url="http://a:8545, http://b:8545,")
        assert config.rpc_urls == ["http://a:8545", "http://b:8545"]

    def test_modules_split(self) -> None:
        assert _config(oprf_modules="alpha, beta").modules == ["alpha", "beta"]


class TestEnvParsing:
    def test_int_env_invalid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOPRF_TEST_INT", "abc")
        with pytest.raises(ValueError, match="Invalid integer for TOPRF_TEST_INT"):
            _int_env("TOPRF_TEST_INT", "1")

    def test_float_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOPRF_TEST_FLOAT", "2.5")
        assert _float_env("TOPRF_TEST_FLOAT", "1.0") == 2.5
        monkeypatch.setenv("TOPRF_TEST_FLOAT", "x")
        with pytest.raises(ValueError, match="Invalid float"):
            _float_env("TOPRF_TEST_FLOAT", "1.0")


class TestConfigValidation:
    def test_valid_hmac_config_no_warnings(self) -> None:
        config = _config(auth_mode="hmac", auth_hmac_secret="s" * 16, key_registry_address=VALID_REGISTRY)
        assert config.validate() == []

    def test_passthrough_warns_in_dev(self) -> None:
        warnings = _config(auth_mode="passthrough", key_registry_address=VALID_REGISTRY).validate()
        assert any("passthrough" in w for w in warnings)

    def test_passthrough_rejected_in_production(self) -> None:
        with pytest.raises(ValueError, match="not allowed in production"):
            _config(environment="production", auth_mode="passthrough").validate()

    def test_short_hmac_secret(self) -> None:
        with pytest.raises(ValueError, match="AUTH_HMAC_SECRET"):
            _config(auth_mode="hmac", auth_hmac_secret="short").validate()

    def test_unknown_auth_mode(self) -> None:
        with pytest.raises(ValueError, match="AUTH_MODE"):
            _config(auth_mode="jwt").validate()

    def test_invalid_party_id(self) -> None:
        with pytest.raises(ValueError, match="PARTY_ID"):
            _config(party_id=0).validate()

    def test_invalid_module_name(self) -> None:
        with pytest.raises(ValueError, match="OPRF_MODULES"):
            _config(oprf_modules="ok,bad/name").validate()

    def test_no_modules(self) -> None:
        with pytest.raises(ValueError, match="at least one module"):
            _config(oprf_modules=" , ").validate()

    def test_unknown_secret_manager(self) -> None:
        with pytest.raises(ValueError, match="SECRET_MANAGER"):
            _config(secret_manager="vault").validate()

    def test_aws_without_region_warns(self) -> None:
        warnings = _config(secret_manager="aws", aws_region="", key_registry_address=VALID_REGISTRY).validate()
        assert any("AWS_REGION" in w for w in warnings)

    def test_missing_registry_warns_in_dev(self) -> None:
        warnings = _config(key_registry_address="").validate()
        assert any("KEY_REGISTRY_ADDRESS" in w for w in warnings)

    def test_missing_registry_raises_in_production(self) -> None:
        with pytest.raises(ValueError, match="KEY_REGISTRY_ADDRESS must be set"):
            _config(
                environment="production", auth_mode="hmac", auth_hmac_secret="s" * 16, key_registry_address=""
            ).validate()

    def test_invalid_registry_address(self) -> None:
        with pytest.raises(ValueError, match="not a valid Ethereum address"):
            _config(key_registry_address="0x1234").validate()

    def test_session_lifetime_bounds(self) -> None:
        with pytest.raises(ValueError, match="SESSION_LIFETIME"):
            _config(session_lifetime=0.5).validate()
        with pytest.raises(ValueError, match="SESSION_LIFETIME"):
            _config(session_lifetime=601.0).validate()

    def test_round_timeout_minimum(self) -> None:
        with pytest.raises(ValueError, match="SECRET_GEN_ROUND_TIMEOUT"):
            _config(secret_gen_round_timeout=5.0).validate()

    def test_empty_rpc_urls(self) -> None:
        with pytest.raises(ValueError, match="CHAIN_RPC_URL"):
            _config(chain_rpc_url="").validate()

    def test_unknown_environment_warns(self) -> None:
        warnings = _config(environment="qa", key_registry_address=VALID_REGISTRY).validate()
        assert any("ENVIRONMENT" in w for w in warnings)

    def test_strict_mode_raises_on_warnings(self) -> None:
        with pytest.raises(ValueError, match="strict mode"):
            _config(key_registry_address="").validate(strict=True)

    def test_production_is_strict(self) -> None:
        config = _config(
            environment="production",
            auth_mode="hmac",
            auth_hmac_secret="s" * 16,
            key_registry_address=VALID_REGISTRY,
            secret_manager="aws",
            aws_region="",
        )
        with pytest.raises(ValueError, match="strict mode"):
            config.validate()

    def test_invalid_client_version_requirement(self) -> None:
        with pytest.raises(ValueError, match="CLIENT_VERSION_REQ"):
            _config(client_version_req=">=one").validate()

    def test_max_request_bytes_bounds(self) -> None:
        with pytest.raises(ValueError, match="MAX_REQUEST_BYTES"):
            _config(max_request_bytes=10).validate()
