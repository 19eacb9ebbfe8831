"""
Unit tests for AdmissionConfig.
"""

import pytest
from pydantic import ValidationError

from shared.config import AdmissionConfig, UnknownFieldPolicy, get_config


class TestAdmissionConfig:
    """Test cases for AdmissionConfig."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ADMISSION_RATE_LIMIT__CAPACITY", raising=False)

        config = AdmissionConfig()

        assert config.service_name == "admission"
        assert config.rate_limit.capacity == 60
        assert config.rate_limit.backend == "memory"
        assert config.auth.required is True
        assert config.validation.unknown_field_policy is UnknownFieldPolicy.STRIP
        assert config.identity.precedence == ["ip"]
        assert config.shutdown.drain_timeout_seconds == 30.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ADMISSION_RATE_LIMIT__CAPACITY", "5")
        monkeypatch.setenv("ADMISSION_RATE_LIMIT__REFILL_PER_SECOND", "0.5")
        monkeypatch.setenv("ADMISSION_VALIDATION__UNKNOWN_FIELD_POLICY", "reject")
        monkeypatch.setenv("ADMISSION_JWKS_URL", "http://keycloak/certs")

        config = AdmissionConfig()

        assert config.rate_limit.capacity == 5
        assert config.rate_limit.refill_per_second == 0.5
        assert config.validation.unknown_field_policy is UnknownFieldPolicy.REJECT
        assert config.jwks_url == "http://keycloak/certs"

    def test_explicit_overrides(self):
        config = get_config(shutdown={"drain_timeout_seconds": 2}, auth={"required": False})

        assert config.shutdown.drain_timeout_seconds == 2
        assert config.auth.required is False

    @pytest.mark.parametrize("overrides", [
        {"rate_limit": {"capacity": -1}},
        {"rate_limit": {"backend": "memcached"}},
        {"shutdown": {"drain_timeout_seconds": 0}},
        {"rate_limit": {"shards": 0}},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            get_config(**overrides)
