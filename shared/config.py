"""
Shared configuration management for the admission pipeline.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class UnknownFieldPolicy(str, Enum):
    """What the validator does with fields a schema does not declare."""

    STRIP = "strip"
    REJECT = "reject"


class RateLimitSettings(BaseModel):
    """Token bucket sizing."""

    capacity: float = Field(default=60, ge=0)
    refill_per_second: float = Field(default=1.0, ge=0)
    idle_eviction_seconds: float = Field(default=300.0, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    shards: int = Field(default=16, ge=1)
    backend: str = Field(default="memory", pattern="^(memory|redis)$")


class AuthSettings(BaseModel):
    """Route authentication defaults."""

    required: bool = True
    timeout_seconds: Optional[float] = Field(default=5.0, gt=0)


class ValidationSettings(BaseModel):
    unknown_field_policy: UnknownFieldPolicy = UnknownFieldPolicy.STRIP


class IdentitySettings(BaseModel):
    """Client identity derivation for rate limiting."""

    precedence: List[str] = Field(default_factory=lambda: ["ip"], min_length=1)
    trust_forwarded_headers: bool = False
    api_key_header: str = "X-API-Key"


class ShutdownSettings(BaseModel):
    drain_timeout_seconds: float = Field(default=30.0, gt=0)


class AdmissionConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        env_nested_delimiter="__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    service_name: str = "admission"
    env: str = "local"
    log_level: str = "info"
    log_format: str = Field(default="json", pattern="^(json|console)$")
    host: str = "0.0.0.0"
    port: int = 8000

    # External services
    redis_url: str = "redis://localhost:6379/0"

    # Security
    jwks_url: Optional[str] = None
    jwks_audience: Optional[str] = None
    jwks_issuer: Optional[str] = None

    # Pipeline
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)
    shutdown: ShutdownSettings = Field(default_factory=ShutdownSettings)
    handler_timeout_seconds: Optional[float] = Field(default=30.0, gt=0)


def get_config(**overrides) -> AdmissionConfig:
    """Get configuration, applying explicit overrides over the environment."""
    return AdmissionConfig(**overrides)
