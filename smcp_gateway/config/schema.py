"""Pydantic configuration models for SMCP Gateway."""

from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, Field, field_validator

from smcp_gateway.constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    INSTANCE_LOCK_TIMEOUT,
    INSTANCE_START_TIMEOUT,
    INSTANCE_STOP_TIMEOUT,
    STORAGE_TIMEOUT,
    TENANT_CACHE_TTL,
)
from smcp_gateway.tenants.models import TenantConfig


class ServerSettings(BaseModel):
    """Gateway HTTP listener settings."""

    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)


class AuthSettings(BaseModel):
    """Bearer token verification.  Leave both ``jwt_secret`` and
    ``jwks_uri`` empty to reject every bearer token."""

    jwt_secret: str = Field(
        default="",
        description="Shared HMAC verification secret. Also SMCP_JWT_SECRET env var.",
    )
    jwks_uri: str = Field(default="", description="JWKS URL for RS/ES signed tokens.")
    issuer: str = ""
    audience: str = ""
    algorithms: List[str] = Field(default_factory=lambda: ["HS256"])
    leeway_seconds: float = Field(default=0.0, ge=0)
    session_ttl_seconds: float = Field(
        default=3600.0, gt=0, description="Default lifetime of sessions created by the gateway."
    )

    @field_validator("algorithms")
    @classmethod
    def _non_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one algorithm is required")
        return [a.upper() for a in v]


class StorageSettings(BaseModel):
    backend: Literal["memory"] = "memory"
    timeout_seconds: float = Field(
        default=STORAGE_TIMEOUT, gt=0, description="Bound on every storage call."
    )


class TenantSettings(BaseModel):
    """Tenant registry settings and optional seed records."""

    cache_ttl_seconds: float = Field(
        default=TENANT_CACHE_TTL,
        ge=0,
        description="Revalidation interval for cached tenant records. 0 disables the cache.",
    )
    seed: List[TenantConfig] = Field(
        default_factory=list,
        description="Tenants stored at startup (local and development deployments).",
    )


class InstanceSettings(BaseModel):
    start_timeout_seconds: float = Field(default=INSTANCE_START_TIMEOUT, gt=0)
    stop_timeout_seconds: float = Field(default=INSTANCE_STOP_TIMEOUT, gt=0)
    lock_timeout_seconds: float = Field(default=INSTANCE_LOCK_TIMEOUT, gt=0)
    auto_start: bool = Field(
        default=False,
        description="Start an idle or stopped instance on its first protocol request.",
    )


class AuditSettings(BaseModel):
    enabled: bool = Field(default=True, description="Record audit entries.")
    fallback_to_log: bool = Field(
        default=False,
        description="Skip the store and write every entry to the audit log stream.",
    )


class GatewayConfig(BaseModel):
    """Top-level configuration file."""

    version: Literal["1"] = "1"
    server: ServerSettings = Field(default_factory=ServerSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    tenants: TenantSettings = Field(default_factory=TenantSettings)
    instances: InstanceSettings = Field(default_factory=InstanceSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, v: object) -> object:
        """Accept ``version: 1`` as well as ``version: "1"``."""
        return str(v) if isinstance(v, int) else v
