"""Credential and authentication-decision models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from smcp_gateway.errors import GatewayError
from smcp_gateway.tenants.models import TenantConfig, UtcDatetime, permission_granted, utcnow


class AuthScheme(str, Enum):
    API_KEY = "api_key"
    SESSION = "session"
    BEARER = "bearer"
    NONE = "none"


class SessionContext(BaseModel):
    """Tenant-scoped authenticated context.

    Stored sessions use ids of the form ``sess_<tenantId>_<48 hex>``.  API
    keys and bearer tokens produce a synthetic context of the same shape
    whose ``session_id`` is the key id or token id.
    """

    tenant_id: str
    session_id: str
    permissions: List[str] = Field(default_factory=list)
    expires_at: UtcDatetime
    created_at: UtcDatetime = Field(default_factory=utcnow)
    last_activity: UtcDatetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def has_permission(self, required: str) -> bool:
        return permission_granted(self.permissions, required)


class ApiKey(BaseModel):
    """Stored API key record.  The raw key is never part of it."""

    key_id: str
    tenant_id: str
    key_hash: str = Field(..., min_length=64, max_length=64)
    permissions: List[str] = Field(default_factory=list)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    expires_at: UtcDatetime
    last_used: Optional[UtcDatetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class AuthResult:
    """Authentication decision for the lifetime of one request.

    On failure ``failure`` holds the classified error (its status code
    drives the HTTP mapping) and ``error`` its internal reason.
    """

    is_authenticated: bool
    session: Optional[SessionContext] = None
    tenant: Optional[TenantConfig] = None
    error: Optional[str] = None
    scheme: AuthScheme = AuthScheme.NONE
    failure: Optional[GatewayError] = None

    @classmethod
    def authenticated(
        cls,
        scheme: AuthScheme,
        session: SessionContext,
        tenant: TenantConfig,
    ) -> AuthResult:
        return cls(is_authenticated=True, session=session, tenant=tenant, scheme=scheme)

    @classmethod
    def rejected(cls, scheme: AuthScheme, failure: GatewayError) -> AuthResult:
        return cls(
            is_authenticated=False,
            error=failure.detail,
            scheme=scheme,
            failure=failure,
        )

    def raise_for_failure(self) -> None:
        """Raise the classified error if authentication did not succeed."""
        if not self.is_authenticated:
            raise self.failure or GatewayError(self.error)
