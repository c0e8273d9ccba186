"""Pydantic models for tenant configuration."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatchcase
from typing import Annotated, Iterable, List, Set

from pydantic import AfterValidator, BaseModel, Field, field_validator

from smcp_gateway.security.validators import is_valid_tenant_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(v: datetime) -> datetime:
    return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v


# Naive datetimes are taken to be UTC so comparisons never mix naive and aware values.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class TenantStatus(str, Enum):
    """Tenant lifecycle.

    Only ``ACTIVE`` tenants may be authorized.  ``DELETED`` is a soft
    delete: the record stays so audit history can still reference it.
    """

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class TenantQuotas(BaseModel):
    max_servers: int = Field(default=5, ge=0)
    max_requests_per_minute: int = Field(default=100, ge=0)
    max_storage_mb: int = Field(default=100, ge=0)


class TenantRole(BaseModel):
    name: str = Field(..., min_length=1)
    permissions: List[str] = Field(default_factory=list)


class TenantConfig(BaseModel):
    """Configuration record for a single tenant."""

    id: str
    name: str
    endpoints: List[str] = Field(
        default_factory=list,
        description="Ordered routable URIs for this tenant.",
    )
    quotas: TenantQuotas = Field(default_factory=TenantQuotas)
    roles: List[TenantRole] = Field(default_factory=list)
    status: TenantStatus = TenantStatus.ACTIVE
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        if not is_valid_tenant_id(v):
            raise ValueError(f"Invalid tenant id '{v}': 3-64 chars of [A-Za-z0-9_-]")
        return v

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

    def role_permissions(self, role_names: Iterable[str]) -> Set[str]:
        """Union of the permissions granted by the named roles."""
        wanted = set(role_names)
        perms: Set[str] = set()
        for role in self.roles:
            if role.name in wanted:
                perms.update(role.permissions)
        return perms


def permission_granted(granted: Iterable[str], required: str) -> bool:
    """Return ``True`` if any granted permission pattern matches *required*.

    Patterns use shell-style globbing, so ``servers:*`` covers
    ``servers:manage`` and ``*`` covers everything.
    """
    return any(fnmatchcase(required, pattern) for pattern in granted)
