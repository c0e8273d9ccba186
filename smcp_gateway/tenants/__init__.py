"""Tenant configuration, registry and quota enforcement."""

from smcp_gateway.tenants.models import (
    TenantConfig,
    TenantQuotas,
    TenantRole,
    TenantStatus,
    permission_granted,
)
from smcp_gateway.tenants.quota import QuotaDecision, QuotaKind, RequestRateLimiter
from smcp_gateway.tenants.registry import TenantNotFoundError, TenantRegistry

__all__ = [
    "QuotaDecision",
    "QuotaKind",
    "RequestRateLimiter",
    "TenantConfig",
    "TenantNotFoundError",
    "TenantQuotas",
    "TenantRegistry",
    "TenantRole",
    "TenantStatus",
    "permission_granted",
]
