"""Tenant registry: configuration lookup, status transitions and quotas.

Records live in a :class:`~smcp_gateway.storage.kv.KeyValueStore` under
``tenant:<id>``.  Lookups are cached for at most ``cache_ttl`` seconds so
a status change made elsewhere is picked up within that bound; changes
made through this registry invalidate the cache immediately.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from smcp_gateway.constants import STORAGE_TIMEOUT, TENANT_CACHE_TTL
from smcp_gateway.storage.kv import KeyValueStore, bounded
from smcp_gateway.tenants.models import TenantConfig, TenantStatus, utcnow
from smcp_gateway.tenants.quota import QuotaDecision, QuotaKind, RequestRateLimiter

logger = logging.getLogger(__name__)

_KEY_PREFIX = "tenant:"


class TenantNotFoundError(LookupError):
    """Raised when no tenant record exists for an id."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant '{tenant_id}' not found")
        self.tenant_id = tenant_id


class TenantRegistry:
    """CRUD, status and quota lookups for tenant configuration.

    Parameters
    ----------
    store:
        Backing key-value store.
    rate_limiter:
        Request counter used for ``max_requests_per_minute`` checks.
    cache_ttl:
        Seconds a fetched record may be reused before revalidation.
        ``0`` fetches on every call.
    timeout:
        Time bound for each storage call.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        rate_limiter: Optional[RequestRateLimiter] = None,
        cache_ttl: float = TENANT_CACHE_TTL,
        timeout: float = STORAGE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter or RequestRateLimiter()
        self._cache_ttl = cache_ttl
        self._timeout = timeout
        self._clock = clock
        self._cache: Dict[str, Tuple[TenantConfig, float]] = {}

    @property
    def rate_limiter(self) -> RequestRateLimiter:
        return self._rate_limiter

    # ── Lookup ───────────────────────────────────────────────────────

    async def find(self, tenant_id: str) -> Optional[TenantConfig]:
        """Return the tenant record, or ``None`` if it does not exist."""
        if self._cache_ttl > 0:
            cached = self._cache.get(tenant_id)
            if cached is not None and self._clock() - cached[1] < self._cache_ttl:
                return cached[0]

        raw = await bounded(
            self._store.get(_KEY_PREFIX + tenant_id), self._timeout, "tenant lookup"
        )
        if raw is None:
            self._cache.pop(tenant_id, None)
            return None
        try:
            config = TenantConfig.model_validate_json(raw)
        except PydanticValidationError:
            logger.error("Corrupt tenant record for '%s'", tenant_id, exc_info=True)
            raise
        if self._cache_ttl > 0:
            self._cache[tenant_id] = (config, self._clock())
        return config

    async def get(self, tenant_id: str) -> TenantConfig:
        """Return the tenant record or raise :class:`TenantNotFoundError`."""
        config = await self.find(tenant_id)
        if config is None:
            raise TenantNotFoundError(tenant_id)
        return config

    async def is_active(self, tenant_id: str) -> bool:
        config = await self.find(tenant_id)
        return config is not None and config.is_active

    async def list(self) -> List[TenantConfig]:
        keys = await bounded(self._store.list_keys(_KEY_PREFIX), self._timeout, "tenant list")
        tenants: List[TenantConfig] = []
        for key in keys:
            config = await self.find(key[len(_KEY_PREFIX) :])
            if config is not None:
                tenants.append(config)
        return tenants

    # ── Administration ───────────────────────────────────────────────

    async def put(self, config: TenantConfig) -> TenantConfig:
        """Create or replace a tenant record."""
        config = config.model_copy(update={"updated_at": utcnow()})
        await bounded(
            self._store.put(_KEY_PREFIX + config.id, config.model_dump_json()),
            self._timeout,
            "tenant write",
        )
        self.invalidate(config.id)
        logger.info("Tenant '%s' stored (status=%s)", config.id, config.status.value)
        return config

    async def set_status(self, tenant_id: str, status: TenantStatus) -> TenantConfig:
        """Transition a tenant's status.  ``DELETED`` keeps the record."""
        config = await self.get(tenant_id)
        if config.status == TenantStatus.DELETED and status != TenantStatus.DELETED:
            raise ValueError(f"Tenant '{tenant_id}' is deleted and cannot be reactivated")
        updated = await self.put(config.model_copy(update={"status": status}))
        logger.info(
            "Tenant '%s' status %s → %s", tenant_id, config.status.value, status.value
        )
        return updated

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        """Drop cached records (one tenant, or all)."""
        if tenant_id is None:
            self._cache.clear()
        else:
            self._cache.pop(tenant_id, None)

    # ── Quotas ───────────────────────────────────────────────────────

    async def check_quota(
        self,
        tenant_id: str,
        kind: QuotaKind,
        *,
        usage: int = 0,
    ) -> QuotaDecision:
        """Decide whether *tenant_id* may consume one more unit of *kind*.

        ``REQUESTS_PER_MINUTE`` counts this call against the tenant's
        window.  ``SERVERS`` and ``STORAGE_MB`` compare the caller-supplied
        current *usage* with the limit.
        """
        config = await self.get(tenant_id)
        limit = getattr(config.quotas, kind.value)

        if kind == QuotaKind.REQUESTS_PER_MINUTE:
            return self._rate_limiter.hit(tenant_id, limit)

        return QuotaDecision(allowed=usage < limit, kind=kind, limit=limit, current=usage)
