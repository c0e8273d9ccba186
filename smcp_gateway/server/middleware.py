"""Request pipeline middleware.

Slot order in the chain::

    Validation → Auth → Authz → Quota → endpoint

Each slot raises a :class:`~smcp_gateway.errors.GatewayError` to stop the
request; :class:`~smcp_gateway.server.gateway.Gateway` turns it into the
error envelope and the audit entry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from smcp_gateway.auth.authenticator import RequestAuthenticator
from smcp_gateway.errors import AuthorizationError, InternalError
from smcp_gateway.security.validators import validate_request
from smcp_gateway.server.chain import GatewayHandler, RequestContext
from smcp_gateway.tenants.quota import QuotaKind
from smcp_gateway.tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)


class ValidationMiddleware:
    """Reject malformed requests before any credential is looked at."""

    async def __call__(self, ctx: RequestContext, next_handler: GatewayHandler) -> Any:
        validate_request(ctx.method, ctx.path, ctx.headers)
        return await next_handler(ctx)


class AuthMiddleware:
    """Authenticate the request and attach the :class:`AuthResult`.

    Authentication runs shielded: if the client goes away mid-request the
    lookup and its audit entry still complete.

    Parameters
    ----------
    authenticator:
        The :class:`RequestAuthenticator` to delegate to.
    """

    def __init__(self, authenticator: RequestAuthenticator) -> None:
        self._authenticator = authenticator

    async def __call__(self, ctx: RequestContext, next_handler: GatewayHandler) -> Any:
        ctx.auth = await asyncio.shield(
            self._authenticator.authenticate(ctx.headers, correlation_id=ctx.correlation_id)
        )
        if not ctx.auth.is_authenticated:
            logger.warning(
                "Auth failed for request %s (%s %s): %s",
                ctx.correlation_id,
                ctx.method,
                ctx.path,
                ctx.auth.error,
            )
            ctx.auth.raise_for_failure()
        return await next_handler(ctx)


class AuthzMiddleware:
    """Tenant boundary and permission check.

    The tenant in the URL must be the authenticated tenant, and the
    caller's scope must grant ``ctx.permission``.
    """

    async def __call__(self, ctx: RequestContext, next_handler: GatewayHandler) -> Any:
        if ctx.auth is None or ctx.auth.session is None:
            raise InternalError("Authorization reached without an authenticated scope")
        session = ctx.auth.session

        if ctx.tenant_id is not None and ctx.tenant_id != session.tenant_id:
            logger.warning(
                "Authorization DENIED: tenant %s addressed %s (request %s)",
                session.tenant_id,
                ctx.tenant_id,
                ctx.correlation_id,
            )
            raise AuthorizationError(
                f"Tenant {session.tenant_id} may not access tenant {ctx.tenant_id}"
            )
        if not session.has_permission(ctx.permission):
            logger.warning(
                "Authorization DENIED: tenant=%s, permission=%s (request %s)",
                session.tenant_id,
                ctx.permission,
                ctx.correlation_id,
            )
            raise AuthorizationError(f"Missing permission '{ctx.permission}'")
        return await next_handler(ctx)


class QuotaMiddleware:
    """Count the request against the tenant's ``max_requests_per_minute``.

    Parameters
    ----------
    tenants:
        Registry holding the quota and the rate limiter.
    """

    def __init__(self, tenants: TenantRegistry) -> None:
        self._tenants = tenants

    async def __call__(self, ctx: RequestContext, next_handler: GatewayHandler) -> Any:
        tenant_id = ctx.authenticated_tenant
        if tenant_id is None:
            raise InternalError("Quota check reached without an authenticated tenant")
        decision = await self._tenants.check_quota(tenant_id, QuotaKind.REQUESTS_PER_MINUTE)
        decision.raise_if_exceeded()
        return await next_handler(ctx)
