"""Gateway composition root and request runner.

:class:`Gateway` wires the components together from a
:class:`~smcp_gateway.config.schema.GatewayConfig` and runs each request
through the middleware chain.  It is the outermost error boundary:
classified errors become their status and public message, anything else
becomes a generic 500, and every outcome is audited.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from starlette.responses import JSONResponse

from smcp_gateway.audit.logger import AuditLog
from smcp_gateway.auth.authenticator import RequestAuthenticator
from smcp_gateway.auth.jwt import JWTConfig, JWTValidator
from smcp_gateway.auth.stores import ApiKeyStore, SessionStore
from smcp_gateway.config.schema import GatewayConfig
from smcp_gateway.errors import GatewayError, InternalError
from smcp_gateway.runtime.manager import InProcessInstanceManager, InstanceManager
from smcp_gateway.runtime.router import InstanceRouter
from smcp_gateway.server.chain import RequestContext, build_chain
from smcp_gateway.server.middleware import (
    AuthMiddleware,
    AuthzMiddleware,
    QuotaMiddleware,
    ValidationMiddleware,
)
from smcp_gateway.server.responses import api_response, error_response
from smcp_gateway.storage.kv import KeyValueStore, MemoryKeyValueStore
from smcp_gateway.tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)

Endpoint = Callable[[RequestContext], Awaitable[Any]]


class EndpointResult:
    """Endpoint return value carrying a non-default status code."""

    def __init__(self, data: Any, status_code: int = 200) -> None:
        self.data = data
        self.status_code = status_code


class Gateway:
    """Holds every component and runs requests through the pipeline.

    Parameters
    ----------
    tenants, audit, authenticator, router:
        The wired components.
    sessions, api_keys:
        Credential stores, exposed for administration and tests.
    """

    def __init__(
        self,
        *,
        tenants: TenantRegistry,
        audit: AuditLog,
        sessions: SessionStore,
        api_keys: ApiKeyStore,
        authenticator: RequestAuthenticator,
        router: InstanceRouter,
        config: Optional[GatewayConfig] = None,
    ) -> None:
        self.tenants = tenants
        self.audit = audit
        self.sessions = sessions
        self.api_keys = api_keys
        self.authenticator = authenticator
        self.router = router
        self.config = config or GatewayConfig()
        self._middlewares = [
            ValidationMiddleware(),
            AuthMiddleware(authenticator),
            AuthzMiddleware(),
            QuotaMiddleware(tenants),
        ]

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        *,
        store: Optional[KeyValueStore] = None,
        manager: Optional[InstanceManager] = None,
    ) -> Gateway:
        """Build a gateway from *config*.

        One key-value store backs tenants, sessions, API keys and audit
        entries unless the audit log is configured to write to the log
        stream only.
        """
        store = store or MemoryKeyValueStore()
        timeout = config.storage.timeout_seconds

        tenants = TenantRegistry(store, cache_ttl=config.tenants.cache_ttl_seconds, timeout=timeout)
        audit = AuditLog(
            None if config.audit.fallback_to_log else store,
            enabled=config.audit.enabled,
            timeout=timeout,
        )
        sessions = SessionStore(
            store, default_ttl=config.auth.session_ttl_seconds, timeout=timeout
        )
        api_keys = ApiKeyStore(store, timeout=timeout)

        jwt_config = JWTConfig(
            secret=config.auth.jwt_secret,
            jwks_uri=config.auth.jwks_uri,
            issuer=config.auth.issuer,
            audience=config.auth.audience,
            algorithms=list(config.auth.algorithms),
            leeway=config.auth.leeway_seconds,
            fetch_timeout=timeout,
        )
        bearer = JWTValidator(jwt_config) if jwt_config.enabled else None
        if bearer is None:
            logger.warning("No JWT secret or JWKS URI configured; bearer tokens will be rejected")

        authenticator = RequestAuthenticator(
            tenants, sessions, api_keys, bearer=bearer, audit=audit
        )
        router = InstanceRouter(
            manager or InProcessInstanceManager(),
            tenants,
            start_timeout=config.instances.start_timeout_seconds,
            stop_timeout=config.instances.stop_timeout_seconds,
            lock_timeout=config.instances.lock_timeout_seconds,
            auto_start=config.instances.auto_start,
        )
        return cls(
            tenants=tenants,
            audit=audit,
            sessions=sessions,
            api_keys=api_keys,
            authenticator=authenticator,
            router=router,
            config=config,
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def startup(self) -> None:
        """Store the configured seed tenants."""
        for tenant in self.config.tenants.seed:
            await self.tenants.put(tenant)
        if self.config.tenants.seed:
            logger.info("Seeded %d tenant(s).", len(self.config.tenants.seed))

    async def shutdown(self) -> None:
        """Stop every instance, then flush pending audit writes."""
        await self.router.shutdown()
        await self.audit.close()

    # ── Request handling ─────────────────────────────────────────────

    async def handle(self, ctx: RequestContext, endpoint: Endpoint) -> JSONResponse:
        """Run *endpoint* behind the middleware chain and build the response."""
        chain = build_chain(self._middlewares, endpoint)
        try:
            result = await chain(ctx)
        except GatewayError as exc:
            self._audit_failure(ctx, exc)
            return error_response(exc, ctx.correlation_id)
        except Exception as exc:
            logger.exception("Unhandled error for request %s", ctx.correlation_id)
            self.audit.log_error(
                ctx.correlation_id,
                exc,
                ctx.action,
                ctx.resource,
                tenant_id=ctx.authenticated_tenant,
                details={"method": ctx.method, "path": ctx.path},
            )
            return error_response(InternalError(), ctx.correlation_id)

        session = ctx.auth.session if ctx.auth is not None else None
        self.audit.log_success(
            ctx.correlation_id,
            ctx.action,
            ctx.resource,
            tenant_id=ctx.authenticated_tenant,
            user_id=session.user_id if session else None,
            session_id=session.session_id if session else None,
            details={"elapsed_ms": round(ctx.elapsed_ms, 2)},
        )
        if isinstance(result, EndpointResult):
            return api_response(result.data, ctx.correlation_id, result.status_code)
        return api_response(result, ctx.correlation_id)

    def _audit_failure(self, ctx: RequestContext, exc: GatewayError) -> None:
        # The authenticator has already recorded its own rejection.
        if ctx.auth is not None and not ctx.auth.is_authenticated:
            return
        session = ctx.auth.session if ctx.auth is not None else None
        self.audit.log_failure(
            ctx.correlation_id,
            ctx.action,
            ctx.resource,
            tenant_id=ctx.authenticated_tenant,
            user_id=session.user_id if session else None,
            session_id=session.session_id if session else None,
            details={
                "reason": exc.detail,
                "status": exc.status_code,
                "error_type": type(exc).__name__,
            },
        )
