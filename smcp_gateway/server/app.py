"""Starlette ASGI application factory and gateway endpoints.

Routes::

    GET  /mcp/{tenant_id}/servers                  list the tenant's instances
    POST /mcp/{tenant_id}/{server_id}/start        start an instance
    POST /mcp/{tenant_id}/{server_id}/stop         stop an instance
    POST /mcp/{tenant_id}/{server_id}/reset        error → idle
    GET  /mcp/{tenant_id}/{server_id}/status       instance status
    POST /mcp/{tenant_id}/{server_id}              forward one JSON-RPC message
    GET  /api/audit?limit=N                        the caller's audit entries
    GET  /api/tenant                               the caller's tenant record
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from smcp_gateway.audit.logger import DEFAULT_LIST_LIMIT
from smcp_gateway.config.schema import GatewayConfig
from smcp_gateway.constants import CORRELATION_HEADER, MAX_REQUEST_BYTES, SERVER_NAME
from smcp_gateway.display.logging_config import secret_redaction_filter
from smcp_gateway.errors import ValidationError
from smcp_gateway.security.crypto import generate_correlation_id
from smcp_gateway.security.validators import is_tainted
from smcp_gateway.server.chain import RequestContext
from smcp_gateway.server.gateway import Endpoint, EndpointResult, Gateway

logger = logging.getLogger(__name__)

_MAX_CORRELATION_LENGTH = 128


# ── Helpers ──────────────────────────────────────────────────────────────


def _get_gateway(request: Request) -> Gateway:
    """Retrieve the Gateway instance from app state."""
    gateway: Optional[Gateway] = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("Gateway not found on app.state")
    return gateway


def _correlation_id(request: Request) -> str:
    """Reuse a well-formed inbound ``X-Correlation-ID``, else mint one."""
    inbound = request.headers.get(CORRELATION_HEADER, "").strip()
    if inbound and len(inbound) <= _MAX_CORRELATION_LENGTH and inbound.isprintable():
        if not is_tainted(inbound) and ":" not in inbound:
            return inbound
    return generate_correlation_id()


async def _dispatch(
    request: Request,
    *,
    action: str,
    permission: str,
    endpoint: Endpoint,
) -> JSONResponse:
    ctx = RequestContext(
        correlation_id=_correlation_id(request),
        method=request.method,
        path=request.url.path,
        headers=request.headers,
        action=action,
        permission=permission,
        tenant_id=request.path_params.get("tenant_id"),
        server_id=request.path_params.get("server_id"),
    )
    return await _get_gateway(request).handle(ctx, endpoint)


async def _read_json(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if len(body) > MAX_REQUEST_BYTES:
        raise ValidationError("Request too large (max 1MB)")
    if not body.strip():
        raise ValidationError("Request body is empty")
    try:
        data = json.loads(body)
    except ValueError:
        raise ValidationError("Invalid JSON in request body") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Instance control surface ────────────────────────────────────────────


async def handle_start(request: Request) -> JSONResponse:
    async def endpoint(ctx: RequestContext) -> Any:
        status = await _get_gateway(request).router.start(ctx.tenant_id, ctx.server_id)
        return status.model_dump(mode="json")

    return await _dispatch(
        request, action="instance.start", permission="servers:manage", endpoint=endpoint
    )


async def handle_stop(request: Request) -> JSONResponse:
    async def endpoint(ctx: RequestContext) -> Any:
        status = await _get_gateway(request).router.stop(ctx.tenant_id, ctx.server_id)
        return status.model_dump(mode="json")

    return await _dispatch(
        request, action="instance.stop", permission="servers:manage", endpoint=endpoint
    )


async def handle_reset(request: Request) -> JSONResponse:
    async def endpoint(ctx: RequestContext) -> Any:
        status = await _get_gateway(request).router.reset(ctx.tenant_id, ctx.server_id)
        return status.model_dump(mode="json")

    return await _dispatch(
        request, action="instance.reset", permission="servers:manage", endpoint=endpoint
    )


async def handle_status(request: Request) -> JSONResponse:
    async def endpoint(ctx: RequestContext) -> Any:
        return _get_gateway(request).router.status(ctx.tenant_id, ctx.server_id).model_dump(
            mode="json"
        )

    return await _dispatch(
        request, action="instance.status", permission="servers:read", endpoint=endpoint
    )


async def handle_list_servers(request: Request) -> JSONResponse:
    async def endpoint(ctx: RequestContext) -> Any:
        statuses = _get_gateway(request).router.list(ctx.tenant_id)
        return {"servers": [s.model_dump(mode="json") for s in statuses]}

    return await _dispatch(
        request, action="instance.list", permission="servers:read", endpoint=endpoint
    )


async def handle_forward(request: Request) -> JSONResponse:
    """Forward one JSON-RPC message.  Notifications are answered with 202."""

    async def endpoint(ctx: RequestContext) -> Any:
        message = await _read_json(request)
        reply = await _get_gateway(request).router.forward(ctx.tenant_id, ctx.server_id, message)
        if reply is None:
            return EndpointResult(None, status_code=202)
        return reply

    return await _dispatch(request, action="mcp.forward", permission="mcp:call", endpoint=endpoint)


# ── Tenant-scoped API ────────────────────────────────────────────────────


async def handle_audit(request: Request) -> JSONResponse:
    async def endpoint(ctx: RequestContext) -> Any:
        raw_limit = request.query_params.get("limit", str(DEFAULT_LIST_LIMIT))
        try:
            limit = int(raw_limit)
        except ValueError:
            raise ValidationError("limit must be an integer") from None
        if limit < 1:
            raise ValidationError("limit must be positive")
        entries = await _get_gateway(request).audit.list(ctx.authenticated_tenant, limit)
        return {"entries": [e.model_dump(mode="json") for e in entries]}

    return await _dispatch(request, action="audit.list", permission="audit:read", endpoint=endpoint)


async def handle_tenant(request: Request) -> JSONResponse:
    async def endpoint(ctx: RequestContext) -> Any:
        tenant = ctx.auth.tenant if ctx.auth is not None else None
        return tenant.model_dump(mode="json") if tenant is not None else None

    return await _dispatch(
        request, action="tenant.read", permission="tenant:read", endpoint=endpoint
    )


# ── Application factory ─────────────────────────────────────────────────


def _routes() -> list:
    return [
        Route("/mcp/{tenant_id}/servers", endpoint=handle_list_servers, methods=["GET"]),
        Route("/mcp/{tenant_id}/{server_id}/start", endpoint=handle_start, methods=["POST"]),
        Route("/mcp/{tenant_id}/{server_id}/stop", endpoint=handle_stop, methods=["POST"]),
        Route("/mcp/{tenant_id}/{server_id}/reset", endpoint=handle_reset, methods=["POST"]),
        Route("/mcp/{tenant_id}/{server_id}/status", endpoint=handle_status, methods=["GET"]),
        Route("/mcp/{tenant_id}/{server_id}", endpoint=handle_forward, methods=["POST"]),
        Route("/api/audit", endpoint=handle_audit, methods=["GET"]),
        Route("/api/tenant", endpoint=handle_tenant, methods=["GET"]),
    ]


def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    gateway: Optional[Gateway] = None,
) -> Starlette:
    """Create and return the Starlette ASGI application.

    Pass a prebuilt *gateway* to share components with the caller (tests,
    embedding); otherwise one is built from *config* (defaults if omitted).
    """
    config = config or (gateway.config if gateway is not None else GatewayConfig())
    gateway = gateway or Gateway.from_config(config)
    if config.auth.jwt_secret:
        secret_redaction_filter.register(config.auth.jwt_secret)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info("%s starting up.", SERVER_NAME)
        await gateway.startup()
        try:
            yield
        finally:
            logger.info("%s shutting down.", SERVER_NAME)
            await gateway.shutdown()

    application = Starlette(routes=_routes(), lifespan=lifespan)
    application.state.gateway = gateway  # type: ignore[attr-defined]
    logger.info("Starlette ASGI app '%s' created with %d route(s).", SERVER_NAME, len(_routes()))
    return application
