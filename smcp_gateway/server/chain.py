"""Core middleware chain infrastructure.

Defines the request context, handler/middleware protocols, and the
chain builder that composes middleware into a single async handler.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from smcp_gateway.auth.models import AuthResult

# ── Type protocol ────────────────────────────────────────────────────────


class GatewayHandler(Protocol):
    """Async callable that takes a RequestContext and returns a result."""

    async def __call__(self, ctx: RequestContext) -> Any: ...


class GatewayMiddleware(Protocol):
    """Async callable that wraps the next handler in the chain."""

    async def __call__(self, ctx: RequestContext, next_handler: GatewayHandler) -> Any: ...


# ── Request context ─────────────────────────────────────────────────────


@dataclass
class RequestContext:
    """Per-request state threaded through the middleware chain.

    Attributes:
        correlation_id: Identifier threading this request through auth, routing and audit.
        method: HTTP method.
        path: URL path.
        headers: Request headers (case-insensitive mapping).
        action: Audit action name for the operation (``instance.start``, ...).
        permission: Permission the caller's scope must grant.
        tenant_id: Tenant named in the URL path, if any.
        server_id: Server named in the URL path, if any.
        auth: Authentication decision (populated by the auth middleware).
        start_time: High-resolution monotonic timestamp.
        metadata: Arbitrary key–value store for middleware to attach data.
    """

    correlation_id: str
    method: str
    path: str
    headers: Mapping[str, str]
    action: str
    permission: str
    tenant_id: Optional[str] = None
    server_id: Optional[str] = None
    auth: Optional[AuthResult] = None
    start_time: float = field(default_factory=time.monotonic)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def resource(self) -> str:
        """Audit resource: ``tenant/server``, the tenant, or the path."""
        if self.tenant_id and self.server_id:
            return f"{self.tenant_id}/{self.server_id}"
        return self.tenant_id or self.path

    @property
    def authenticated_tenant(self) -> Optional[str]:
        if self.auth is not None and self.auth.is_authenticated and self.auth.session:
            return self.auth.session.tenant_id
        return None

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since request start."""
        return (time.monotonic() - self.start_time) * 1000.0


# ── Chain builder ────────────────────────────────────────────────────────


def build_chain(
    middlewares: List[Any],
    handler: Any,
) -> Callable[[RequestContext], Awaitable[Any]]:
    """Compose *middlewares* around a final *handler*.

    Middleware are applied in list order: the first middleware in the list
    is the outermost wrapper (executed first for requests, last for
    responses).

    Args:
        middlewares: Callables conforming to :class:`GatewayMiddleware`.
        handler: The innermost handler (the endpoint operation).

    Returns:
        An async callable ``(RequestContext) -> Any``.
    """
    chain = handler
    for mw in reversed(middlewares):
        next_handler = chain

        async def _wrap(
            ctx: RequestContext,
            _mw: Any = mw,
            _next: Any = next_handler,
        ) -> Any:
            return await _mw(ctx, _next)

        chain = _wrap
    return chain
