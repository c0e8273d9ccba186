"""
SMCP Gateway - a multi-tenant gateway for hosted MCP server instances.

The gateway authenticates inbound requests (API key, session, bearer
token), establishes a per-tenant security context, and routes authorized
traffic to an isolated, stateful server instance owned by that tenant.
Every security decision is written to a tenant-scoped audit trail.
"""

from smcp_gateway.constants import SERVER_NAME, SERVER_VERSION

__version__ = SERVER_VERSION
__app_name__ = SERVER_NAME

__all__ = [
    "SERVER_NAME",
    "SERVER_VERSION",
    "__version__",
    "__app_name__",
]
