"""HTTP surface: request pipeline, response envelope and the Starlette app."""

from smcp_gateway.server.app import create_app
from smcp_gateway.server.gateway import Gateway

__all__ = ["Gateway", "create_app"]
