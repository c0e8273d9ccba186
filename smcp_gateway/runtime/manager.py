"""Isolated-execution capability underlying the instance router.

Managers implement a small interface::

    class InstanceManager:
        async def create(self, tenant_id, server_id) -> InstanceHandle: ...
        async def destroy(self, handle) -> None: ...

    class InstanceHandle:
        async def handle(self, message) -> Optional[dict]: ...

Each handle owns its protocol state exclusively.  The router is the only
holder of handles; callers reach them through
:meth:`~smcp_gateway.runtime.router.InstanceRouter.forward`.

Built-in manager:

* ``InProcessInstanceManager``: one :class:`InProcessMcpInstance` per
  (tenant, server), speaking JSON-RPC 2.0 with the ``mcp`` SDK's message
  types
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from mcp import types as mcp_types
from pydantic import ValidationError as PydanticValidationError

from smcp_gateway.constants import SERVER_NAME, SERVER_VERSION
from smcp_gateway.errors import ValidationError

logger = logging.getLogger(__name__)


class InstanceHandle(ABC):
    """A live, stateful execution unit for one (tenant, server)."""

    tenant_id: str
    server_id: str

    @abstractmethod
    async def handle(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Process one JSON-RPC message.  Notifications return ``None``."""


class InstanceManager(ABC):
    """Abstract base class for isolated-execution backends."""

    @abstractmethod
    async def create(self, tenant_id: str, server_id: str) -> InstanceHandle:
        """Bring up a fresh unit for (*tenant_id*, *server_id*)."""

    @abstractmethod
    async def destroy(self, handle: InstanceHandle) -> None:
        """Tear down *handle* and release its resources."""


# ── In-process JSON-RPC instance ────────────────────────────────────────


class InProcessMcpInstance(InstanceHandle):
    """Minimal MCP endpoint living inside the gateway process.

    Answers ``initialize``, ``ping`` and ``tools/list``; every other method
    gets a method-not-found error.  All state lives on the instance, so
    two instances never observe each other.
    """

    def __init__(self, tenant_id: str, server_id: str) -> None:
        self.tenant_id = tenant_id
        self.server_id = server_id
        self.initialized = False
        self.client_info: Optional[mcp_types.Implementation] = None
        self.tools: list[mcp_types.Tool] = []

    async def handle(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if "id" not in message:
            try:
                notification = mcp_types.JSONRPCNotification.model_validate(message)
            except PydanticValidationError as exc:
                raise ValidationError("Invalid JSON-RPC message") from exc
            if notification.method == "notifications/initialized":
                self.initialized = True
            return None

        try:
            request = mcp_types.JSONRPCRequest.model_validate(message)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid JSON-RPC request") from exc

        if request.method == "initialize":
            result = self._initialize(request.params or {})
        elif request.method == "ping":
            result = mcp_types.EmptyResult()
        elif request.method == "tools/list":
            result = mcp_types.ListToolsResult(tools=list(self.tools))
        else:
            return _dump(
                mcp_types.JSONRPCError(
                    jsonrpc="2.0",
                    id=request.id,
                    error=mcp_types.ErrorData(
                        code=mcp_types.METHOD_NOT_FOUND,
                        message=f"Method not found: {request.method}",
                    ),
                )
            )

        return _dump(
            mcp_types.JSONRPCResponse(
                jsonrpc="2.0",
                id=request.id,
                result=result.model_dump(by_alias=True, exclude_none=True, mode="json"),
            )
        )

    def _initialize(self, params: Dict[str, Any]) -> mcp_types.InitializeResult:
        client = params.get("clientInfo")
        if isinstance(client, dict):
            try:
                self.client_info = mcp_types.Implementation.model_validate(client)
            except PydanticValidationError:
                logger.debug("Ignoring malformed clientInfo for %s/%s", self.tenant_id, self.server_id)
        return mcp_types.InitializeResult(
            protocolVersion=str(params.get("protocolVersion") or mcp_types.LATEST_PROTOCOL_VERSION),
            capabilities=mcp_types.ServerCapabilities(
                tools=mcp_types.ToolsCapability(listChanged=False),
            ),
            serverInfo=mcp_types.Implementation(
                name=f"{SERVER_NAME} ({self.server_id})", version=SERVER_VERSION
            ),
        )


class InProcessInstanceManager(InstanceManager):
    """Creates :class:`InProcessMcpInstance` units."""

    def __init__(self) -> None:
        self._live = 0

    @property
    def live_count(self) -> int:
        return self._live

    async def create(self, tenant_id: str, server_id: str) -> InstanceHandle:
        self._live += 1
        logger.debug("In-process instance created for %s/%s", tenant_id, server_id)
        return InProcessMcpInstance(tenant_id, server_id)

    async def destroy(self, handle: InstanceHandle) -> None:
        self._live = max(0, self._live - 1)
        logger.debug("In-process instance destroyed for %s/%s", handle.tenant_id, handle.server_id)


def _dump(message: Any) -> Dict[str, Any]:
    return message.model_dump(by_alias=True, exclude_none=True, mode="json")
