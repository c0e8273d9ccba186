"""Runtime layer: per-tenant server instances and their router."""

from smcp_gateway.runtime.instance import ServerInstance
from smcp_gateway.runtime.manager import (
    InProcessInstanceManager,
    InProcessMcpInstance,
    InstanceHandle,
    InstanceManager,
)
from smcp_gateway.runtime.models import InstanceState, InstanceStatus, is_valid_transition
from smcp_gateway.runtime.router import InstanceRouter

__all__ = [
    "InProcessInstanceManager",
    "InProcessMcpInstance",
    "InstanceHandle",
    "InstanceManager",
    "InstanceRouter",
    "InstanceState",
    "InstanceStatus",
    "ServerInstance",
    "is_valid_transition",
]
