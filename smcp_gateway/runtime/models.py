"""Pydantic models for server instance runtime state.

These models serve dual purpose:
1. Internal state representation for :class:`ServerInstance`
2. Response schemas for the instance control surface
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field

from smcp_gateway.tenants.models import utcnow


class InstanceState(str, Enum):
    """Lifecycle states for a tenant's server instance.

    Valid transitions::

        IDLE     → STARTING
        STARTING → RUNNING | STOPPING | ERROR
        RUNNING  → STOPPING | ERROR
        STOPPING → STOPPED | ERROR
        STOPPED  → STARTING
        ERROR    → IDLE      (operator reset)
    """

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


# Valid state transitions: current_state → set of allowed next states
_VALID_TRANSITIONS: Dict[InstanceState, frozenset[InstanceState]] = {
    InstanceState.IDLE: frozenset({InstanceState.STARTING}),
    InstanceState.STARTING: frozenset(
        {InstanceState.RUNNING, InstanceState.STOPPING, InstanceState.ERROR}
    ),
    InstanceState.RUNNING: frozenset({InstanceState.STOPPING, InstanceState.ERROR}),
    InstanceState.STOPPING: frozenset({InstanceState.STOPPED, InstanceState.ERROR}),
    InstanceState.STOPPED: frozenset({InstanceState.STARTING}),
    InstanceState.ERROR: frozenset({InstanceState.IDLE}),
}

# States that hold (or are acquiring) backend resources and count against max_servers
ACTIVE_STATES = frozenset({InstanceState.STARTING, InstanceState.RUNNING, InstanceState.STOPPING})


def is_valid_transition(current: InstanceState, target: InstanceState) -> bool:
    """Check whether a state transition is allowed."""
    return target in _VALID_TRANSITIONS.get(current, frozenset())


class InvalidTransitionError(Exception):
    """Raised internally when an illegal state transition is attempted."""

    def __init__(self, current: InstanceState, target: InstanceState) -> None:
        super().__init__(f"Invalid instance transition: {current.value} → {target.value}")
        self.current = current
        self.target = target


class InstanceStatus(BaseModel):
    """Snapshot of one instance, designed for JSON API responses."""

    tenant_id: str
    server_id: str
    state: InstanceState = InstanceState.IDLE
    started_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    request_count: int = 0
    last_error: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [{"tenant_id": "acme", "server_id": "files", "state": "running"}]
        }
    }
