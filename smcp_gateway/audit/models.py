"""Audit entry model.

Each entry captures *who* (tenant, user, session), *what* (action on a
resource), *when*, the *outcome*, and the correlation id that ties it to
one inbound request.  Entries are frozen: once built they never change.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from smcp_gateway.tenants.models import UtcDatetime, utcnow


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class AuditLogEntry(BaseModel):
    """A single immutable audit record."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    action: str
    resource: str
    result: AuditResult
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: str

    @property
    def epoch_millis(self) -> int:
        return int(self.timestamp.timestamp() * 1000)
