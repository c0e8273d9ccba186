"""Audit subsystem: tenant-scoped, append-only record of security decisions.

Public API
----------
- :class:`AuditLog`: fire-and-forget recorder with scoped retrieval
- :class:`AuditLogEntry`: Pydantic model for a single audit record
- :class:`AuditResult`: success / failure / error
"""

from smcp_gateway.audit.logger import AUDIT_LEVEL, AuditLog, audit_key
from smcp_gateway.audit.models import AuditLogEntry, AuditResult

__all__ = [
    "AUDIT_LEVEL",
    "AuditLog",
    "AuditLogEntry",
    "AuditResult",
    "audit_key",
]
