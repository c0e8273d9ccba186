"""Tenant-scoped audit log with best-effort, non-blocking delivery.

:meth:`AuditLog.record` never blocks and never raises: the write is
scheduled as a detached task, so the response can go out before the entry
is persisted.  If the store is unavailable the entry is emitted as a JSON
line on the ``smcp_gateway.audit`` logger instead.

Persisted layout::

    audit:<tenantId>:<epochMillis>:<correlationId>  →  AuditLogEntry JSON   (TTL 30 days)

A crash between the response and the detached write loses that entry;
:meth:`AuditLog.flush` waits for pending writes on orderly shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from smcp_gateway.audit.models import AuditLogEntry, AuditResult
from smcp_gateway.constants import AUDIT_KEY_PREFIX, AUDIT_RETENTION_SECONDS, STORAGE_TIMEOUT
from smcp_gateway.errors import StorageTimeoutError
from smcp_gateway.storage.kv import KeyValueStore, bounded

logger = logging.getLogger(__name__)

# Custom log level for the fallback sink, always enabled
AUDIT_LEVEL = 35  # between WARNING (30) and ERROR (40)
logging.addLevelName(AUDIT_LEVEL, "AUDIT")

# Partition for outcomes with no resolved tenant; shorter than any valid tenant id
UNKNOWN_TENANT = "_"
DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000

# Attempts at finding a free key when two entries share tenant, millisecond and correlation id
_MAX_KEY_ATTEMPTS = 16


def audit_key(tenant_id: str, epoch_millis: int, correlation_id: str) -> str:
    return f"{AUDIT_KEY_PREFIX}:{tenant_id}:{epoch_millis}:{correlation_id}"


class AuditLog:
    """Append-only audit trail partitioned by tenant.

    Parameters
    ----------
    store:
        Key-value store for entries.  ``None`` sends everything to the
        fallback log sink.
    enabled:
        Whether to record anything at all.
    retention:
        Entry TTL in seconds (30 days).
    timeout:
        Time bound for each storage call.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        *,
        enabled: bool = True,
        retention: float = AUDIT_RETENTION_SECONDS,
        timeout: float = STORAGE_TIMEOUT,
    ) -> None:
        self._store = store
        self._enabled = enabled
        self._retention = retention
        self._timeout = timeout
        self._pending: Set[asyncio.Task[None]] = set()
        self._fallback = logging.getLogger("smcp_gateway.audit")

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Recording ────────────────────────────────────────────────────

    def record(self, entry: AuditLogEntry) -> None:
        """Schedule *entry* for persistence and return immediately."""
        if not self._enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop to run the write on; keep the record locally.
            self._emit_fallback(entry, reason="no running event loop")
            return
        task = loop.create_task(self._write(entry), name=f"audit-{entry.correlation_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def log_success(
        self,
        correlation_id: str,
        action: str,
        resource: str,
        **kwargs: Any,
    ) -> None:
        self.record(self._entry(correlation_id, action, resource, AuditResult.SUCCESS, **kwargs))

    def log_failure(
        self,
        correlation_id: str,
        action: str,
        resource: str,
        **kwargs: Any,
    ) -> None:
        self.record(self._entry(correlation_id, action, resource, AuditResult.FAILURE, **kwargs))

    def log_error(
        self,
        correlation_id: str,
        error: BaseException,
        action: str = "error",
        resource: str = "unknown",
        **kwargs: Any,
    ) -> None:
        """Record an unhandled fault.  Full detail goes here, never to the caller."""
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("error", str(error))
        details.setdefault("error_type", type(error).__name__)
        self.record(
            self._entry(
                correlation_id, action, resource, AuditResult.ERROR, details=details, **kwargs
            )
        )

    @staticmethod
    def _entry(
        correlation_id: str,
        action: str,
        resource: str,
        result: AuditResult,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        return AuditLogEntry(
            tenant_id=tenant_id or UNKNOWN_TENANT,
            action=action,
            resource=resource,
            result=result,
            user_id=user_id,
            session_id=session_id,
            details=details or {},
            correlation_id=correlation_id,
        )

    async def _write(self, entry: AuditLogEntry) -> None:
        if self._store is None:
            self._emit_fallback(entry, reason="no audit store configured")
            return
        try:
            await self.persist(entry)
            logger.debug(
                "[AUDIT] %s:%s:%s:%s",
                entry.tenant_id,
                entry.action,
                entry.resource,
                entry.result.value,
            )
        except Exception as exc:
            logger.error("Failed to write audit log: %s", exc)
            self._emit_fallback(entry, reason=type(exc).__name__)

    async def persist(self, entry: AuditLogEntry) -> str:
        """Write *entry* under a fresh key and return the key.

        Never overwrites an existing entry; a key collision moves to the
        next millisecond.
        """
        if self._store is None:
            raise RuntimeError("AuditLog has no store")
        payload = entry.model_dump_json()
        millis = entry.epoch_millis
        for _ in range(_MAX_KEY_ATTEMPTS):
            key = audit_key(entry.tenant_id, millis, entry.correlation_id)
            written = await bounded(
                self._store.put_if_absent(key, payload, ttl=self._retention),
                self._timeout,
                "audit write",
            )
            if written:
                return key
            millis += 1
        raise RuntimeError(f"No free audit key for correlation id {entry.correlation_id}")

    def _emit_fallback(self, entry: AuditLogEntry, *, reason: str) -> None:
        self._fallback.log(AUDIT_LEVEL, "[AUDIT-FALLBACK] (%s) %s", reason, entry.model_dump_json())

    # ── Retrieval ────────────────────────────────────────────────────

    async def list(self, tenant_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[AuditLogEntry]:
        """Return *tenant_id*'s entries, newest first, at most *limit* of them.

        Entries belonging to any other tenant are never returned, even if
        a stored record's key and body disagree.
        """
        if self._store is None:
            return []
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._retention)
        prefix = f"{AUDIT_KEY_PREFIX}:{tenant_id}:"
        try:
            keys = await bounded(self._store.list_keys(prefix), self._timeout, "audit list")
            entries: List[AuditLogEntry] = []
            for key in keys:
                raw = await bounded(self._store.get(key), self._timeout, "audit read")
                if raw is None:
                    continue
                try:
                    entry = AuditLogEntry.model_validate_json(raw)
                except PydanticValidationError:
                    logger.warning("Skipping corrupt audit record %s", key)
                    continue
                if entry.tenant_id != tenant_id or entry.timestamp < cutoff:
                    continue
                entries.append(entry)
        except StorageTimeoutError:
            raise
        except Exception:
            logger.exception("Failed to retrieve audit logs for tenant %s", tenant_id)
            return []

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    # ── Lifecycle ────────────────────────────────────────────────────

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        count = len(self._pending)
        await self.flush()
        if count:
            logger.info("AuditLog closed after flushing %d pending write(s).", count)
