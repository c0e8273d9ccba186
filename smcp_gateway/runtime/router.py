"""Instance router: (tenant, server) → one isolated, stateful instance.

The router is the registry of :class:`ServerInstance` objects.  It applies
the ``max_servers`` quota when an instance starts and serializes every
operation per instance, while different instances proceed in parallel.
There is no global lock: the instance table is only touched without
awaiting, and the quota check takes a per-tenant lock.  Only starting an
instance registers it in the table; stop, reset and forward never create
entries.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Optional, Tuple

from smcp_gateway.constants import (
    INSTANCE_LOCK_TIMEOUT,
    INSTANCE_START_TIMEOUT,
    INSTANCE_STOP_TIMEOUT,
)
from smcp_gateway.errors import InstanceFailedError, InstanceUnavailableError, ValidationError
from smcp_gateway.runtime.instance import ServerInstance
from smcp_gateway.runtime.manager import InstanceManager
from smcp_gateway.runtime.models import ACTIVE_STATES, InstanceState, InstanceStatus
from smcp_gateway.security.validators import is_valid_server_id, is_valid_tenant_id
from smcp_gateway.tenants.quota import QuotaKind
from smcp_gateway.tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)

InstanceKey = Tuple[str, str]


class InstanceRouter:
    """Start, stop, inspect and forward to per-tenant server instances.

    Parameters
    ----------
    manager:
        Isolated-execution backend.
    tenants:
        Tenant registry used for the ``max_servers`` quota.
    start_timeout, stop_timeout, lock_timeout:
        Bounds passed to every :class:`ServerInstance`.
    auto_start:
        Start a stopped or idle instance on its first forwarded request
        instead of rejecting it as unavailable.
    """

    def __init__(
        self,
        manager: InstanceManager,
        tenants: TenantRegistry,
        *,
        start_timeout: float = INSTANCE_START_TIMEOUT,
        stop_timeout: float = INSTANCE_STOP_TIMEOUT,
        lock_timeout: float = INSTANCE_LOCK_TIMEOUT,
        auto_start: bool = False,
    ) -> None:
        self._manager = manager
        self._tenants = tenants
        self._start_timeout = start_timeout
        self._stop_timeout = stop_timeout
        self._lock_timeout = lock_timeout
        self._auto_start = auto_start
        self._instances: Dict[InstanceKey, ServerInstance] = {}
        self._tenant_locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def auto_start(self) -> bool:
        return self._auto_start

    # ── Lookup ───────────────────────────────────────────────────────

    def _check_ids(self, tenant_id: str, server_id: str) -> InstanceKey:
        if not is_valid_tenant_id(tenant_id):
            raise ValidationError("Invalid tenant ID format")
        if not is_valid_server_id(server_id):
            raise ValidationError("Invalid server ID format")
        return tenant_id, server_id

    def _existing(self, tenant_id: str, server_id: str) -> Optional[ServerInstance]:
        """Return the registered instance, or ``None`` if it was never started."""
        return self._instances.get(self._check_ids(tenant_id, server_id))

    def _instance(self, tenant_id: str, server_id: str) -> ServerInstance:
        """Return the instance for the key, registering an idle one if new.

        Only the start paths register instances, so addressing unknown
        server ids never grows the table.
        """
        key = self._check_ids(tenant_id, server_id)
        instance = self._instances.get(key)
        if instance is None:
            instance = ServerInstance(
                tenant_id,
                server_id,
                self._manager,
                start_timeout=self._start_timeout,
                stop_timeout=self._stop_timeout,
                lock_timeout=self._lock_timeout,
            )
            self._instances[key] = instance
        return instance

    def status(self, tenant_id: str, server_id: str) -> InstanceStatus:
        """Pure read of the instance state.  Unknown instances report ``IDLE``."""
        instance = self._existing(tenant_id, server_id)
        if instance is None:
            return InstanceStatus(tenant_id=tenant_id, server_id=server_id)
        return instance.status()

    def list(self, tenant_id: str) -> List[InstanceStatus]:
        """Status of every known instance of *tenant_id*, sorted by server id."""
        return [
            inst.status()
            for (owner, _), inst in sorted(self._instances.items())
            if owner == tenant_id
        ]

    def active_count(self, tenant_id: str) -> int:
        return sum(
            1
            for (owner, _), inst in self._instances.items()
            if owner == tenant_id and inst.state in ACTIVE_STATES
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self, tenant_id: str, server_id: str) -> InstanceStatus:
        """Start the instance.

        A no-op returning the current status when already ``RUNNING``.  A
        concurrent second caller waits for the first and then observes
        ``RUNNING``.  Raises :class:`RateLimitError` when the tenant is at
        its ``max_servers`` quota.
        """
        instance = self._instance(tenant_id, server_id)
        async with instance.exclusive():
            return await self._start_locked(instance)

    async def _start_locked(self, instance: ServerInstance) -> InstanceStatus:
        if instance.state == InstanceState.RUNNING:
            return instance.status()
        if instance.state == InstanceState.ERROR:
            raise InstanceFailedError(
                f"Instance {instance.label} is in error state; reset it first",
                tenant_id=instance.tenant_id,
                server_id=instance.server_id,
            )

        async with self._tenant_locks[instance.tenant_id]:
            decision = await self._tenants.check_quota(
                instance.tenant_id,
                QuotaKind.SERVERS,
                usage=self.active_count(instance.tenant_id),
            )
            decision.raise_if_exceeded()
            instance.begin_start()

        return await instance.finish_start()

    async def stop(self, tenant_id: str, server_id: str) -> InstanceStatus:
        """Stop the instance, waiting for in-flight requests to finish.

        Valid from ``RUNNING`` or ``STARTING``; from any other state the
        current status is returned unchanged.
        """
        instance = self._existing(tenant_id, server_id)
        if instance is None:
            return InstanceStatus(tenant_id=tenant_id, server_id=server_id)
        instance.request_stop()
        async with instance.exclusive():
            return await instance.stop()

    async def reset(self, tenant_id: str, server_id: str) -> InstanceStatus:
        """Return an instance in ``ERROR`` to ``IDLE``."""
        instance = self._existing(tenant_id, server_id)
        if instance is None:
            return InstanceStatus(tenant_id=tenant_id, server_id=server_id)
        async with instance.exclusive():
            status = instance.reset()
        logger.info("Instance %s reset by operator (now %s)", instance.label, status.state.value)
        return status

    # ── Forwarding ───────────────────────────────────────────────────

    async def forward(
        self,
        tenant_id: str,
        server_id: str,
        message: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Deliver one protocol message to the instance and return its reply.

        Raises :class:`InstanceUnavailableError` unless the instance is
        ``RUNNING`` (or auto-start is on and it can be started).
        """
        if self._auto_start:
            instance = self._instance(tenant_id, server_id)
        else:
            found = self._existing(tenant_id, server_id)
            if found is None:
                raise InstanceUnavailableError(
                    f"Instance {tenant_id}/{server_id} was never started",
                    tenant_id=tenant_id,
                    server_id=server_id,
                )
            instance = found
        async with instance.exclusive():
            if self._auto_start and instance.state in (InstanceState.IDLE, InstanceState.STOPPED):
                logger.info("Auto-starting instance %s", instance.label)
                await self._start_locked(instance)
            return await instance.forward(message)

    # ── Shutdown ─────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Stop every running instance.  Failures are logged, not raised."""
        running = [inst for inst in self._instances.values() if inst.state in ACTIVE_STATES]
        if not running:
            return
        logger.info("Stopping %d instance(s)...", len(running))
        results = await asyncio.gather(
            *(self.stop(inst.tenant_id, inst.server_id) for inst in running),
            return_exceptions=True,
        )
        for inst, result in zip(running, results):
            if isinstance(result, BaseException):
                logger.error("Instance %s did not stop cleanly: %s", inst.label, result)
