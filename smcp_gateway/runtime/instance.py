"""A single tenant server instance and its lifecycle.

State machine (see :class:`~smcp_gateway.runtime.models.InstanceState`)::

    IDLE ─► STARTING ─► RUNNING ─► STOPPING ─► STOPPED ─► STARTING ...
    STARTING ─► STOPPING            (stop requested, or start timed out)
    STARTING | RUNNING | STOPPING ─► ERROR ─► IDLE   (operator reset)

Every operation, forwarding included, runs under the instance's own lock,
so at most one of them touches the backend at any time.  Lock acquisition
is bounded; a caller that cannot get the lock in time gets
:class:`~smcp_gateway.errors.InstanceBusyError`.

The ``stop`` request is registered before the lock is taken.  A start that
is still in flight when that happens finishes by tearing the backend down
instead of publishing ``RUNNING``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from smcp_gateway.constants import (
    INSTANCE_LOCK_TIMEOUT,
    INSTANCE_START_TIMEOUT,
    INSTANCE_STOP_TIMEOUT,
)
from smcp_gateway.errors import (
    GatewayError,
    InstanceBusyError,
    InstanceFailedError,
    InstanceStartTimeoutError,
    InstanceUnavailableError,
)
from smcp_gateway.runtime.manager import InstanceHandle, InstanceManager
from smcp_gateway.runtime.models import (
    InstanceState,
    InstanceStatus,
    InvalidTransitionError,
    is_valid_transition,
)
from smcp_gateway.tenants.models import utcnow

logger = logging.getLogger(__name__)

# Seconds a caller is told to wait after a start timeout
_START_RETRY_AFTER = 5


class ServerInstance:
    """Owned state handle for one (tenant, server).

    Only the router holds these.  The backend handle never leaves this
    object; callers get :class:`InstanceStatus` snapshots and forwarded
    responses.

    Parameters
    ----------
    tenant_id, server_id:
        Instance identity.
    manager:
        Isolated-execution backend that creates and destroys the unit.
    start_timeout, stop_timeout:
        Bounds on backend creation and teardown.
    lock_timeout:
        Bound on waiting for another operation on this instance.
    """

    def __init__(
        self,
        tenant_id: str,
        server_id: str,
        manager: InstanceManager,
        *,
        start_timeout: float = INSTANCE_START_TIMEOUT,
        stop_timeout: float = INSTANCE_STOP_TIMEOUT,
        lock_timeout: float = INSTANCE_LOCK_TIMEOUT,
    ) -> None:
        self.tenant_id = tenant_id
        self.server_id = server_id
        self._manager = manager
        self._start_timeout = start_timeout
        self._stop_timeout = stop_timeout
        self._lock_timeout = lock_timeout
        self._lock = asyncio.Lock()
        self._state = InstanceState.IDLE
        self._handle: Optional[InstanceHandle] = None
        self._started_at: Optional[datetime] = None
        self._updated_at = utcnow()
        self._last_error: Optional[str] = None
        self._request_count = 0
        self._stop_requested = False

    # ── Properties ───────────────────────────────────────────────────

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def label(self) -> str:
        return f"{self.tenant_id}/{self.server_id}"

    def status(self) -> InstanceStatus:
        """Snapshot of the current state.  Never waits."""
        return InstanceStatus(
            tenant_id=self.tenant_id,
            server_id=self.server_id,
            state=self._state,
            started_at=self._started_at,
            updated_at=self._updated_at,
            request_count=self._request_count,
            last_error=self._last_error,
        )

    # ── Locking ──────────────────────────────────────────────────────

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold the instance lock, waiting at most ``lock_timeout`` seconds."""
        try:
            await asyncio.wait_for(self._lock.acquire(), self._lock_timeout)
        except asyncio.TimeoutError:
            raise InstanceBusyError(
                f"Instance {self.label} busy for more than {self._lock_timeout}s",
                tenant_id=self.tenant_id,
                server_id=self.server_id,
                retry_after=1,
            ) from None
        try:
            yield
        finally:
            self._lock.release()

    def request_stop(self) -> None:
        """Register a stop so an in-flight start never publishes ``RUNNING``."""
        if self._state == InstanceState.STARTING:
            self._stop_requested = True

    # ── Lifecycle (caller holds the lock) ────────────────────────────

    def _transition(self, target: InstanceState, error: Optional[str] = None) -> None:
        """Transition to *target* state if the move is valid."""
        if not is_valid_transition(self._state, target):
            raise InvalidTransitionError(self._state, target)
        prev = self._state
        self._state = target
        self._updated_at = utcnow()
        if error is not None:
            self._last_error = error
        logger.info("Instance %s: %s → %s", self.label, prev.value, target.value)

    def begin_start(self) -> None:
        """Move ``IDLE``/``STOPPED`` to ``STARTING``."""
        self._stop_requested = False
        self._last_error = None
        self._transition(InstanceState.STARTING)

    async def finish_start(self) -> InstanceStatus:
        """Create the backend; the instance must be ``STARTING``.

        Ends in ``RUNNING``, in ``STOPPED`` (timeout, or a stop arrived
        meanwhile) or in ``ERROR`` (backend failure).
        """
        try:
            handle = await asyncio.wait_for(
                self._manager.create(self.tenant_id, self.server_id), self._start_timeout
            )
        except asyncio.CancelledError:
            self._transition(InstanceState.STOPPING)
            self._transition(InstanceState.STOPPED, "start cancelled")
            raise
        except asyncio.TimeoutError:
            logger.warning("Instance %s did not start within %.1fs", self.label, self._start_timeout)
            self._transition(InstanceState.STOPPING)
            self._transition(InstanceState.STOPPED, f"start timed out after {self._start_timeout}s")
            raise InstanceStartTimeoutError(
                f"Instance {self.label} start timed out",
                tenant_id=self.tenant_id,
                server_id=self.server_id,
                retry_after=_START_RETRY_AFTER,
            ) from None
        except Exception as exc:
            logger.exception("Instance %s failed to start", self.label)
            self._transition(InstanceState.ERROR, f"{type(exc).__name__}: {exc}")
            raise InstanceFailedError(
                f"Instance {self.label} failed to start: {exc}",
                tenant_id=self.tenant_id,
                server_id=self.server_id,
            ) from exc

        if self._stop_requested:
            logger.info("Stop requested while %s was starting; tearing down", self.label)
            self._handle = handle
            self._transition(InstanceState.STOPPING)
            await self._teardown()
            return self.status()

        self._handle = handle
        self._started_at = utcnow()
        self._transition(InstanceState.RUNNING)
        return self.status()

    async def stop(self) -> InstanceStatus:
        """Stop a ``RUNNING`` instance.  Any other state is returned unchanged."""
        self._stop_requested = False
        if self._state != InstanceState.RUNNING:
            return self.status()
        self._transition(InstanceState.STOPPING)
        await self._teardown()
        return self.status()

    async def _teardown(self) -> None:
        handle, self._handle = self._handle, None
        try:
            if handle is not None:
                await asyncio.wait_for(self._manager.destroy(handle), self._stop_timeout)
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                reason = f"stop timed out after {self._stop_timeout}s"
            else:
                reason = f"{type(exc).__name__}: {exc}"
            logger.error("Instance %s failed to stop: %s", self.label, reason)
            self._transition(InstanceState.ERROR, reason)
            raise InstanceFailedError(
                f"Instance {self.label} failed to stop: {reason}",
                tenant_id=self.tenant_id,
                server_id=self.server_id,
            ) from exc
        self._started_at = None
        self._transition(InstanceState.STOPPED)

    def reset(self) -> InstanceStatus:
        """Operator intervention: ``ERROR`` → ``IDLE``.  Other states are unchanged."""
        if self._state == InstanceState.ERROR:
            self._transition(InstanceState.IDLE)
            self._last_error = None
        return self.status()

    # ── Forwarding (caller holds the lock) ───────────────────────────

    def ensure_running(self) -> None:
        """Raise unless the instance can take protocol traffic."""
        if self._state == InstanceState.ERROR:
            raise InstanceFailedError(
                f"Instance {self.label} is in error state: {self._last_error}",
                tenant_id=self.tenant_id,
                server_id=self.server_id,
            )
        if self._state != InstanceState.RUNNING or self._handle is None:
            raise InstanceUnavailableError(
                f"Instance {self.label} is {self._state.value}",
                tenant_id=self.tenant_id,
                server_id=self.server_id,
            )

    async def forward(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Hand *message* to the backend.

        Gateway errors raised by the backend (e.g. a malformed message)
        pass through untouched.  Any other exception means the backend is
        broken: the instance moves to ``ERROR``.
        """
        self.ensure_running()
        assert self._handle is not None
        self._request_count += 1
        try:
            return await self._handle.handle(message)
        except GatewayError:
            raise
        except Exception as exc:
            logger.exception("Instance %s failed while handling a request", self.label)
            self._transition(InstanceState.ERROR, f"{type(exc).__name__}: {exc}")
            await self._discard_handle()
            raise InstanceFailedError(
                f"Instance {self.label} crashed: {exc}",
                tenant_id=self.tenant_id,
                server_id=self.server_id,
            ) from exc

    async def _discard_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await asyncio.wait_for(self._manager.destroy(handle), self._stop_timeout)
        except Exception:
            logger.warning("Could not release backend of failed instance %s", self.label, exc_info=True)

