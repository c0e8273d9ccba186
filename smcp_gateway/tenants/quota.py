"""Per-tenant quota decisions and the request-rate window counter."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from smcp_gateway.constants import RATE_WINDOW_SECONDS
from smcp_gateway.errors import RateLimitError

logger = logging.getLogger(__name__)


class QuotaKind(str, Enum):
    REQUESTS_PER_MINUTE = "max_requests_per_minute"
    SERVERS = "max_servers"
    STORAGE_MB = "max_storage_mb"


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check: allowed, or exceeded with retry guidance."""

    allowed: bool
    kind: QuotaKind
    limit: int
    current: int
    retry_after: Optional[int] = None

    def raise_if_exceeded(self) -> None:
        """Raise :class:`RateLimitError` when the quota was exceeded."""
        if not self.allowed:
            raise RateLimitError(
                f"{self.kind.value} exceeded ({self.current}/{self.limit})",
                retry_after=self.retry_after,
            )


@dataclass
class _Window:
    started_at: float
    count: int = 0


class RequestRateLimiter:
    """Fixed-window request counter keyed by tenant.

    :meth:`hit` increments and checks in one step without yielding to the
    event loop, so concurrent requests for the same tenant can never both
    take the last slot.

    Parameters
    ----------
    window:
        Window length in seconds (one minute by default).
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        window: float = RATE_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    def hit(self, tenant_id: str, limit: int) -> QuotaDecision:
        """Count one request for *tenant_id* against *limit* per window."""
        now = self._clock()
        win = self._windows.get(tenant_id)
        if win is None or now - win.started_at >= self._window:
            win = _Window(started_at=now)
            self._windows[tenant_id] = win

        if win.count >= limit:
            retry_after = max(1, math.ceil(win.started_at + self._window - now))
            logger.warning(
                "Rate limit exceeded for tenant %s (%d/%d, retry in %ds)",
                tenant_id,
                win.count,
                limit,
                retry_after,
            )
            return QuotaDecision(
                allowed=False,
                kind=QuotaKind.REQUESTS_PER_MINUTE,
                limit=limit,
                current=win.count,
                retry_after=retry_after,
            )

        win.count += 1
        return QuotaDecision(
            allowed=True,
            kind=QuotaKind.REQUESTS_PER_MINUTE,
            limit=limit,
            current=win.count,
        )

    def current(self, tenant_id: str) -> int:
        """Requests counted in the tenant's current window."""
        win = self._windows.get(tenant_id)
        if win is None or self._clock() - win.started_at >= self._window:
            return 0
        return win.count

    def reset(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._windows.clear()
        else:
            self._windows.pop(tenant_id, None)
