"""Key-value persistence collaborator.

Stores implement a small async interface::

    class KeyValueStore:
        async def get(self, key) -> Optional[str]: ...
        async def put(self, key, value, *, ttl=None) -> None: ...
        async def put_if_absent(self, key, value, *, ttl=None) -> bool: ...
        async def list_keys(self, prefix, *, limit=None) -> List[str]: ...
        async def delete(self, key) -> None: ...

Sessions, tenant configuration, API keys and audit entries all live in
stores of this shape.  :func:`bounded` wraps a store call with the
configured time bound so no lookup can wait forever.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from smcp_gateway.constants import STORAGE_TIMEOUT
from smcp_gateway.errors import StorageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyValueStore(ABC):
    """Abstract base class for key-value storage backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for *key*, or ``None`` if missing or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, *, ttl: Optional[float] = None) -> None:
        """Store *value* under *key*, optionally expiring after *ttl* seconds."""

    @abstractmethod
    async def put_if_absent(self, key: str, value: str, *, ttl: Optional[float] = None) -> bool:
        """Store *value* only if *key* is not already present.  Returns ``True`` on write."""

    @abstractmethod
    async def list_keys(self, prefix: str, *, limit: Optional[int] = None) -> List[str]:
        """Return live keys starting with *prefix*, in lexicographic order."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key* (no error if absent)."""


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store with per-key expiry.

    Expired entries are dropped lazily on access.  All methods run without
    awaiting, so each call is atomic with respect to the event loop.

    Parameters
    ----------
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return self._clock() + ttl if ttl is not None else None

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, *, ttl: Optional[float] = None) -> None:
        self._data[key] = (value, self._expiry(ttl))

    async def put_if_absent(self, key: str, value: str, *, ttl: Optional[float] = None) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl))
        return True

    async def list_keys(self, prefix: str, *, limit: Optional[int] = None) -> List[str]:
        keys = sorted(
            k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None
        )
        return keys[:limit] if limit is not None else keys

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return sum(1 for k in list(self._data) if self._live(k) is not None)


async def bounded(
    awaitable: Awaitable[T],
    timeout: Optional[float] = STORAGE_TIMEOUT,
    operation: str = "storage call",
) -> T:
    """Await *awaitable* for at most *timeout* seconds.

    Raises :class:`~smcp_gateway.errors.StorageTimeoutError` on expiry.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("Storage timeout after %.1fs during %s", timeout or 0.0, operation)
        raise StorageTimeoutError(f"{operation} timed out after {timeout}s") from exc
