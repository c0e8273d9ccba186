"""Session and API-key stores backed by a :class:`KeyValueStore`.

Layout::

    session:<sessionId>      →  SessionContext JSON   (TTL = time to expiry + grace)
    apikey:<sha256(rawKey)>  →  ApiKey JSON           (TTL = time to expiry + grace)
    apikey-id:<keyId>        →  sha256(rawKey)

Raw API keys are never persisted: :meth:`ApiKeyStore.issue` hands the key
to the caller once and keeps only its SHA-256 digest.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from smcp_gateway.auth.models import ApiKey, SessionContext
from smcp_gateway.constants import STORAGE_TIMEOUT
from smcp_gateway.security.crypto import (
    generate_api_key,
    generate_secure_id,
    generate_session_id,
    hash_string,
)
from smcp_gateway.storage.kv import KeyValueStore, bounded
from smcp_gateway.tenants.models import utcnow

logger = logging.getLogger(__name__)

_SESSION_PREFIX = "session:"
_API_KEY_PREFIX = "apikey:"
_API_KEY_ID_PREFIX = "apikey-id:"

# Expired records outlive their expiry by this long so a late use is
# reported as expired rather than unknown.
_EXPIRED_GRACE = timedelta(days=1)


def _ttl_until(expires_at: datetime, grace: timedelta = timedelta(0)) -> float:
    return max(1.0, (expires_at + grace - utcnow()).total_seconds())


class SessionStore:
    """Persistence for :class:`SessionContext` records.

    Parameters
    ----------
    store:
        Backing key-value store.
    default_ttl:
        Session lifetime in seconds when :meth:`create` gets none.
    timeout:
        Time bound for each storage call.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        default_ttl: float = 3600.0,
        timeout: float = STORAGE_TIMEOUT,
    ) -> None:
        self._store = store
        self._default_ttl = default_ttl
        self._timeout = timeout

    async def create(
        self,
        tenant_id: str,
        permissions: Iterable[str] = (),
        *,
        user_id: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> SessionContext:
        """Mint a new session for *tenant_id* and persist it."""
        now = utcnow()
        lifetime = ttl if ttl is not None else self._default_ttl
        session = SessionContext(
            tenant_id=tenant_id,
            session_id=generate_session_id(tenant_id),
            permissions=sorted(set(permissions)),
            expires_at=now + timedelta(seconds=lifetime),
            created_at=now,
            last_activity=now,
            user_id=user_id,
        )
        await self._save(session)
        logger.info("Session created for tenant %s (ttl=%.0fs)", tenant_id, lifetime)
        return session

    async def get(self, session_id: str) -> Optional[SessionContext]:
        """Return the stored session, expired or not, or ``None``."""
        raw = await bounded(
            self._store.get(_SESSION_PREFIX + session_id), self._timeout, "session lookup"
        )
        if raw is None:
            return None
        try:
            return SessionContext.model_validate_json(raw)
        except PydanticValidationError:
            logger.error("Corrupt session record dropped")
            await self.revoke(session_id)
            return None

    async def touch(self, session: SessionContext) -> SessionContext:
        """Record activity on *session* and return the updated copy."""
        updated = session.model_copy(update={"last_activity": utcnow()})
        await self._save(updated)
        return updated

    async def revoke(self, session_id: str) -> None:
        await bounded(
            self._store.delete(_SESSION_PREFIX + session_id), self._timeout, "session delete"
        )

    async def _save(self, session: SessionContext) -> None:
        await bounded(
            self._store.put(
                _SESSION_PREFIX + session.session_id,
                session.model_dump_json(),
                ttl=_ttl_until(session.expires_at, _EXPIRED_GRACE),
            ),
            self._timeout,
            "session write",
        )


class ApiKeyStore:
    """Persistence for :class:`ApiKey` records, looked up by key digest.

    Parameters
    ----------
    store:
        Backing key-value store.
    timeout:
        Time bound for each storage call.
    """

    def __init__(self, store: KeyValueStore, *, timeout: float = STORAGE_TIMEOUT) -> None:
        self._store = store
        self._timeout = timeout

    async def issue(
        self,
        tenant_id: str,
        permissions: Iterable[str] = (),
        *,
        ttl: float = 90 * 24 * 3600.0,
    ) -> Tuple[str, ApiKey]:
        """Mint a key for *tenant_id*.

        Returns ``(raw_key, record)``.  The raw key is not recoverable
        afterwards.
        """
        raw_key = generate_api_key(tenant_id)
        now = utcnow()
        record = ApiKey(
            key_id=generate_secure_id(8),
            tenant_id=tenant_id,
            key_hash=hash_string(raw_key),
            permissions=sorted(set(permissions)),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        await self._save(record)
        await bounded(
            self._store.put(
                _API_KEY_ID_PREFIX + record.key_id,
                record.key_hash,
                ttl=_ttl_until(record.expires_at, _EXPIRED_GRACE),
            ),
            self._timeout,
            "api key index write",
        )
        logger.info("API key %s issued for tenant %s", record.key_id, tenant_id)
        return raw_key, record

    async def lookup(self, raw_key: str) -> Optional[ApiKey]:
        """Return the record whose digest matches *raw_key*, or ``None``."""
        raw = await bounded(
            self._store.get(_API_KEY_PREFIX + hash_string(raw_key)),
            self._timeout,
            "api key lookup",
        )
        if raw is None:
            return None
        try:
            return ApiKey.model_validate_json(raw)
        except PydanticValidationError:
            logger.error("Corrupt API key record ignored")
            return None

    async def touch(self, record: ApiKey) -> ApiKey:
        """Stamp ``last_used`` on *record* and persist it."""
        updated = record.model_copy(update={"last_used": utcnow()})
        await self._save(updated)
        return updated

    async def revoke(self, key_id: str) -> bool:
        """Revoke a key by id.  Returns ``True`` if it existed."""
        digest = await bounded(
            self._store.get(_API_KEY_ID_PREFIX + key_id), self._timeout, "api key index lookup"
        )
        if digest is None:
            return False
        await bounded(
            self._store.delete(_API_KEY_PREFIX + digest), self._timeout, "api key delete"
        )
        await bounded(
            self._store.delete(_API_KEY_ID_PREFIX + key_id), self._timeout, "api key delete"
        )
        logger.info("API key %s revoked", key_id)
        return True

    async def _save(self, record: ApiKey) -> None:
        await bounded(
            self._store.put(
                _API_KEY_PREFIX + record.key_hash,
                record.model_dump_json(),
                ttl=_ttl_until(record.expires_at, _EXPIRED_GRACE),
            ),
            self._timeout,
            "api key write",
        )
