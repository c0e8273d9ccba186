"""Request authentication.

Credentials are tried in a fixed order and the first one present decides
the outcome; a lower-precedence credential is never consulted once a
higher one was found, even if the higher one is malformed::

    1. Authorization: ApiKey smcp_<tenant>_<64 hex>
    2. Mcp-Session-Id: sess_<tenant>_<48 hex>
    3. Authorization: Bearer <jwt>

Outcome classes:

* malformed API key or session id → :class:`ValidationError` (400)
* missing, unknown, expired or invalid credential, or a tenant that does
  not exist or was deleted → :class:`AuthenticationError` (401)
* suspended tenant → :class:`AuthorizationError` (403)
* storage lookup over its time bound → :class:`StorageTimeoutError` (503)
* anything else → generic :class:`AuthenticationError`

Every terminal outcome is recorded in the audit log as action
``authenticate`` with the scheme as resource.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from smcp_gateway.audit.logger import AuditLog
from smcp_gateway.auth.jwt import JWTValidationError, JWTValidator
from smcp_gateway.auth.models import AuthResult, AuthScheme, SessionContext
from smcp_gateway.auth.stores import ApiKeyStore, SessionStore
from smcp_gateway.constants import (
    API_KEY_SCHEME,
    AUTHORIZATION_HEADER,
    BEARER_SCHEME,
    SESSION_HEADER,
)
from smcp_gateway.errors import (
    AuthenticationError,
    AuthorizationError,
    GatewayError,
    ValidationError,
)
from smcp_gateway.security.crypto import constant_time_compare, generate_correlation_id, hash_string
from smcp_gateway.security.validators import (
    is_valid_api_key,
    is_valid_session_id,
    is_valid_tenant_id,
    tenant_id_from_credential,
)
from smcp_gateway.tenants.models import TenantConfig, TenantStatus, utcnow
from smcp_gateway.tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)

AUTH_ACTION = "authenticate"

MSG_REQUIRED = "Authentication required"
MSG_FAILED = "Authentication failed"
MSG_BEARER_INVALID = "Bearer token invalid"


def _has_scheme(value: str, scheme: str) -> bool:
    return value[: len(scheme)].lower() == scheme.lower()


def extract_credential(headers: Mapping[str, str]) -> Tuple[AuthScheme, Optional[str]]:
    """Pick the credential to evaluate from *headers*.

    Header names are matched case-insensitively.  Several ``Authorization``
    headers may be present (e.g. an ``ApiKey`` and a ``Bearer`` one); they
    are ranked by scheme, not by position.
    """
    authorization: List[str] = []
    session_id: Optional[str] = None
    for name, value in headers.items():
        name = name.lower()
        if name == AUTHORIZATION_HEADER:
            authorization.append(value.strip())
        elif name == SESSION_HEADER and session_id is None:
            session_id = value.strip()

    for value in authorization:
        if _has_scheme(value, API_KEY_SCHEME.strip()):
            return AuthScheme.API_KEY, value[len(API_KEY_SCHEME.strip()) :].strip()
    if session_id is not None:
        return AuthScheme.SESSION, session_id
    for value in authorization:
        if _has_scheme(value, BEARER_SCHEME.strip()):
            return AuthScheme.BEARER, value[len(BEARER_SCHEME.strip()) :].strip()
    if authorization:
        raise ValidationError("Unsupported Authorization scheme")
    return AuthScheme.NONE, None


class RequestAuthenticator:
    """Turn request headers into an :class:`AuthResult`.

    Parameters
    ----------
    tenants:
        Tenant registry used to resolve and check the owning tenant.
    sessions:
        Session store.
    api_keys:
        API key store.
    bearer:
        Bearer token validator.  ``None`` rejects every bearer token.
    audit:
        Audit log receiving one entry per call.  ``None`` disables auditing.
    """

    def __init__(
        self,
        tenants: TenantRegistry,
        sessions: SessionStore,
        api_keys: ApiKeyStore,
        *,
        bearer: Optional[JWTValidator] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self._tenants = tenants
        self._sessions = sessions
        self._api_keys = api_keys
        self._bearer = bearer
        self._audit = audit

    async def authenticate(
        self,
        headers: Mapping[str, str],
        *,
        correlation_id: Optional[str] = None,
    ) -> AuthResult:
        """Authenticate one request.  Never raises."""
        correlation_id = correlation_id or generate_correlation_id()
        attempt = _Attempt()
        scheme = AuthScheme.NONE
        try:
            scheme, credential = extract_credential(headers)
            if scheme == AuthScheme.API_KEY:
                result = await self._authenticate_api_key(credential or "", attempt)
            elif scheme == AuthScheme.SESSION:
                result = await self._authenticate_session(credential or "", attempt)
            elif scheme == AuthScheme.BEARER:
                result = await self._authenticate_bearer(credential or "", attempt)
            else:
                result = AuthResult.rejected(scheme, AuthenticationError(MSG_REQUIRED))
        except GatewayError as exc:
            result = AuthResult.rejected(scheme, exc)
        except Exception as exc:
            logger.exception("Unexpected error during %s authentication", scheme.value)
            attempt.fault = exc
            result = AuthResult.rejected(scheme, AuthenticationError(MSG_FAILED))

        self._record(result, correlation_id, attempt)
        return result

    # ── Schemes ──────────────────────────────────────────────────────

    async def _authenticate_api_key(self, raw_key: str, attempt: _Attempt) -> AuthResult:
        if not is_valid_api_key(raw_key):
            raise ValidationError("Invalid API key format")
        claimed = tenant_id_from_credential(raw_key)
        attempt.claimed_tenant = claimed

        record = await self._api_keys.lookup(raw_key)
        if record is None or not constant_time_compare(hash_string(raw_key), record.key_hash):
            raise AuthenticationError("Unknown API key")
        attempt.key_id = record.key_id
        if record.tenant_id != claimed:
            raise AuthenticationError("API key tenant mismatch")
        if record.is_expired():
            raise AuthenticationError("API key expired")

        tenant = await self._resolve_tenant(record.tenant_id, attempt)
        record = await self._api_keys.touch(record)
        session = SessionContext(
            tenant_id=tenant.id,
            session_id=record.key_id,
            permissions=list(record.permissions),
            expires_at=record.expires_at,
            created_at=record.created_at,
            last_activity=record.last_used or utcnow(),
        )
        return AuthResult.authenticated(AuthScheme.API_KEY, session, tenant)

    async def _authenticate_session(self, session_id: str, attempt: _Attempt) -> AuthResult:
        if not is_valid_session_id(session_id):
            raise ValidationError("Invalid session ID format")
        claimed = tenant_id_from_credential(session_id)
        attempt.claimed_tenant = claimed

        session = await self._sessions.get(session_id)
        if session is None:
            raise AuthenticationError("Unknown session")
        if session.tenant_id != claimed or session.session_id != session_id:
            raise AuthenticationError("Session tenant mismatch")
        if session.is_expired():
            await self._sessions.revoke(session_id)
            raise AuthenticationError("Session expired")

        tenant = await self._resolve_tenant(session.tenant_id, attempt)
        session = await self._sessions.touch(session)
        return AuthResult.authenticated(AuthScheme.SESSION, session, tenant)

    async def _authenticate_bearer(self, token: str, attempt: _Attempt) -> AuthResult:
        if self._bearer is None or not token:
            raise AuthenticationError(MSG_BEARER_INVALID)
        try:
            claims = await self._bearer.validate(token)
        except JWTValidationError as exc:
            # The precise reason stays in the server log; callers get one message.
            logger.debug("Bearer token rejected: %s", exc)
            raise AuthenticationError(MSG_BEARER_INVALID) from exc
        if not is_valid_tenant_id(claims.tenant_id):
            logger.debug("Bearer token carries no usable tenant claim")
            raise AuthenticationError(MSG_BEARER_INVALID)
        attempt.claimed_tenant = claims.tenant_id

        tenant = await self._resolve_tenant(claims.tenant_id, attempt)
        permissions = set(claims.permissions) | tenant.role_permissions(claims.roles)
        session = SessionContext(
            tenant_id=tenant.id,
            session_id=claims.jti or f"jwt:{claims.sub}",
            permissions=sorted(permissions),
            expires_at=datetime.fromtimestamp(int(claims.raw["exp"]), tz=timezone.utc),
            user_id=claims.sub or None,
        )
        return AuthResult.authenticated(AuthScheme.BEARER, session, tenant)

    # ── Helpers ──────────────────────────────────────────────────────

    async def _resolve_tenant(self, tenant_id: str, attempt: _Attempt) -> TenantConfig:
        """Return the active tenant or raise.

        A credential whose tenant is missing or deleted is treated as an
        unknown credential; a suspended tenant is an authorization failure.
        """
        tenant = await self._tenants.find(tenant_id)
        if tenant is None or tenant.status == TenantStatus.DELETED:
            raise AuthenticationError(f"Tenant '{tenant_id}' does not exist")
        attempt.resolved_tenant = tenant.id
        if not tenant.is_active:
            raise AuthorizationError("Tenant inactive")
        return tenant

    def _record(self, result: AuthResult, correlation_id: str, attempt: _Attempt) -> None:
        if self._audit is None:
            return
        resource = result.scheme.value
        details = attempt.details()

        if result.is_authenticated and result.session is not None:
            self._audit.log_success(
                correlation_id,
                AUTH_ACTION,
                resource,
                tenant_id=result.session.tenant_id,
                user_id=result.session.user_id,
                session_id=result.session.session_id,
                details=details,
            )
            return

        if attempt.fault is not None:
            self._audit.log_error(
                correlation_id,
                attempt.fault,
                AUTH_ACTION,
                resource,
                tenant_id=attempt.resolved_tenant,
                details=details,
            )
            return

        details["reason"] = result.error
        if result.failure is not None:
            details["status"] = result.failure.status_code
        self._audit.log_failure(
            correlation_id,
            AUTH_ACTION,
            resource,
            tenant_id=attempt.resolved_tenant,
            details=details,
        )


@dataclass
class _Attempt:
    """What one authentication call learned, for its audit entry."""

    claimed_tenant: Optional[str] = None
    resolved_tenant: Optional[str] = None
    key_id: Optional[str] = None
    fault: Optional[BaseException] = None

    def details(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.claimed_tenant and self.claimed_tenant != self.resolved_tenant:
            out["claimed_tenant"] = self.claimed_tenant
        if self.key_id:
            out["key_id"] = self.key_id
        return out
