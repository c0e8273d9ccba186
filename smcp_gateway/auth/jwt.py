"""Bearer token verification.

Tokens are verified either against a shared HMAC secret (HS256/384/512)
or against keys fetched from a JWKS URI (RS/ES families).  JWKS keys are
cached with a configurable TTL and re-fetched once on a signature failure
to follow key rotation.

Verification covers signature, ``exp`` (required), ``nbf``, ``iss`` when
an issuer is configured and ``aud`` when an audience is configured.  The
gateway only verifies tokens; issuing them is someone else's job.

JWKS verification may fetch keys over HTTP, so it runs in a worker thread
and is bounded by ``fetch_timeout``; the event loop never waits on it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import jwt
from jwt import PyJWKClient

from smcp_gateway.constants import STORAGE_TIMEOUT
from smcp_gateway.storage.kv import bounded

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS: Set[str] = {"HS256", "HS384", "HS512"}
SUPPORTED_ALGORITHMS: Set[str] = HMAC_ALGORITHMS | {
    "RS256",
    "RS384",
    "RS512",
    "ES256",
    "ES384",
    "ES512",
}

TENANT_CLAIM = "tenant_id"

_DEFAULT_KEY_TTL = 3600.0  # 1 hour


@dataclass
class JWTConfig:
    """Configuration for bearer token verification.

    Attributes
    ----------
    secret:
        Shared verification secret for HMAC algorithms.
    jwks_uri:
        URL of a JSON Web Key Set, used when no secret is set.
    issuer:
        Expected ``iss`` claim value (validated when set).
    audience:
        Expected ``aud`` claim value (validated when set).
    algorithms:
        Allowed signing algorithms.
    leeway:
        Clock skew tolerance in seconds for ``exp``/``nbf``.
    key_ttl:
        Seconds to cache JWKS keys before re-fetching.
    fetch_timeout:
        Bound in seconds on a JWKS verification, key fetch included.
    """

    secret: str = ""
    jwks_uri: str = ""
    issuer: str = ""
    audience: str = ""
    algorithms: List[str] = field(default_factory=lambda: ["HS256"])
    leeway: float = 0.0
    key_ttl: float = _DEFAULT_KEY_TTL
    fetch_timeout: float = STORAGE_TIMEOUT

    @property
    def enabled(self) -> bool:
        return bool(self.secret or self.jwks_uri)


@dataclass(frozen=True)
class TokenClaims:
    """Parsed claims from a verified token."""

    sub: str = ""
    iss: str = ""
    aud: str = ""
    jti: str = ""
    tenant_id: str = ""
    permissions: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


class JWTValidationError(Exception):
    """Raised when token verification fails."""


class JWTValidator:
    """Verify bearer tokens and return their claims.

    Usage::

        validator = JWTValidator(JWTConfig(secret="..."))
        claims = await validator.validate(token_string)
    """

    def __init__(self, config: JWTConfig) -> None:
        unknown = set(config.algorithms) - SUPPORTED_ALGORITHMS
        if unknown:
            raise ValueError(f"Unsupported JWT algorithm(s): {', '.join(sorted(unknown))}")
        if config.secret and not set(config.algorithms) <= HMAC_ALGORITHMS:
            raise ValueError("A shared secret can only verify HS256/HS384/HS512 tokens")
        self._config = config
        self._keys: Optional[PyJWKClient] = None
        self._keys_fetched_at: float = 0.0

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def validate(self, token: str) -> TokenClaims:
        """Verify *token* and return parsed claims.

        Raises :class:`JWTValidationError` on any failure, and
        :class:`~smcp_gateway.errors.StorageTimeoutError` when JWKS
        verification exceeds ``fetch_timeout``.
        """
        if self._config.secret or not self._config.jwks_uri:
            return self._validate_sync(token)
        return await bounded(
            asyncio.to_thread(self._validate_sync, token),
            self._config.fetch_timeout,
            "JWKS token verification",
        )

    def _validate_sync(self, token: str) -> TokenClaims:
        if not self._config.enabled:
            raise JWTValidationError("Bearer tokens are not accepted: no verification key configured")

        try:
            claims = self._decode(token)
        except jwt.exceptions.InvalidSignatureError as exc:
            if not self._config.jwks_uri or self._config.secret:
                raise JWTValidationError("Invalid token signature") from exc
            # Key rotation: re-fetch keys and retry once
            logger.debug("JWT signature invalid, re-fetching JWKS keys")
            self._keys = None
            try:
                claims = self._decode(token)
            except jwt.exceptions.PyJWTError as retry_exc:
                raise JWTValidationError(
                    f"JWT validation failed after key refresh: {retry_exc}"
                ) from retry_exc
        except jwt.exceptions.ExpiredSignatureError as exc:
            raise JWTValidationError("Token has expired") from exc
        except jwt.exceptions.PyJWTError as exc:
            raise JWTValidationError(f"Invalid token: {exc}") from exc

        return TokenClaims(
            sub=str(claims.get("sub", "")),
            iss=str(claims.get("iss", "")),
            aud=_norm_aud(claims.get("aud", "")),
            jti=str(claims.get("jti", "")),
            tenant_id=str(claims.get(TENANT_CLAIM, "")),
            permissions=_permissions(claims),
            roles=_roles(claims),
            raw=claims,
        )

    def _decode(self, token: str) -> Dict[str, Any]:
        options: Dict[str, Any] = {"require": ["exp"]}
        kwargs: Dict[str, Any] = {
            "algorithms": self._config.algorithms,
            "options": options,
            "leeway": self._config.leeway,
        }
        if self._config.issuer:
            kwargs["issuer"] = self._config.issuer
        if self._config.audience:
            kwargs["audience"] = self._config.audience
        else:
            options["verify_aud"] = False

        return jwt.decode(token, self._signing_key(token), **kwargs)

    def _signing_key(self, token: str) -> Any:
        if self._config.secret:
            return self._config.secret
        if self._keys is None or self._keys_expired():
            self._keys = PyJWKClient(
                self._config.jwks_uri, timeout=max(1, int(self._config.fetch_timeout))
            )
            self._keys_fetched_at = time.monotonic()
        return self._keys.get_signing_key_from_jwt(token).key

    def _keys_expired(self) -> bool:
        return (time.monotonic() - self._keys_fetched_at) > self._config.key_ttl


def _norm_aud(aud: Any) -> str:
    """Normalise the ``aud`` claim to a string."""
    if isinstance(aud, list):
        return aud[0] if aud else ""
    return str(aud) if aud else ""


def _permissions(claims: Dict[str, Any]) -> List[str]:
    """Permissions from a ``permissions`` list or a space-separated ``scope``."""
    perms = claims.get("permissions")
    if isinstance(perms, list):
        return [str(p) for p in perms]
    scope = claims.get("scope")
    if isinstance(scope, str):
        return scope.split()
    return []


def _roles(claims: Dict[str, Any]) -> List[str]:
    """Roles from a ``roles`` list or a single role string."""
    roles = claims.get("roles")
    if isinstance(roles, str):
        return [roles] if roles else []
    if isinstance(roles, list):
        return [str(r) for r in roles]
    return []
