"""Incoming authentication: API keys, sessions and bearer tokens.

The :class:`RequestAuthenticator` turns request headers into an
:class:`AuthResult`, consulting the tenant registry and the session and
API-key stores, and reports every outcome to the audit log.
"""

from smcp_gateway.auth.authenticator import RequestAuthenticator, extract_credential
from smcp_gateway.auth.jwt import JWTConfig, JWTValidationError, JWTValidator, TokenClaims
from smcp_gateway.auth.models import ApiKey, AuthResult, AuthScheme, SessionContext
from smcp_gateway.auth.stores import ApiKeyStore, SessionStore

__all__ = [
    "ApiKey",
    "ApiKeyStore",
    "AuthResult",
    "AuthScheme",
    "JWTConfig",
    "JWTValidationError",
    "JWTValidator",
    "RequestAuthenticator",
    "SessionContext",
    "SessionStore",
    "TokenClaims",
    "extract_credential",
]
