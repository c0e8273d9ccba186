"""Tests for request authentication: precedence, per-scheme checks, audit."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import jwt
import pytest

from smcp_gateway.audit.logger import UNKNOWN_TENANT, AuditLog
from smcp_gateway.audit.models import AuditLogEntry, AuditResult
from smcp_gateway.auth.authenticator import (
    MSG_BEARER_INVALID,
    MSG_FAILED,
    MSG_REQUIRED,
    RequestAuthenticator,
    extract_credential,
)
from smcp_gateway.auth.jwt import JWTConfig, JWTValidator
from smcp_gateway.auth.models import AuthScheme
from smcp_gateway.auth.stores import ApiKeyStore, SessionStore
from smcp_gateway.errors import (
    AuthenticationError,
    AuthorizationError,
    StorageTimeoutError,
    ValidationError,
)
from smcp_gateway.storage.kv import MemoryKeyValueStore
from smcp_gateway.tenants.models import TenantConfig, TenantRole, TenantStatus
from smcp_gateway.tenants.registry import TenantRegistry

SECRET = "test-signing-secret-0123456789abcdef"
ISSUER = "https://id.example"


class _Env:
    """Authenticator wired to in-memory stores, with the audit log exposed."""

    def __init__(self, *, bearer: bool = True) -> None:
        self.store = MemoryKeyValueStore()
        self.tenants = TenantRegistry(self.store, cache_ttl=0)
        self.sessions = SessionStore(self.store)
        self.api_keys = ApiKeyStore(self.store)
        self.audit = AuditLog(self.store)
        validator = JWTValidator(JWTConfig(secret=SECRET, issuer=ISSUER)) if bearer else None
        self.auth = RequestAuthenticator(
            self.tenants, self.sessions, self.api_keys, bearer=validator, audit=self.audit
        )

    async def add_tenant(self, tenant_id: str = "acme", **kwargs) -> TenantConfig:
        return await self.tenants.put(TenantConfig(id=tenant_id, name=tenant_id, **kwargs))

    async def audit_entries(self, tenant_id: str) -> List[AuditLogEntry]:
        await self.audit.flush()
        return await self.audit.list(tenant_id)


def _token(claims: Optional[Dict] = None, secret: str = SECRET) -> str:
    payload = {
        "sub": "user-1",
        "iss": ISSUER,
        "tenant_id": "acme",
        "exp": int(time.time()) + 300,
        "jti": "tok-1",
        "permissions": ["mcp:call"],
    }
    payload.update(claims or {})
    return jwt.encode(payload, secret, algorithm="HS256")


def _apikey(raw: str) -> Dict[str, str]:
    return {"Authorization": f"ApiKey {raw}"}


# ── Credential extraction ───────────────────────────────────────────────


class TestExtractCredential:
    def test_none(self) -> None:
        assert extract_credential({}) == (AuthScheme.NONE, None)

    def test_case_insensitive_names(self) -> None:
        assert extract_credential({"MCP-SESSION-ID": "s"}) == (AuthScheme.SESSION, "s")
        assert extract_credential({"AUTHORIZATION": "bearer t"}) == (AuthScheme.BEARER, "t")

    def test_api_key_beats_session_and_bearer(self) -> None:
        headers = [("authorization", "Bearer t"), ("mcp-session-id", "s"), ("authorization", "ApiKey k")]

        class _Multi:
            def items(self) -> List[Tuple[str, str]]:
                return headers

        assert extract_credential(_Multi()) == (AuthScheme.API_KEY, "k")  # type: ignore[arg-type]

    def test_session_beats_bearer(self) -> None:
        headers = {"Authorization": "Bearer t", "Mcp-Session-Id": "s"}
        assert extract_credential(headers) == (AuthScheme.SESSION, "s")

    def test_unknown_scheme_is_malformed(self) -> None:
        with pytest.raises(ValidationError):
            extract_credential({"Authorization": "Basic dXNlcjpwYXNz"})


# ── API keys ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestApiKeyAuthentication:
    async def test_acme_key_authenticates(self) -> None:
        env = _Env()
        await env.add_tenant()
        raw, record = await env.api_keys.issue("acme", ["mcp:call"])

        result = await env.auth.authenticate(_apikey(raw), correlation_id="req_ok")
        assert result.is_authenticated
        assert result.tenant is not None and result.tenant.id == "acme"
        assert result.session is not None
        assert result.session.tenant_id == "acme"
        assert result.session.session_id == record.key_id
        assert result.session.permissions == ["mcp:call"]

        stored = await env.api_keys.lookup(raw)
        assert stored is not None and stored.last_used is not None

    async def test_raw_key_never_stored(self) -> None:
        env = _Env()
        await env.add_tenant()
        raw, _ = await env.api_keys.issue("acme")
        for key in await env.store.list_keys(""):
            assert raw not in key
            assert raw not in (await env.store.get(key) or "")

    async def test_expired_key_is_401(self) -> None:
        env = _Env()
        await env.add_tenant()
        raw, _ = await env.api_keys.issue("acme", ttl=-1)

        result = await env.auth.authenticate(_apikey(raw))
        assert not result.is_authenticated
        assert result.error == "API key expired"
        assert isinstance(result.failure, AuthenticationError)
        assert result.failure.status_code == 401

    async def test_unknown_key_is_401(self) -> None:
        env = _Env()
        await env.add_tenant()
        result = await env.auth.authenticate(_apikey("smcp_acme_" + "0" * 64))
        assert result.error == "Unknown API key"
        assert result.failure is not None and result.failure.status_code == 401

    async def test_revoked_key_is_unknown(self) -> None:
        env = _Env()
        await env.add_tenant()
        raw, record = await env.api_keys.issue("acme")
        assert await env.api_keys.revoke(record.key_id)
        assert not await env.api_keys.revoke(record.key_id)
        result = await env.auth.authenticate(_apikey(raw))
        assert result.error == "Unknown API key"

    async def test_malformed_key_is_400_without_fallthrough(self) -> None:
        env = _Env()
        await env.add_tenant()
        session = await env.sessions.create("acme", ["mcp:call"])
        headers = {"Authorization": "ApiKey smcp_acme_nothex", "Mcp-Session-Id": session.session_id}

        result = await env.auth.authenticate(headers)
        assert not result.is_authenticated
        assert result.scheme == AuthScheme.API_KEY
        assert isinstance(result.failure, ValidationError)
        assert result.failure.status_code == 400

    async def test_api_key_precedence_over_bearer(self) -> None:
        env = _Env()
        await env.add_tenant()
        raw, record = await env.api_keys.issue("acme")

        class _Multi:
            def items(self) -> List[Tuple[str, str]]:
                return [("authorization", f"Bearer {_token()}"), ("authorization", f"ApiKey {raw}")]

        result = await env.auth.authenticate(_Multi())  # type: ignore[arg-type]
        assert result.scheme == AuthScheme.API_KEY
        assert result.session is not None and result.session.session_id == record.key_id

    async def test_key_for_suspended_tenant_is_403(self) -> None:
        env = _Env()
        await env.add_tenant(status=TenantStatus.SUSPENDED)
        raw, _ = await env.api_keys.issue("acme")
        result = await env.auth.authenticate(_apikey(raw))
        assert isinstance(result.failure, AuthorizationError)
        assert result.failure.status_code == 403

    async def test_key_for_deleted_tenant_is_401(self) -> None:
        env = _Env()
        await env.add_tenant(status=TenantStatus.DELETED)
        raw, _ = await env.api_keys.issue("acme")
        result = await env.auth.authenticate(_apikey(raw))
        assert isinstance(result.failure, AuthenticationError)

    async def test_key_for_missing_tenant_is_401(self) -> None:
        env = _Env()
        raw, _ = await env.api_keys.issue("ghost")
        result = await env.auth.authenticate(_apikey(raw))
        assert isinstance(result.failure, AuthenticationError)


# ── Sessions ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestSessionAuthentication:
    async def test_valid_session_updates_activity(self) -> None:
        env = _Env()
        await env.add_tenant()
        session = await env.sessions.create("acme", ["servers:read"], user_id="u1")
        await asyncio.sleep(0.01)

        result = await env.auth.authenticate({"Mcp-Session-Id": session.session_id})
        assert result.is_authenticated
        assert result.session is not None
        assert result.session.last_activity > session.last_activity
        stored = await env.sessions.get(session.session_id)
        assert stored is not None and stored.last_activity == result.session.last_activity

    async def test_suspended_mid_session_is_403(self) -> None:
        env = _Env()
        await env.add_tenant()
        session = await env.sessions.create("acme")
        assert (await env.auth.authenticate({"Mcp-Session-Id": session.session_id})).is_authenticated

        await env.tenants.set_status("acme", TenantStatus.SUSPENDED)
        result = await env.auth.authenticate({"Mcp-Session-Id": session.session_id})
        assert not result.is_authenticated
        assert isinstance(result.failure, AuthorizationError)
        assert result.failure.status_code == 403

    async def test_expired_session_is_401_and_revoked(self) -> None:
        env = _Env()
        await env.add_tenant()
        session = await env.sessions.create("acme", ttl=-1)
        result = await env.auth.authenticate({"Mcp-Session-Id": session.session_id})
        assert result.error == "Session expired"
        assert await env.sessions.get(session.session_id) is None

    async def test_unknown_session_is_401(self) -> None:
        env = _Env()
        await env.add_tenant()
        result = await env.auth.authenticate({"Mcp-Session-Id": "sess_acme_" + "b" * 48})
        assert result.error == "Unknown session"

    async def test_malformed_session_is_400(self) -> None:
        env = _Env()
        result = await env.auth.authenticate({"Mcp-Session-Id": "sess_acme_short"})
        assert isinstance(result.failure, ValidationError)

    async def test_revoked_session(self) -> None:
        env = _Env()
        await env.add_tenant()
        session = await env.sessions.create("acme")
        await env.sessions.revoke(session.session_id)
        result = await env.auth.authenticate({"Mcp-Session-Id": session.session_id})
        assert result.error == "Unknown session"


# ── Bearer tokens ───────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestBearerAuthentication:
    async def test_valid_token(self) -> None:
        env = _Env()
        await env.add_tenant(roles=[TenantRole(name="ops", permissions=["servers:*"])])
        token = _token({"roles": ["ops"]})

        result = await env.auth.authenticate({"Authorization": f"Bearer {token}"})
        assert result.is_authenticated
        assert result.scheme == AuthScheme.BEARER
        assert result.session is not None
        assert result.session.user_id == "user-1"
        assert result.session.session_id == "tok-1"
        assert set(result.session.permissions) == {"mcp:call", "servers:*"}

    @pytest.mark.parametrize(
        "token",
        [
            _token({"exp": int(time.time()) - 60}),
            _token(secret="some-other-secret-value-0123456789"),
            _token({"iss": "https://evil.example"}),
            "not.a.jwt",
        ],
        ids=["expired", "bad-signature", "wrong-issuer", "malformed"],
    )
    async def test_every_failure_has_one_message(self, token: str) -> None:
        env = _Env()
        await env.add_tenant()
        result = await env.auth.authenticate({"Authorization": f"Bearer {token}"})
        assert not result.is_authenticated
        assert result.error == MSG_BEARER_INVALID
        assert result.failure is not None and result.failure.status_code == 401

    async def test_token_without_tenant_claim(self) -> None:
        env = _Env()
        await env.add_tenant()
        token = _token({"tenant_id": ""})
        result = await env.auth.authenticate({"Authorization": f"Bearer {token}"})
        assert result.error == MSG_BEARER_INVALID

    async def test_no_validator_rejects(self) -> None:
        env = _Env(bearer=False)
        await env.add_tenant()
        result = await env.auth.authenticate({"Authorization": f"Bearer {_token()}"})
        assert result.error == MSG_BEARER_INVALID


# ── Failure handling & audit ────────────────────────────────────────────


@pytest.mark.asyncio
class TestAuthenticationOutcomes:
    async def test_missing_credentials(self) -> None:
        env = _Env()
        result = await env.auth.authenticate({"Accept": "application/json"})
        assert not result.is_authenticated
        assert result.error == MSG_REQUIRED
        assert result.failure is not None and result.failure.status_code == 401

    async def test_unexpected_exception_is_generic(self) -> None:
        env = _Env()
        env.api_keys.lookup = AsyncMock(side_effect=RuntimeError("db exploded"))  # type: ignore[method-assign]
        result = await env.auth.authenticate(_apikey("smcp_acme_" + "c" * 64), correlation_id="req_e")
        assert result.error == MSG_FAILED
        assert "exploded" not in (result.failure.public_message if result.failure else "")

        entries = await env.audit_entries(UNKNOWN_TENANT)
        assert entries[0].result == AuditResult.ERROR
        assert "db exploded" in entries[0].details["error"]

    async def test_storage_timeout_is_503(self) -> None:
        env = _Env()
        env.sessions.get = AsyncMock(side_effect=StorageTimeoutError("session lookup timed out"))  # type: ignore[method-assign]
        result = await env.auth.authenticate({"Mcp-Session-Id": "sess_acme_" + "d" * 48})
        assert isinstance(result.failure, StorageTimeoutError)
        assert result.failure.status_code == 503

    async def test_success_is_audited_under_tenant(self) -> None:
        env = _Env()
        await env.add_tenant()
        raw, record = await env.api_keys.issue("acme")
        await env.auth.authenticate(_apikey(raw), correlation_id="req_audit")

        (entry,) = [e for e in await env.audit_entries("acme") if e.correlation_id == "req_audit"]
        assert entry.action == "authenticate"
        assert entry.resource == "api_key"
        assert entry.result == AuditResult.SUCCESS
        assert entry.session_id == record.key_id

    async def test_failure_is_audited_with_reason(self) -> None:
        env = _Env()
        await env.add_tenant(status=TenantStatus.SUSPENDED)
        session = await env.sessions.create("acme")
        await env.auth.authenticate({"Mcp-Session-Id": session.session_id}, correlation_id="req_f")

        (entry,) = await env.audit_entries("acme")
        assert entry.result == AuditResult.FAILURE
        assert entry.details["reason"] == "Tenant inactive"
        assert entry.details["status"] == 403

    async def test_unresolved_tenant_audited_apart_from_tenants(self) -> None:
        env = _Env()
        await env.auth.authenticate(_apikey("smcp_acme_" + "e" * 64), correlation_id="req_u")
        (entry,) = await env.audit_entries(UNKNOWN_TENANT)
        assert entry.details["claimed_tenant"] == "acme"
        assert await env.audit_entries("acme") == []
