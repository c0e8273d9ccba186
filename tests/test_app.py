"""End-to-end tests of the HTTP surface through Starlette's TestClient."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Tuple
from unittest.mock import MagicMock

import jwt
import pytest
from starlette.testclient import TestClient

from smcp_gateway.config.schema import AuthSettings, GatewayConfig, InstanceSettings, TenantSettings
from smcp_gateway.server.app import create_app
from smcp_gateway.server.gateway import Gateway
from smcp_gateway.tenants.models import TenantConfig, TenantQuotas, TenantStatus

SECRET = "app-test-signing-secret-0123456789abcdef"


def _gateway(
    *,
    acme_status: TenantStatus = TenantStatus.ACTIVE,
    rpm: int = 100,
    auto_start: bool = False,
) -> Gateway:
    config = GatewayConfig(
        auth=AuthSettings(jwt_secret=SECRET),
        tenants=TenantSettings(
            cache_ttl_seconds=0,
            seed=[
                TenantConfig(
                    id="acme",
                    name="Acme",
                    status=acme_status,
                    quotas=TenantQuotas(max_requests_per_minute=rpm, max_servers=2),
                ),
                TenantConfig(id="globex", name="Globex"),
            ],
        ),
        instances=InstanceSettings(auto_start=auto_start),
    )
    return Gateway.from_config(config)


def _key(gateway: Gateway, tenant_id: str = "acme", perms: Tuple[str, ...] = ("*",), **kw) -> Dict[str, str]:
    raw, _ = asyncio.run(gateway.api_keys.issue(tenant_id, perms, **kw))
    return {"Authorization": f"ApiKey {raw}"}


@pytest.fixture
def gateway() -> Gateway:
    return _gateway()


@pytest.fixture
def client(gateway: Gateway):
    with TestClient(create_app(gateway=gateway)) as c:
        yield c


# ── Envelope / correlation ──────────────────────────────────────────────


class TestEnvelope:
    def test_success_envelope(self, gateway: Gateway, client: TestClient) -> None:
        resp = client.get("/api/tenant", headers=_key(gateway))
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["id"] == "acme"
        assert body["timestamp"].endswith("Z")
        assert body["requestId"] == resp.headers["X-Correlation-ID"]

    def test_inbound_correlation_id_is_echoed(self, gateway: Gateway, client: TestClient) -> None:
        headers = {**_key(gateway), "X-Correlation-ID": "trace-abc-123"}
        resp = client.get("/api/tenant", headers=headers)
        assert resp.headers["X-Correlation-ID"] == "trace-abc-123"

    def test_tainted_correlation_id_is_replaced(self, gateway: Gateway, client: TestClient) -> None:
        headers = {**_key(gateway), "X-Correlation-ID": "<bad>"}
        resp = client.get("/api/tenant", headers=headers)
        assert resp.headers["X-Correlation-ID"].startswith("req_")

    def test_error_envelope_has_no_data(self, client: TestClient) -> None:
        resp = client.get("/api/tenant")
        body = resp.json()
        assert body["success"] is False
        assert "data" not in body
        assert body["error"]
        assert resp.headers["X-Correlation-ID"] == body["requestId"]


# ── Status mapping ──────────────────────────────────────────────────────


class TestStatusMapping:
    def test_missing_credentials_401(self, client: TestClient) -> None:
        assert client.get("/api/tenant").status_code == 401

    def test_malformed_key_400(self, client: TestClient) -> None:
        resp = client.get("/api/tenant", headers={"Authorization": "ApiKey smcp_acme_zz"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid API key format"

    def test_expired_key_401(self, gateway: Gateway, client: TestClient) -> None:
        resp = client.get("/api/tenant", headers=_key(gateway, ttl=-1))
        assert resp.status_code == 401

    def test_expired_bearer_401_uniform(self, client: TestClient) -> None:
        token = jwt.encode(
            {"sub": "u", "tenant_id": "acme", "exp": int(time.time()) - 5}, SECRET, algorithm="HS256"
        )
        resp = client.get("/api/tenant", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert "expired" not in resp.json()["error"].lower()

    def test_valid_bearer(self, client: TestClient) -> None:
        token = jwt.encode(
            {"sub": "u", "tenant_id": "acme", "exp": int(time.time()) + 60, "scope": "tenant:read"},
            SECRET,
            algorithm="HS256",
        )
        resp = client.get("/api/tenant", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200

    def test_suspended_tenant_403(self) -> None:
        gw = _gateway(acme_status=TenantStatus.SUSPENDED)
        headers = _key(gw)
        with TestClient(create_app(gateway=gw)) as client:
            assert client.get("/api/tenant", headers=headers).status_code == 403

    def test_cross_tenant_path_403(self, gateway: Gateway, client: TestClient) -> None:
        resp = client.get("/mcp/globex/files/status", headers=_key(gateway))
        assert resp.status_code == 403

    def test_missing_permission_403(self, gateway: Gateway, client: TestClient) -> None:
        headers = _key(gateway, perms=("servers:read",))
        assert client.get("/mcp/acme/files/status", headers=headers).status_code == 200
        assert client.post("/mcp/acme/files/start", headers=headers, json={}).status_code == 403

    def test_post_requires_json(self, gateway: Gateway, client: TestClient) -> None:
        resp = client.post("/mcp/acme/files/start", headers=_key(gateway), content=b"x")
        assert resp.status_code == 400

    def test_rate_limit_429_on_101st_request(self, gateway: Gateway, client: TestClient) -> None:
        headers = _key(gateway)
        for i in range(100):
            assert client.get("/api/tenant", headers=headers).status_code == 200, i
        resp = client.get("/api/tenant", headers=headers)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) >= 1
        # Other tenants keep their own request quota
        assert client.get("/api/tenant", headers=_key(gateway, "globex")).status_code == 200

    def test_unhandled_error_is_generic_500(self, gateway: Gateway, client: TestClient) -> None:
        gateway.router.status = MagicMock(side_effect=RuntimeError("secret internals"))  # type: ignore[method-assign]
        resp = client.get("/mcp/acme/files/status", headers=_key(gateway))
        assert resp.status_code == 500
        assert "secret internals" not in resp.text


# ── Instance control surface ────────────────────────────────────────────


class TestInstanceEndpoints:
    def test_lifecycle(self, gateway: Gateway, client: TestClient) -> None:
        headers = _key(gateway)
        assert client.get("/mcp/acme/files/status", headers=headers).json()["data"]["state"] == "idle"

        resp = client.post("/mcp/acme/files/start", headers=headers, json={})
        assert resp.status_code == 200
        assert resp.json()["data"]["state"] == "running"

        # Idempotent start
        assert client.post("/mcp/acme/files/start", headers=headers, json={}).json()["data"]["state"] == "running"

        listed = client.get("/mcp/acme/servers", headers=headers).json()["data"]["servers"]
        assert [s["server_id"] for s in listed] == ["files"]

        resp = client.post("/mcp/acme/files/stop", headers=headers, json={})
        assert resp.json()["data"]["state"] == "stopped"

    def test_forward(self, gateway: Gateway, client: TestClient) -> None:
        headers = _key(gateway)
        client.post("/mcp/acme/files/start", headers=headers, json={})

        resp = client.post(
            "/mcp/acme/files", headers=headers, json={"jsonrpc": "2.0", "id": 7, "method": "ping"}
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["id"] == 7 and "result" in data and "error" not in data

        resp = client.post(
            "/mcp/acme/files",
            headers=headers,
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        )
        assert resp.status_code == 202

    def test_forward_not_running_503(self, gateway: Gateway, client: TestClient) -> None:
        resp = client.post(
            "/mcp/acme/files", headers=_key(gateway), json={"jsonrpc": "2.0", "id": 1, "method": "ping"}
        )
        assert resp.status_code == 503
        assert resp.json()["error"] == "Instance not available"

    def test_forward_invalid_body_400(self, gateway: Gateway, client: TestClient) -> None:
        headers = {**_key(gateway), "Content-Type": "application/json"}
        client.post("/mcp/acme/files/start", headers=headers, json={})
        assert client.post("/mcp/acme/files", headers=headers, content=b"{oops").status_code == 400
        assert client.post("/mcp/acme/files", headers=headers, content=b"[1]").status_code == 400

    def test_max_servers_429(self, gateway: Gateway, client: TestClient) -> None:
        headers = _key(gateway)
        for server in ("a", "b"):
            assert client.post(f"/mcp/acme/{server}/start", headers=headers, json={}).status_code == 200
        assert client.post("/mcp/acme/c/start", headers=headers, json={}).status_code == 429

    def test_auto_start(self) -> None:
        gw = _gateway(auto_start=True)
        headers = _key(gw)
        with TestClient(create_app(gateway=gw)) as client:
            resp = client.post(
                "/mcp/acme/files", headers=headers, json={"jsonrpc": "2.0", "id": 1, "method": "ping"}
            )
            assert resp.status_code == 200

    def test_shutdown_stops_instances(self, gateway: Gateway) -> None:
        headers = _key(gateway)
        with TestClient(create_app(gateway=gateway)) as client:
            client.post("/mcp/acme/files/start", headers=headers, json={})
        assert gateway.router.active_count("acme") == 0


# ── Audit endpoint ──────────────────────────────────────────────────────


class TestAuditEndpoint:
    def test_lists_own_entries_only(self, gateway: Gateway, client: TestClient) -> None:
        acme = _key(gateway)
        globex = _key(gateway, "globex")
        client.get("/api/tenant", headers=acme)
        client.get("/api/tenant", headers=globex)
        client.get("/mcp/globex/files/status", headers=acme)  # denied, audited under acme

        entries: List[dict] = client.get("/api/audit?limit=50", headers=acme).json()["data"]["entries"]
        assert entries
        assert {e["tenant_id"] for e in entries} == {"acme"}
        actions = {(e["action"], e["result"]) for e in entries}
        assert ("authenticate", "success") in actions
        assert ("instance.status", "failure") in actions

    def test_unresolved_rejections_stay_out_of_tenant_listings(self) -> None:
        gw = _gateway()
        gw.config.tenants.seed.append(TenantConfig(id="unknown", name="Unknown Corp"))
        with TestClient(create_app(gateway=gw)) as client:
            bogus = {"Authorization": "ApiKey smcp_acme_" + "f" * 64}
            assert client.get("/api/tenant", headers=bogus).status_code == 401

            own = _key(gw, "unknown")
            assert client.get("/api/tenant", headers=own).status_code == 200
            entries = client.get("/api/audit?limit=50", headers=own).json()["data"]["entries"]
        assert entries
        assert {e["tenant_id"] for e in entries} == {"unknown"}
        assert all("claimed_tenant" not in e["details"] for e in entries)

    def test_bad_limit_400(self, gateway: Gateway, client: TestClient) -> None:
        headers = _key(gateway)
        assert client.get("/api/audit?limit=abc", headers=headers).status_code == 400
        assert client.get("/api/audit?limit=0", headers=headers).status_code == 400
