"""HTTP-level tests for the session and admin endpoints."""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from intelgate.app import app
from intelgate.service.operations import OperationTable
from intelgate.service.runtime import get_runtime
from intelgate.storage.errors import StorageUnavailable

ALICE = {"X-Actor-Id": "alice", "X-Actor-Role": "user"}
BOB = {"X-Actor-Id": "bob", "X-Actor-Role": "user"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}
VIEWER = {"X-Actor-Id": "v1", "X-Actor-Role": "viewer"}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _create_session(client, headers=ALICE, **extra):
    resp = client.post("/v1/sessions", headers={**headers, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    def test_request_id_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"


class TestSessionEndpoints:
    def test_create_requires_actor(self, client):
        resp = client.post("/v1/sessions")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_create_and_validate(self, client):
        data = _create_session(client)
        session = data["session"]
        assert session["actor_id"] == "alice"
        assert session["state"] == "created"
        assert data["suspicious"] is False

        resp = client.post("/v1/sessions/validate", headers={**ALICE, "Session-Id": session["id"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["valid"] is True

    def test_validate_from_other_agent_rejected(self, client):
        session = _create_session(client)["session"]

        resp = client.post(
            "/v1/sessions/validate",
            headers={**ALICE, "Session-Id": session["id"], "User-Agent": "stolen-cookie/1.0"},
        )

        assert resp.status_code == 401
        error = resp.json()["error"]
        assert error["code"] == "session_invalid"
        # The rejection cause is never disclosed
        assert error["details"] is None

    def test_second_login_from_new_agent_flagged(self, client):
        _create_session(client)
        data = _create_session(client, **{"User-Agent": "other-browser"})
        assert data["suspicious"] is True

    def test_logout(self, client):
        session = _create_session(client)["session"]

        resp = client.delete(f"/v1/sessions/{session['id']}", headers=BOB)
        assert resp.status_code == 404

        resp = client.delete(f"/v1/sessions/{session['id']}", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["data"]["revoked"] is True

        resp = client.post("/v1/sessions/validate", headers={**ALICE, "Session-Id": session["id"]})
        assert resp.status_code == 401

    def test_security_report(self, client):
        current = _create_session(client)["session"]
        _create_session(client)

        resp = client.get("/v1/sessions/security", headers={**ALICE, "Session-Id": current["id"]})

        data = resp.json()["data"]
        assert data["concurrent_sessions"] is True
        assert data["active_sessions"] == 2
        assert data["suspicious"] is False


class TestAdminEndpoints:
    def test_viewer_forbidden_without_consuming_quota(self, client):
        resp = client.get("/v1/admin/users/alice/sessions", headers=VIEWER)

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert get_runtime().store.get_rate_limit_counter("USER_SESSIONS_LIST:v1") is None

    def test_unknown_role_forbidden(self, client):
        resp = client.get(
            "/v1/admin/users/alice/sessions", headers={"X-Actor-Id": "x", "X-Actor-Role": "root"}
        )
        assert resp.status_code == 403

    def test_admin_lists_sessions_with_quota_headers(self, client):
        _create_session(client)
        _create_session(client)

        resp = client.get("/v1/admin/users/alice/sessions", headers=ADMIN)

        assert resp.status_code == 200
        assert len(resp.json()["data"]["items"]) == 2
        assert resp.headers["X-RateLimit-Limit"] == "500"
        assert resp.headers["X-RateLimit-Remaining"] == "499"
        assert int(resp.headers["X-RateLimit-Reset"]) > 0

    def test_revoke_all_sessions(self, client):
        keep = _create_session(client)["session"]
        _create_session(client)
        _create_session(client)

        resp = client.request(
            "DELETE",
            "/v1/admin/users/alice/sessions",
            headers=ADMIN,
            json={"reason": "compromise", "except_session_id": keep["id"]},
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == {"user_id": "alice", "revoked": 2}

        resp = client.get(
            "/v1/admin/audit-logs",
            headers=ADMIN,
            params={"action": "session_revoke_all"},
        )
        items = resp.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["actor_id"] == "admin-1"
        assert items[0]["metadata"]["reason"] == "compromise"

    def test_revoke_with_invalid_reason(self, client):
        resp = client.request(
            "DELETE",
            "/v1/admin/users/alice/sessions",
            headers=ADMIN,
            json={"reason": "because"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_cleanup(self, client):
        resp = client.post("/v1/admin/sessions/cleanup", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["data"] == {"sessions_deleted": 0, "counters_deleted": 0}

    def test_guarded_calls_are_audited(self, client):
        client.get("/v1/admin/users/alice/sessions", headers=ADMIN)

        resp = client.get(
            "/v1/admin/audit-logs",
            headers=ADMIN,
            params={"action": "user_sessions_list"},
        )

        items = resp.json()["data"]["items"]
        assert items[0]["resource_id"] == "alice"
        assert items[0]["metadata"] == {"operation": "USER_SESSIONS_LIST", "outcome": "success"}

    def test_audit_log_limit_validated(self, client):
        resp = client.get("/v1/admin/audit-logs", headers=ADMIN, params={"limit": "0"})
        assert resp.status_code == 400


class TestErrorPaths:
    def test_rate_limited_response(self, client):
        runtime = get_runtime()
        runtime.gate.operations = OperationTable().with_overrides({"USER_SESSIONS_LIST": {"max": 1}})

        assert client.get("/v1/admin/users/alice/sessions", headers=ADMIN).status_code == 200
        resp = client.get("/v1/admin/users/alice/sessions", headers=ADMIN)

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0
        assert resp.headers["X-RateLimit-Limit"] == "1"
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_store_outage_fails_closed(self, client):
        runtime = get_runtime()
        with patch.object(
            runtime.store,
            "hit_rate_limit",
            side_effect=StorageUnavailable("down", backend="postgres"),
        ):
            resp = client.get("/v1/admin/users/alice/sessions", headers=ADMIN)

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "storage_unavailable"

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/v1/does-not-exist", headers=ALICE)

        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "not_found"

    def test_wrong_method_uses_envelope(self, client):
        resp = client.put("/v1/sessions", headers=ALICE)

        assert resp.status_code == 405
        assert resp.json()["error"]["code"] == "method_not_allowed"
