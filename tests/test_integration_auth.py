"""Integration tests for the HTTP auth surface.

Covers registration, login, refresh rotation, logout, password reset,
session listing and the tenant-guarded membership endpoint through the
FastAPI app with the in-memory store.
"""

import pytest
from fastapi.testclient import TestClient

from tenantauth import app as app_module
from tenantauth.service.runtime import get_runtime

EMAIL = "member@example.com"
PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _register(client, email=EMAIL, **extra):
    response = client.post("/v1/auth/register", json={"email": email, "password": PASSWORD, **extra})
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestRegisterAndLogin:
    def test_register_returns_token_pair(self, client):
        response = client.post("/v1/auth/register", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["access_token"] and data["refresh_token"] and data["session_id"]
        assert data["user"]["email"] == EMAIL
        assert response.cookies.get("refresh_token") == data["refresh_token"]

    def test_duplicate_email_conflicts(self, client):
        _register(client)
        response = client.post("/v1/auth/register", json={"email": EMAIL.upper(), "password": PASSWORD})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "email_in_use"

    def test_invalid_payloads_are_validation_errors(self, client):
        response = client.post("/v1/auth/register", json={"email": "invalid-email", "password": PASSWORD})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        response = client.post("/v1/auth/register", json={"email": EMAIL, "password": "short"})
        assert response.status_code == 400

    def test_login_wrong_password(self, client):
        _register(client)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": "wrong-password"})
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"

    def test_login_and_authenticated_status(self, client):
        _register(client)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 200
        data = response.json()["data"]
        status = client.get("/v1/auth/session-status", headers=_bearer(data["access_token"]))
        assert status.status_code == 200
        assert status.json()["data"]["session_id"] == data["session_id"]
        assert status.json()["data"]["valid"] is True

    def test_protected_route_requires_token(self):
        fresh = TestClient(app_module.app)
        response = fresh.get("/v1/auth/sessions")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestRefreshAndLogout:
    def test_refresh_rotates_and_replay_is_rejected(self, client):
        data = _register(client)
        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != data["refresh_token"]
        assert rotated["session_id"] == data["session_id"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "refresh_token_reuse"

        # the whole session is gone after a replay
        after = client.post("/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
        assert after.status_code == 401

    def test_non_ascii_refresh_token_is_rejected_cleanly(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "eyJhbGciOiJIUzI1NiJ9.e30.é"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "refresh_token_invalid"

    def test_logout_revokes_session(self, client):
        data = _register(client)
        response = client.post("/v1/auth/logout", headers=_bearer(data["access_token"]))
        assert response.status_code == 200

        again = client.get("/v1/auth/session-status", headers=_bearer(data["access_token"]))
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "session_invalid"
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refresh.status_code == 401

    def test_sessions_list_and_logout_others(self, client):
        _register(client)
        first = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD}).json()["data"]
        second = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD}).json()["data"]

        listed = client.get("/v1/auth/sessions", headers=_bearer(second["access_token"]))
        sessions = listed.json()["data"]["sessions"]
        assert len(sessions) == 3
        assert [s["current"] for s in sessions].count(True) == 1

        response = client.post("/v1/auth/logout-others", headers=_bearer(second["access_token"]))
        assert response.json()["data"]["revoked_sessions"] == 2
        stale = client.get("/v1/auth/session-status", headers=_bearer(first["access_token"]))
        assert stale.status_code == 401

    def test_cannot_revoke_another_users_session(self, client):
        mine = _register(client)
        theirs = _register(client, email="other@example.com")
        response = client.delete(
            f"/v1/auth/sessions/{theirs['session_id']}", headers=_bearer(mine["access_token"])
        )
        assert response.status_code == 404


class TestPasswordReset:
    def test_forgot_then_reset_revokes_sessions(self, client):
        data = _register(client)
        forgot = client.post("/v1/auth/password/forgot", json={"email": EMAIL})
        assert forgot.status_code == 200
        token = forgot.json()["data"]["reset_token"]
        otp = get_runtime().notifications.last("password_reset_otp", EMAIL).payload["otp"]

        bad = client.post(
            "/v1/auth/password/reset",
            json={"token": token, "new_password": "Fresh-password-42"},
        )
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "invalid_or_expired_token"

        reset = client.post(
            "/v1/auth/password/reset",
            json={"token": token, "new_password": "Fresh-password-42", "otp": otp},
        )
        assert reset.status_code == 200

        stale = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert stale.status_code == 401
        login = client.post("/v1/auth/login", json={"email": EMAIL, "password": "Fresh-password-42"})
        assert login.status_code == 200

    def test_reset_code_must_be_ascii_digits(self, client):
        _register(client)
        token = client.post("/v1/auth/password/forgot", json={"email": EMAIL}).json()["data"]["reset_token"]
        for otp in ("éééééé", "１２３４５６", "12ab56"):
            response = client.post(
                "/v1/auth/password/reset",
                json={"token": token, "new_password": "Fresh-password-42", "otp": otp},
            )
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "validation_error"

    def test_forgot_unknown_email_looks_the_same(self, client):
        response = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert "reset_token" not in response.json()["data"]


class TestTenantMembershipEndpoint:
    def test_admin_reads_own_membership(self, client):
        data = _register(client, organization_name="Acme Corp")
        tenant_id = get_runtime().auth.memberships.list_memberships(data["user"]["id"])[0].tenant_id
        response = client.get(f"/v1/tenants/{tenant_id}/membership", headers=_bearer(data["access_token"]))
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["role"] == "admin"
        assert body["tenant_id"] == tenant_id

    def test_tenant_outside_claims_is_denied(self, client):
        _register(client, organization_name="Acme Corp")
        outsider = _register(client, email="outsider@example.com")
        owner_id = get_runtime().store.get_user_by_email(EMAIL).id
        tenant_id = get_runtime().auth.memberships.list_memberships(owner_id)[0].tenant_id
        response = client.get(
            f"/v1/tenants/{tenant_id}/membership", headers=_bearer(outsider["access_token"])
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "tenant_access_denied"


class TestMiddleware:
    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
