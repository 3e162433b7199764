"""Integration tests for the HTTP API.

Tests the complete flows including:
- First admin registration and admin login
- Email sign-in: request, approve, handoff
- Session use, disconnect and bans
- Email settings administration
"""

import pytest
from fastapi.testclient import TestClient

from tokengate import app as app_module
from tokengate.api.routes import LOGIN_TOKEN_HEADER, SESSION_TOKEN_HEADER
from tokengate.service.runtime import get_runtime

ADMIN_PASSWORD = "AdminPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch):
    """Capture approval tokens instead of mailing them."""
    sent = []

    def _record(to_email, token, *, device, ip_address, ttl_minutes):
        sent.append({"to": to_email, "token": token, "device": device})
        return True

    monkeypatch.setattr(get_runtime().email, "send_login_confirmation", _record)
    return sent


@pytest.fixture
def admin_token(client):
    client.post(
        "/v1/admins/register",
        json={
            "name": "Root",
            "username": "root",
            "password": ADMIN_PASSWORD,
            "confirm_password": ADMIN_PASSWORD,
        },
    )
    response = client.post(
        "/v1/admins/login", json={"username": "root", "password": ADMIN_PASSWORD}
    )
    return response.json()["data"]["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _sign_in(client, outbox, email="user@example.com"):
    """Run request, approve and handoff; return the handoff response."""
    created = client.post("/v1/login-tokens", json={"email": email})
    assert created.status_code == 201
    handoff = created.json()["data"]["handoff_token"]

    decided = client.post(
        "/v1/login-tokens/decide", json={"token": outbox[-1]["token"], "approve": True}
    )
    assert decided.status_code == 200

    return client.get("/v1/users/me", headers={LOGIN_TOKEN_HEADER: handoff})


class TestAdminFlow:
    """Tests for admin registration and login."""

    def test_first_registration_is_open(self, client):
        response = client.post(
            "/v1/admins/register",
            json={
                "name": "Root",
                "username": "root",
                "password": ADMIN_PASSWORD,
                "confirm_password": ADMIN_PASSWORD,
            },
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["username"] == "root"
        assert "password_hash" not in data

    def test_second_registration_requires_admin(self, client, admin_token):
        payload = {
            "name": "Other",
            "username": "other",
            "password": ADMIN_PASSWORD,
            "confirm_password": ADMIN_PASSWORD,
        }

        anonymous = client.post("/v1/admins/register", json=payload)
        authorized = client.post("/v1/admins/register", json=payload, headers=_auth(admin_token))

        assert anonymous.status_code == 401
        assert authorized.status_code == 201

    def test_login_and_profile(self, client, admin_token):
        me = client.get("/v1/admins/me", headers=_auth(admin_token))

        assert me.status_code == 200
        assert me.json()["data"]["username"] == "root"

    def test_wrong_password(self, client, admin_token):
        response = client.post(
            "/v1/admins/login", json={"username": "root", "password": "wrong-password"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "incorrect username or password"

    def test_update_profile(self, client, admin_token):
        response = client.patch(
            "/v1/admins/me",
            json={"name": "Renamed", "username": "root"},
            headers=_auth(admin_token),
        )

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Renamed"

    def test_garbage_admin_token(self, client):
        response = client.get("/v1/admins/me", headers=_auth("a.b.c"))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "unauthorized"


class TestSignInFlow:
    """Tests for the email sign-in handoff."""

    def test_handoff_issues_session_token(self, client, outbox):
        response = _sign_in(client, outbox)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "user@example.com"
        assert data["session"]["device"] == "Unknown:Unknown"
        assert data["token"]
        assert response.headers[SESSION_TOKEN_HEADER] == data["token"]
        assert outbox[0]["to"] == "user@example.com"

    def test_session_token_authenticates(self, client, outbox):
        token = _sign_in(client, outbox).json()["data"]["token"]

        response = client.get("/v1/users/me", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"]["token"] is None
        assert SESSION_TOKEN_HEADER not in response.headers

    def test_handoff_before_approval_is_forbidden(self, client, outbox):
        created = client.post("/v1/login-tokens", json={"email": "user@example.com"})
        handoff = created.json()["data"]["handoff_token"]

        response = client.get("/v1/users/me", headers={LOGIN_TOKEN_HEADER: handoff})

        assert response.status_code == 403

    def test_handoff_replay_conflicts(self, client, outbox):
        created = client.post("/v1/login-tokens", json={"email": "user@example.com"})
        handoff = created.json()["data"]["handoff_token"]
        client.post(
            "/v1/login-tokens/decide", json={"token": outbox[-1]["token"], "approve": True}
        )
        client.get("/v1/users/me", headers={LOGIN_TOKEN_HEADER: handoff})

        response = client.get("/v1/users/me", headers={LOGIN_TOKEN_HEADER: handoff})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_second_decision_conflicts(self, client, outbox):
        client.post("/v1/login-tokens", json={"email": "user@example.com"})
        approve = outbox[-1]["token"]
        client.post("/v1/login-tokens/decide", json={"token": approve, "approve": False})

        response = client.post("/v1/login-tokens/decide", json={"token": approve, "approve": True})

        assert response.status_code == 409

    def test_fourth_request_is_rate_limited(self, client, outbox):
        for _ in range(3):
            assert client.post("/v1/login-tokens", json={"email": "user@example.com"}).status_code == 201

        response = client.post("/v1/login-tokens", json={"email": "user@example.com"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert "60 seconds" in response.json()["error"]["message"]
        assert int(response.headers["Retry-After"]) > 0


class TestSessionsAndBans:
    """Tests for disconnect and ban endpoints."""

    def test_disconnect_own_session(self, client, outbox):
        data = _sign_in(client, outbox).json()["data"]
        token, session_id = data["token"], data["session"]["id"]

        response = client.patch(f"/v1/user-tokens/{session_id}/disconnect", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"]["disconnected"] is True
        assert client.get("/v1/users/me", headers=_auth(token)).status_code == 403

    def test_disconnect_other_users_session(self, client, outbox):
        alice = _sign_in(client, outbox, "alice@example.com").json()["data"]
        bob = _sign_in(client, outbox, "bob@example.com").json()["data"]

        response = client.patch(
            f"/v1/user-tokens/{alice['session']['id']}/disconnect", headers=_auth(bob["token"])
        )

        assert response.status_code == 403

    def test_ban_blocks_and_unban_restores(self, client, outbox, admin_token):
        data = _sign_in(client, outbox).json()["data"]
        user_id, token = data["user"]["id"], data["token"]

        banned = client.post(f"/v1/users/{user_id}/ban", headers=_auth(admin_token))
        blocked = client.get("/v1/users/me", headers=_auth(token))
        again = client.post(f"/v1/users/{user_id}/ban", headers=_auth(admin_token))
        unbanned = client.post(f"/v1/users/{user_id}/unban", headers=_auth(admin_token))
        restored = client.get("/v1/users/me", headers=_auth(token))

        assert banned.json()["data"]["banned"] is True
        assert blocked.status_code == 403
        assert again.status_code == 409
        assert unbanned.json()["data"]["banned"] is False
        assert restored.status_code == 200
        assert restored.json()["data"]["token"] is None

    def test_banned_email_cannot_request_login(self, client, outbox, admin_token):
        user_id = _sign_in(client, outbox).json()["data"]["user"]["id"]
        client.post(f"/v1/users/{user_id}/ban", headers=_auth(admin_token))

        response = client.post("/v1/login-tokens", json={"email": "user@example.com"})

        assert response.status_code == 403

    def test_ban_requires_admin(self, client, outbox):
        data = _sign_in(client, outbox).json()["data"]

        response = client.post(f"/v1/users/{data['user']['id']}/ban", headers=_auth(data["token"]))

        assert response.status_code == 401

    def test_ban_unknown_user(self, client, admin_token):
        response = client.post("/v1/users/missing/ban", headers=_auth(admin_token))

        assert response.status_code == 404


class TestEmailSettingsApi:
    """Tests for the email settings endpoints."""

    def test_update_hides_password(self, client, admin_token):
        response = client.put(
            "/v1/email-settings",
            json={
                "host": "smtp.example.com",
                "port": 587,
                "username": "mailer",
                "password": "smtp-secret",
                "from_address": "noreply@example.com",
            },
            headers=_auth(admin_token),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["source"] == "stored"
        assert data["password_set"] is True
        assert "smtp-secret" not in response.text

        fetched = client.get("/v1/email-settings", headers=_auth(admin_token))
        assert fetched.json()["data"]["host"] == "smtp.example.com"

    def test_requires_admin(self, client):
        assert client.get("/v1/email-settings").status_code == 401
