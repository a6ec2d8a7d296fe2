"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> request validation ->
AuthEngine -> AccountStore/RefreshTokenStore -> error envelope. Unit tests of
the engine would miss cookie handling, the exception handlers, and response
model serialization.

Coverage:
  - sign-up: 201, duplicate email 409 (case-insensitive), validation 422
  - sign-in: tokens in body and cookies, Cache-Control: no-store, uniform 401
  - lockout over HTTP: 403 with Retry-After after five failures
  - refresh: body and cookie flows, single use, 401 refresh_denied on replay
  - sign-out and change-password revoke refresh tokens
  - /auth/me with Bearer header; bad tokens get 401
  - refresh is rate limited: 429 rate_limited once the budget is spent

Fixtures used (from conftest.py):
  - api_client: (client, token, admin_id) -- TestClient with admin JWT
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from tests.conftest import sign_in

PASSWORD = "Passw0rd!"


def _sign_up(client: TestClient, email: str, password: str = PASSWORD, name: str = "Test User"):
    return client.post("/api/v1/auth/sign-up", json={"name": name, "email": email, "password": password})


class TestSignUp:
    def test_sign_up_creates_active_user(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        resp = client.post(
            "/api/v1/auth/sign-up",
            json={
                "name": "Alice",
                "email": "Alice@Example.com",
                "password": PASSWORD,
                "location": {"city": "Lisbon", "country": "PT"},
            },
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["email"] == "alice@example.com"
        assert data["role"] == "user"
        assert data["status"] == "active"
        assert data["location"] == {"city": "Lisbon", "country": "PT"}
        assert "password" not in data and "password_hash" not in data

    def test_duplicate_email_conflicts(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        assert _sign_up(client, "dup@example.com").status_code == 201
        resp = _sign_up(client, "DUP@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_short_password_is_422(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        resp = _sign_up(client, "short@example.com", password="short")
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"]["code"] == "validation_error"
        # Rejected input values are never echoed back.
        assert "'input'" not in body["error"]["detail"]

    def test_bad_email_is_422(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        assert _sign_up(client, "not-an-email").status_code == 422


class TestSignIn:
    def test_sign_in_returns_tokens_and_cookies(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "signin@example.com")
        resp = client.post("/api/v1/auth/sign-in", json={"email": "SIGNIN@example.com", "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["access_token"] and data["refresh_token"]
        assert data["user"]["email"] == "signin@example.com"
        assert data["user"]["last_active"] is not None
        set_cookies = resp.headers.get_list("set-cookie")
        assert any(c.startswith("access_token=") and "HttpOnly" in c for c in set_cookies)
        assert any(c.startswith("refresh_token=") and "Path=/api/v1/auth" in c for c in set_cookies)
        client.cookies.clear()

    def test_failures_are_indistinguishable(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "uniform@example.com")
        wrong = sign_in(client, "uniform@example.com", "wrong-password")
        unknown = sign_in(client, "nobody@example.com", PASSWORD)
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["message"] == "Invalid credentials."

    def test_lockout_after_five_failures(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "locked@example.com")
        for _ in range(5):
            assert sign_in(client, "locked@example.com", "wrong-password").status_code == 401

        resp = sign_in(client, "locked@example.com", PASSWORD)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_locked"
        retry_after = int(resp.headers["retry-after"])
        assert 7190 <= retry_after <= 7200


class TestSession:
    def test_me_with_bearer(self, api_client: tuple[TestClient, str, str]) -> None:
        client, token, admin_id = api_client
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["id"] == admin_id
        assert resp.json()["role"] == "admin"

    def test_me_unauthenticated(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_me_with_garbage_token(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_refresh_with_body_is_single_use(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "refresh@example.com")
        first = sign_in(client, "refresh@example.com", PASSWORD).json()
        body = {"account_id": first["account_id"], "refresh_token": first["refresh_token"]}

        resp = client.post("/api/v1/auth/refresh", json=body)
        client.cookies.clear()
        assert resp.status_code == 200, resp.text
        assert resp.json()["refresh_token"] != first["refresh_token"]
        assert resp.headers["cache-control"] == "no-store"

        replay = client.post("/api/v1/auth/refresh", json=body)
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "refresh_denied"

    def test_refresh_with_cookies(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "cookie@example.com")
        resp = client.post("/api/v1/auth/sign-in", json={"email": "cookie@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        refreshed = client.post("/api/v1/auth/refresh")
        client.cookies.clear()
        assert refreshed.status_code == 200, refreshed.text
        assert refreshed.json()["account_id"] == resp.json()["account_id"]

    def test_refresh_without_credentials(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        resp = client.post("/api/v1/auth/refresh", json={})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "refresh_denied"

    def test_sign_out_revokes_refresh(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "signout@example.com")
        tokens = sign_in(client, "signout@example.com", PASSWORD).json()
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        resp = client.post("/api/v1/auth/sign-out", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logout successful."

        body = {"account_id": tokens["account_id"], "refresh_token": tokens["refresh_token"]}
        assert client.post("/api/v1/auth/refresh", json=body).status_code == 401


class TestChangePassword:
    def test_wrong_current_password(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "chpw-wrong@example.com")
        tokens = sign_in(client, "chpw-wrong@example.com", PASSWORD).json()
        resp = client.patch(
            "/api/v1/auth/change-password",
            json={"current_password": "not-it", "new_password": "N3wPassw0rd!"},
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Current password is incorrect."

    def test_change_password_ends_other_sessions(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _admin_id = api_client
        _sign_up(client, "chpw@example.com")
        laptop = sign_in(client, "chpw@example.com", PASSWORD).json()
        phone = sign_in(client, "chpw@example.com", PASSWORD).json()

        resp = client.patch(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "N3wPassw0rd!"},
            headers={"Authorization": f"Bearer {laptop['access_token']}"},
        )
        assert resp.status_code == 200, resp.text

        body = {"account_id": phone["account_id"], "refresh_token": phone["refresh_token"]}
        assert client.post("/api/v1/auth/refresh", json=body).status_code == 401
        assert sign_in(client, "chpw@example.com", PASSWORD).status_code == 401
        assert sign_in(client, "chpw@example.com", "N3wPassw0rd!").status_code == 200


@pytest.fixture
def fresh_limits():
    limiter.reset()
    yield
    limiter.reset()


class TestRefreshRateLimit:
    def test_refresh_is_throttled(self, api_client: tuple[TestClient, str, str], fresh_limits) -> None:
        client, _token, admin_id = api_client
        body = {"account_id": admin_id, "refresh_token": "not-a-live-token"}
        for _ in range(30):
            assert client.post("/api/v1/auth/refresh", json=body).status_code == 401

        resp = client.post("/api/v1/auth/refresh", json=body)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
