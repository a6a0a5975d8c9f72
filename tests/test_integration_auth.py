"""Integration tests for the /api/auth endpoints.

Drives the FastAPI app through TestClient against the in-memory store:
registration, login, refresh rotation, revocation, profile and token
validation, including the error envelopes each failure produces.
"""

import pytest
from fastapi.testclient import TestClient

from realtyauth import app as app_module
from realtyauth.service.runtime import get_runtime
from realtyauth.storage.errors import StoreUnavailable

PASSWORD = "Passw0rd!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="bob@example.com", **overrides):
    payload = {
        "email": email,
        "password": PASSWORD,
        "confirm_password": PASSWORD,
        "first_name": "Bob",
        "last_name": "Lee",
    }
    payload.update(overrides)
    return client.post("/api/auth/register", json=payload)


def _assert_error(response, status_code, code):
    assert response.status_code == status_code
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    return body["error"]


class TestRegister:
    def test_register_returns_201_with_tokens(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["expires_at"]
        assert data["user"]["email"] == "bob@example.com"
        assert data["user"]["full_name"] == "Bob Lee"
        assert "password_hash" not in data["user"]
        assert "refresh_token" not in data["user"]

    def test_duplicate_register_conflicts(self, client):
        _register(client)

        error = _assert_error(_register(client), 409, "conflict")
        assert "already exists" in error["message"]

    def test_password_mismatch_rejected(self, client):
        response = _register(client, confirm_password="Passw0rd?")
        assert response.status_code == 422

    @pytest.mark.parametrize(
        "password",
        ["Pa0!", "password1!", "PASSWORD1!", "Password!", "Password1", "Passw0rd#"],
    )
    def test_weak_passwords_rejected(self, client, password):
        response = _register(client, password=password, confirm_password=password)
        assert response.status_code == 422

    def test_long_names_rejected(self, client):
        assert _register(client, first_name="x" * 51).status_code == 422

    def test_invalid_email_rejected(self, client):
        assert _register(client, email="not-an-email").status_code == 422


class TestLogin:
    def test_login_rotates_refresh_token(self, client):
        registered = _register(client).json()["data"]

        response = client.post(
            "/api/auth/login", json={"email": "bob@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"] != registered["refresh_token"]

    def test_wrong_password_is_generic_401(self, client):
        _register(client)

        response = client.post(
            "/api/auth/login", json={"email": "bob@example.com", "password": "wrong-one"}
        )
        wrong_password = _assert_error(response, 401, "unauthorized")

        response = client.post(
            "/api/auth/login", json={"email": "nobody@example.com", "password": "wrong-one"}
        )
        unknown_email = _assert_error(response, 401, "unauthorized")

        assert wrong_password["message"] == unknown_email["message"] == "invalid email or password"

    def test_short_password_is_validation_error(self, client):
        response = client.post(
            "/api/auth/login", json={"email": "bob@example.com", "password": "abc"}
        )
        assert response.status_code == 422

    def test_store_outage_returns_503(self, client, monkeypatch):
        runtime = get_runtime()

        def _down(email):
            raise StoreUnavailable()

        monkeypatch.setattr(runtime.store, "get_user_by_email", _down)
        response = client.post(
            "/api/auth/login", json={"email": "bob@example.com", "password": PASSWORD}
        )
        _assert_error(response, 503, "server_error")


class TestRefreshAndRevoke:
    def test_refresh_then_reuse_fails(self, client):
        registered = _register(client).json()["data"]

        response = client.post(
            "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"] != registered["refresh_token"]

        response = client.post(
            "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        _assert_error(response, 401, "unauthorized")

    def test_revoke_then_refresh_fails(self, client):
        registered = _register(client).json()["data"]

        response = client.post(
            "/api/auth/revoke", json={"refresh_token": registered["refresh_token"]}
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"]

        response = client.post(
            "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        _assert_error(response, 401, "unauthorized")

    def test_revoke_unknown_token_is_400(self, client):
        response = client.post("/api/auth/revoke", json={"refresh_token": "unknown"})
        error = _assert_error(response, 400, "validation_error")
        assert error["message"] == "failed to revoke token"


class TestProfileAndValidate:
    def test_profile_with_bearer_token(self, client):
        registered = _register(client).json()["data"]

        response = client.get(
            "/api/auth/profile",
            headers={"Authorization": f"Bearer {registered['access_token']}"},
        )

        assert response.status_code == 200
        profile = response.json()["data"]
        assert profile["id"] == registered["user"]["id"]
        assert profile["role"] == "User"

    def test_profile_without_token(self, client):
        _assert_error(client.get("/api/auth/profile"), 401, "unauthorized")

    def test_profile_with_invalid_token(self, client):
        response = client.get(
            "/api/auth/profile", headers={"Authorization": "Bearer invalid.token.here"}
        )
        _assert_error(response, 401, "unauthorized")

    def test_validate_token(self, client):
        registered = _register(client).json()["data"]

        response = client.post(
            "/api/auth/validate", json={"token": registered["access_token"]}
        )

        assert response.status_code == 200
        assert response.json()["data"]["is_valid"] is True

    def test_validate_invalid_token(self, client):
        response = client.post("/api/auth/validate", json={"token": "nope"})
        _assert_error(response, 400, "validation_error")

    def test_validate_non_ascii_signature(self, client):
        registered = _register(client).json()["data"]
        header, payload, _ = registered["access_token"].split(".")

        response = client.post(
            "/api/auth/validate", json={"token": f"{header}.{payload}.\u00e9"}
        )

        _assert_error(response, 400, "validation_error")


class TestAppSurface:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
