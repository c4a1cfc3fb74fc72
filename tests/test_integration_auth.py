"""Integration tests for the /api/auth flow.

Covers the complete session lifecycle:
- Registration and the queued verification email
- Email verification
- Login, cookies and rate limiting
- Token refresh
- Logout and revocation
"""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from gatehouse import app as app_module
from gatehouse.service.runtime import get_runtime

QUEUE = "email_verification"


@pytest.fixture
def client():
    """Create a test client for the API.

    HTTPS so the Secure session cookies round-trip.
    """
    return TestClient(app_module.app, base_url="https://testserver")


def _register(client, email="a@test.com", password="pw123456"):
    return client.post(
        "/api/auth/register",
        json={
            "email": email,
            "password": password,
            "first_name": "Ada",
            "last_name": "Lovelace",
        },
    )


def _cookie_header(response, name):
    for header in response.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            return header
    return None


class TestRegistration:
    def test_register_returns_token_and_queues_email(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["message"] == "registration successful, verification email sent"
        assert data["user_id"]
        assert data["token"]
        assert get_runtime().channel.pending(QUEUE) == [
            {"email": "a@test.com", "token": data["token"]}
        ]

    def test_register_duplicate_email(self, client):
        _register(client)
        response = _register(client)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert len(get_runtime().channel.pending(QUEUE)) == 1

    @pytest.mark.parametrize(
        "overrides",
        [
            {"email": "not-an-email"},
            {"password": "short"},
            {"first_name": "   "},
            {"phone_number": "12-34"},
        ],
    )
    def test_register_validates_fields(self, client, overrides):
        payload = {
            "email": "a@test.com",
            "password": "pw123456",
            "first_name": "Ada",
            "last_name": "Lovelace",
        }
        payload.update(overrides)

        response = client.post("/api/auth/register", json=payload)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"
        assert get_runtime().store.get_user_by_email("a@test.com") is None


class TestVerification:
    def test_verify_then_reuse_fails(self, client):
        token = _register(client).json()["data"]["token"]

        first = client.get(f"/api/auth/verify/{token}")
        assert first.status_code == 200
        assert first.json()["data"]["message"] == "email verified"

        second = client.get(f"/api/auth/verify/{token}")
        assert second.status_code == 400
        assert second.json()["error"]["code"] == "invalid_or_expired"

    def test_verify_garbage_token(self, client):
        response = client.get("/api/auth/verify/not-a-token")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_or_expired"

    def test_unverified_login_forbidden(self, client):
        _register(client)
        response = client.post(
            "/api/auth/login", json={"email": "a@test.com", "password": "pw123456"}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "unverified"


class TestSessionLifecycle:
    def test_full_scenario(self, client):
        register = _register(client)
        assert register.status_code == 201
        token = register.json()["data"]["token"]

        assert client.get(f"/api/auth/verify/{token}").status_code == 200

        login = client.post(
            "/api/auth/login", json={"email": "a@test.com", "password": "pw123456"}
        )
        assert login.status_code == 200
        tokens = login.json()["data"]
        assert tokens["token_type"] == "bearer"
        assert login.cookies.get("access_token") == tokens["access_token"]
        assert login.cookies.get("refresh_token") == tokens["refresh_token"]

        for _ in range(5):
            failed = client.post(
                "/api/auth/login", json={"email": "a@test.com", "password": "wrong-password"}
            )
            assert failed.status_code == 401
        blocked = client.post(
            "/api/auth/login", json={"email": "a@test.com", "password": "pw123456"}
        )
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"
        assert blocked.headers["Retry-After"] == "600"

        refreshed = client.post(
            "/api/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refreshed.status_code == 200
        new_access = refreshed.json()["data"]["access_token"]
        assert new_access != tokens["access_token"]
        assert refreshed.cookies.get("access_token") == new_access

        assert client.post("/api/auth/logout").status_code == 200

        client.cookies.clear()
        after_logout = client.post(
            "/api/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert after_logout.status_code == 401
        assert after_logout.json()["error"]["code"] == "unauthorized"

    def test_login_cookies_are_hardened(self, client):
        token = _register(client).json()["data"]["token"]
        client.get(f"/api/auth/verify/{token}")

        login = client.post(
            "/api/auth/login", json={"email": "a@test.com", "password": "pw123456"}
        )

        for name in ("access_token", "refresh_token"):
            header = _cookie_header(login, name).lower()
            assert "httponly" in header
            assert "samesite=strict" in header
            assert "secure" in header
            assert "path=/" in header

    def test_unknown_email_and_wrong_password_look_identical(self, client):
        token = _register(client).json()["data"]["token"]
        client.get(f"/api/auth/verify/{token}")

        unknown = client.post(
            "/api/auth/login", json={"email": "nobody@test.com", "password": "pw123456"}
        )
        wrong = client.post(
            "/api/auth/login", json={"email": "a@test.com", "password": "wrong-password"}
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_refresh_prefers_cookie(self, client):
        token = _register(client).json()["data"]["token"]
        client.get(f"/api/auth/verify/{token}")
        client.post("/api/auth/login", json={"email": "a@test.com", "password": "pw123456"})

        response = client.post("/api/auth/refresh-token", json={"refresh_token": "garbage"})

        assert response.status_code == 200

    def test_refresh_without_token(self, client):
        response = client.post("/api/auth/refresh-token")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_logout_without_session_succeeds(self, client):
        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "logged out"

    def test_logout_with_garbage_token_succeeds(self, client):
        response = client.post("/api/auth/logout", json={"refresh_token": "garbage"})
        assert response.status_code == 200


def _forged_token(signature):
    def segment(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{segment({'alg': 'HS256'})}.{segment({'sub': 'x'})}.{signature}"


FOREIGN_SIGNATURES = pytest.mark.parametrize(
    "signature", ["éé", "!!!", ""], ids=["non_ascii", "punctuation", "empty"]
)


class TestForgedSignatures:
    @FOREIGN_SIGNATURES
    def test_verify_rejects(self, client, signature):
        response = client.get(f"/api/auth/verify/{_forged_token(signature)}")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_or_expired"

    @FOREIGN_SIGNATURES
    def test_refresh_rejects(self, client, signature):
        response = client.post(
            "/api/auth/refresh-token", json={"refresh_token": _forged_token(signature)}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    @FOREIGN_SIGNATURES
    def test_logout_still_succeeds(self, client, signature):
        response = client.post("/api/auth/logout", json={"refresh_token": _forged_token(signature)})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "logged out"
