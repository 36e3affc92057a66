"""
Tests for culturehub/auth.py and the /api/auth routes.

Helpers are tested directly; the dependencies (session, admin gate, CSRF)
are exercised through the real application built by ``create_app``.
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from jose.exceptions import JWTError

from culturehub.auth import (
    AUTH_COOKIE,
    CSRF_COOKIE,
    create_access_token,
    decode_access_token,
    hash_password,
    make_csrf_token,
    public_user,
    verify_csrf_token,
    verify_password,
)
from culturehub.store import JsonStore

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME

USER = {"id": 1, "username": "admin", "role": "admin", "password": "hash"}

# ── Passwords ────────────────────────────────────────────────────────────────


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correct horse", rounds=4)
        assert hashed.startswith("$2")
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert verify_password("x", "not-a-bcrypt-hash") is False

    def test_long_passwords_supported(self) -> None:
        hashed = hash_password("p" * 100, rounds=4)
        assert verify_password("p" * 100, hashed)


# ── Tokens ───────────────────────────────────────────────────────────────────


class TestTokens:
    def test_public_user_drops_password(self) -> None:
        assert public_user(USER) == {"id": 1, "username": "admin", "role": "admin"}

    def test_round_trip_claims(self) -> None:
        claims = decode_access_token(create_access_token(USER, "k"), "k")
        assert claims["id"] == 1
        assert claims["role"] == "admin"
        assert claims["exp"] - claims["iat"] == 24 * 60 * 60
        assert "password" not in claims

    def test_wrong_secret(self) -> None:
        with pytest.raises(JWTError):
            decode_access_token(create_access_token(USER, "k"), "other")

    def test_expired(self) -> None:
        token = create_access_token(USER, "k", now=time.time() - 2 * 24 * 60 * 60)
        with pytest.raises(JWTError):
            decode_access_token(token, "k")


class TestCsrfTokens:
    def test_valid_for_its_secret(self) -> None:
        assert verify_csrf_token("secret", make_csrf_token("secret"))

    def test_tokens_are_salted(self) -> None:
        assert make_csrf_token("secret") != make_csrf_token("secret")

    @pytest.mark.parametrize("token", [None, "", "nodash", "salt-forged"])
    def test_invalid_tokens(self, token: str | None) -> None:
        assert not verify_csrf_token("secret", token)

    def test_other_secret(self) -> None:
        assert not verify_csrf_token("other", make_csrf_token("secret"))

    def test_missing_secret(self) -> None:
        assert not verify_csrf_token(None, make_csrf_token("secret"))


# ── /api/auth/csrf-token ─────────────────────────────────────────────────────


class TestCsrfRoute:
    def test_sets_secret_cookie_once(self, client: TestClient) -> None:
        first = client.get("/api/auth/csrf-token")
        assert first.status_code == 200
        secret = client.cookies.get(CSRF_COOKIE)
        assert secret

        second = client.get("/api/auth/csrf-token")
        assert CSRF_COOKIE not in second.headers.get("set-cookie", "")
        assert client.cookies.get(CSRF_COOKIE) == secret
        assert verify_csrf_token(secret, first.json()["csrfToken"])
        assert verify_csrf_token(secret, second.json()["csrfToken"])

    def test_mutation_without_token_rejected(self, client: TestClient) -> None:
        response = client.post("/api/auth/logout")
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid CSRF token", "code": "EBADCSRFTOKEN"}

    def test_token_without_cookie_rejected(self, client: TestClient) -> None:
        token = client.get("/api/auth/csrf-token").json()["csrfToken"]
        client.cookies.clear()
        response = client.post("/api/auth/logout", headers={"X-CSRF-Token": token})
        assert response.status_code == 403


# ── /api/auth/login ──────────────────────────────────────────────────────────


class TestLogin:
    def test_success_sets_cookie(self, client: TestClient, csrf_headers: dict) -> None:
        response = client.post(
            "/api/auth/login",
            json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD},
            headers=csrf_headers,
        )
        assert response.status_code == 200
        assert response.json() == {"user": {"id": 1, "username": ADMIN_USERNAME, "role": "admin"}}
        cookie_header = response.headers["set-cookie"].lower()
        assert AUTH_COOKIE.lower() in cookie_header
        assert "httponly" in cookie_header
        assert "samesite=lax" in cookie_header

    def test_wrong_password(self, client: TestClient, csrf_headers: dict) -> None:
        response = client.post(
            "/api/auth/login",
            json={"username": ADMIN_USERNAME, "password": "nope"},
            headers=csrf_headers,
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid username or password"}
        assert client.cookies.get(AUTH_COOKIE) is None

    def test_unknown_user_same_answer(self, client: TestClient, csrf_headers: dict) -> None:
        response = client.post(
            "/api/auth/login", json={"username": "ghost", "password": "x"}, headers=csrf_headers
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid username or password"}

    def test_missing_fields(self, client: TestClient, csrf_headers: dict) -> None:
        response = client.post("/api/auth/login", json={"username": "admin"}, headers=csrf_headers)
        assert response.status_code == 400

    def test_requires_csrf(self, client: TestClient) -> None:
        response = client.post(
            "/api/auth/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD}
        )
        assert response.status_code == 403

    def test_rate_limited(self, app, client: TestClient, csrf_headers: dict) -> None:
        app.state.limiters["auth"].max_requests = 2
        body = {"username": "ghost", "password": "x"}
        codes = [client.post("/api/auth/login", json=body, headers=csrf_headers).status_code for _ in range(3)]
        assert codes == [401, 401, 429]


# ── Session dependencies ─────────────────────────────────────────────────────


class TestSessionGate:
    def test_missing_token_401(self, client: TestClient, csrf_headers: dict) -> None:
        response = client.delete("/api/events/1", headers=csrf_headers)
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}

    def test_invalid_token_403(self, client: TestClient, csrf_headers: dict) -> None:
        response = client.delete(
            "/api/events/1", headers={**csrf_headers, "Authorization": "Bearer garbage"}
        )
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid token"}

    def test_bearer_header_accepted(self, client: TestClient, csrf_headers: dict, settings) -> None:
        token = create_access_token(USER, settings.jwt_secret)
        response = client.delete(
            "/api/events/1", headers={**csrf_headers, "Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 404

    def test_non_admin_403(self, client: TestClient, csrf_headers: dict, settings) -> None:
        token = create_access_token({**USER, "role": "user"}, settings.jwt_secret)
        response = client.delete(
            "/api/events/1", headers={**csrf_headers, "Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 403
        assert response.json() == {"error": "Insufficient permissions"}


# ── /api/auth/verify ─────────────────────────────────────────────────────────


class TestVerify:
    def test_no_token(self, client: TestClient) -> None:
        assert client.get("/api/auth/verify").json() == {"valid": False, "user": None}

    def test_valid_session(self, admin_client: TestClient) -> None:
        body = admin_client.get("/api/auth/verify").json()
        assert body["valid"] is True
        assert body["user"] == {"id": 1, "username": ADMIN_USERNAME, "role": "admin"}

    def test_garbage_token(self, client: TestClient) -> None:
        response = client.get("/api/auth/verify", headers={"Authorization": "Bearer garbage"})
        assert response.json()["valid"] is False

    def test_deleted_user(self, admin_client: TestClient, store: JsonStore) -> None:
        with store.transaction() as document:
            document["users"] = []
        assert admin_client.get("/api/auth/verify").json()["valid"] is False

    def test_role_comes_from_token(self, admin_client: TestClient, store: JsonStore) -> None:
        store.collection("users").update(1, {"role": "user"})
        assert admin_client.get("/api/auth/verify").json()["user"]["role"] == "admin"


# ── /api/auth/register ───────────────────────────────────────────────────────


class TestRegister:
    def test_admin_creates_admin(self, admin_client: TestClient) -> None:
        response = admin_client.post(
            "/api/auth/register", json={"username": "editor", "password": "secret1"}
        )
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "User created"
        assert body["user"] == {"id": 2, "username": "editor", "role": "admin"}

    def test_new_admin_can_log_in(self, admin_client: TestClient) -> None:
        admin_client.post("/api/auth/register", json={"username": "editor", "password": "secret1"})
        response = admin_client.post(
            "/api/auth/login", json={"username": "editor", "password": "secret1"}
        )
        assert response.status_code == 200

    @pytest.mark.parametrize(
        ("body", "message"),
        [
            ({"username": "ab", "password": "secret1"}, "Username must be at least 3 characters"),
            ({"username": "editor", "password": "12345"}, "Password must be at least 6 characters"),
            ({"username": "", "password": "secret1"}, "Username and password are required"),
            ({"username": ADMIN_USERNAME, "password": "secret1"}, "A user with that name already exists"),
        ],
    )
    def test_rejections(self, admin_client: TestClient, body: dict, message: str) -> None:
        response = admin_client.post("/api/auth/register", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": message}

    def test_requires_session(self, client: TestClient, csrf_headers: dict) -> None:
        response = client.post(
            "/api/auth/register",
            json={"username": "editor", "password": "secret1"},
            headers=csrf_headers,
        )
        assert response.status_code == 401


# ── /api/auth/logout ─────────────────────────────────────────────────────────


class TestLogout:
    def test_clears_cookie(self, admin_client: TestClient) -> None:
        response = admin_client.post("/api/auth/logout")
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert admin_client.get("/api/auth/verify").json()["valid"] is False
