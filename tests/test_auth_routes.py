"""
tests/test_auth_routes.py -- Integration tests for the /api/v1/auth endpoints.

These tests exercise the full stack: FastAPI routing -> signed context cookie
-> AuthService -> AccountStore/SessionStore -> response envelope.

Coverage:
  - Login: username and e-mail handles, cookie, no-store, 400 / 401 / 422 / 423
  - Session status, /me, refresh, logout (incl. replaying a logged-out cookie)
  - Permission check endpoint for anonymous and authenticated callers
  - Login rate limit: 429 with Retry-After

Fixtures used (from conftest.py):
  - app_env: module-scoped TestClient; accounts admin / editor / viewer share one password
  - login_as: logs the client in and returns the anti-forgery token
"""

from __future__ import annotations

import pytest

from auth.models import Account
from auth.tokens import hash_password

LOGIN = "/api/v1/auth/login"
COOKIE = "serviceportal_session"


def _new_account(app_env, username: str, role: str = "editor") -> int:
    return app_env.accounts.create_account(
        Account(username=username, role=role, password_hash=hash_password(app_env.password))
    )


class TestLogin:
    def test_login_by_username(self, app_env) -> None:
        client = app_env.client
        client.cookies.clear()
        resp = client.post(LOGIN, json={"username": "admin", "password": app_env.password})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["success"] is True
        assert data["message"] == "Anmeldung erfolgreich."
        assert data["user"]["username"] == "admin"
        assert data["user"]["role"] == "admin"
        assert "password_hash" not in data["user"]
        assert data["permissions"] == sorted(data["permissions"])
        assert "view_logs" in data["permissions"]
        assert len(data["csrf_token"]) == 64
        assert resp.headers["cache-control"] == "no-store"
        assert client.cookies.get(COOKIE)

    def test_login_by_email(self, app_env) -> None:
        client = app_env.client
        client.cookies.clear()
        resp = client.post(LOGIN, json={"username": "admin@example.com", "password": app_env.password})
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == "admin"

    def test_wrong_password_is_401(self, app_env) -> None:
        resp = app_env.client.post(LOGIN, json={"username": "viewer", "password": "nope-nope"})
        assert resp.status_code == 401
        body = resp.json()
        assert body == {"success": False, "code": "invalid_credentials", "message": "Ungültige Anmeldedaten."}
        assert resp.headers["cache-control"] == "no-store"

    def test_unknown_user_gets_same_message(self, app_env) -> None:
        resp = app_env.client.post(LOGIN, json={"username": "nobody", "password": "whatever1"})
        assert resp.status_code == 401
        assert resp.json()["message"] == "Ungültige Anmeldedaten."

    @pytest.mark.parametrize("body", [{}, {"username": "admin"}, {"username": "   ", "password": "x"}])
    def test_missing_credentials_is_400(self, app_env, body) -> None:
        resp = app_env.client.post(LOGIN, json=body)
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation"
        assert resp.json()["message"] == "Benutzername und Passwort sind erforderlich."

    def test_oversized_username_is_422(self, app_env) -> None:
        resp = app_env.client.post(LOGIN, json={"username": "a" * 256, "password": "x"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert "username" in body["fields"]

    def test_lockout_after_four_failures(self, app_env) -> None:
        _new_account(app_env, "lock-me")
        client = app_env.client
        for _ in range(4):
            resp = client.post(LOGIN, json={"username": "lock-me", "password": "wrong-password"})
            assert resp.status_code == 401

        resp = client.post(LOGIN, json={"username": "lock-me", "password": app_env.password})
        assert resp.status_code == 423
        body = resp.json()
        assert body["code"] == "account_locked"
        assert body["message"].startswith("Konto gesperrt bis ")
        assert body["locked_until"]

    def test_rate_limited_after_ten_attempts(self, app_env) -> None:
        client = app_env.client
        for _ in range(10):
            assert client.post(LOGIN, json={"username": "nobody", "password": "x"}).status_code == 401
        resp = client.post(LOGIN, json={"username": "nobody", "password": "x"})
        assert resp.status_code == 429
        assert resp.json()["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0


class TestSessionEndpoints:
    def test_anonymous_session_status(self, app_env) -> None:
        app_env.client.cookies.clear()
        resp = app_env.client.get("/api/v1/auth/session")
        assert resp.status_code == 200
        data = resp.json()
        assert data["authenticated"] is False
        assert data["user"] is None
        assert data["permissions"] == []

    def test_session_status_after_login(self, app_env, login_as) -> None:
        csrf = login_as(app_env.client, "editor")
        data = app_env.client.get("/api/v1/auth/session").json()
        assert data["authenticated"] is True
        assert data["user"]["username"] == "editor"
        assert data["csrf_token"] == csrf
        assert "view_logs" not in data["permissions"]

    def test_me_requires_auth(self, app_env) -> None:
        app_env.client.cookies.clear()
        resp = app_env.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthenticated"

    def test_me_returns_profile_and_last_login(self, app_env, login_as) -> None:
        login_as(app_env.client, "viewer")
        resp = app_env.client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["id"] == app_env.ids["viewer"]
        assert data["last_login"]
        assert data["created_at"]
        assert data["permissions"] == ["view_submissions"]

    def test_refresh(self, app_env, login_as) -> None:
        app_env.client.cookies.clear()
        assert app_env.client.post("/api/v1/auth/refresh").status_code == 401

        login_as(app_env.client, "viewer")
        resp = app_env.client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Sitzung verlängert."

    def test_logout_is_always_ok(self, app_env) -> None:
        app_env.client.cookies.clear()
        resp = app_env.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Erfolgreich abgemeldet."

    def test_logged_out_cookie_cannot_be_replayed(self, app_env, login_as) -> None:
        client = app_env.client
        login_as(client, "editor")
        old_cookie = client.cookies.get(COOKIE)
        assert client.post("/api/v1/auth/logout").status_code == 200
        assert client.get("/api/v1/auth/session").json()["authenticated"] is False

        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Cookie": f"{COOKIE}={old_cookie}"})
        assert resp.status_code == 401

    def test_disabled_account_loses_session(self, app_env, login_as) -> None:
        account_id = _new_account(app_env, "soon-disabled")
        login_as(app_env.client, "soon-disabled")
        assert app_env.client.get("/api/v1/auth/me").status_code == 200

        app_env.accounts.set_active(account_id, False)
        assert app_env.client.get("/api/v1/auth/me").status_code == 401

    def test_tampered_cookie_is_anonymous(self, app_env) -> None:
        client = app_env.client
        client.cookies.clear()
        resp = client.get("/api/v1/auth/session", headers={"Cookie": f"{COOKIE}=forged.value"})
        assert resp.status_code == 200
        assert resp.json()["authenticated"] is False


class TestPermissionCheck:
    def test_anonymous_holds_nothing(self, app_env) -> None:
        app_env.client.cookies.clear()
        data = app_env.client.get("/api/v1/auth/permissions/view_logs").json()
        assert data == {"success": True, "permission": "view_logs", "granted": False}

    @pytest.mark.parametrize(
        "username,key,granted",
        [
            ("admin", "view_logs", True),
            ("editor", "view_logs", False),
            ("editor", "manage_questionnaires", True),
            ("viewer", "view_submissions", True),
            ("admin", "launch_rockets", False),
        ],
    )
    def test_grants_by_role(self, app_env, login_as, username, key, granted) -> None:
        login_as(app_env.client, username)
        data = app_env.client.get(f"/api/v1/auth/permissions/{key}").json()
        assert data["granted"] is granted
