"""
tests/test_logs_routes.py -- Integration tests for the activity and session log viewer.

Coverage:
  - 401 without a session, 403 without the view_logs grant
  - Activity listing: filters, limit cap, decoded details, date validation
  - Session listing: token prefix only, status filter
  - Terminate: anti-forgery header required, 200 then 404 on repeat
"""

from __future__ import annotations

ACTIVITY = "/api/v1/logs/activity"
SESSIONS = "/api/v1/logs/sessions"


class TestAccessControl:
    def test_anonymous_is_401(self, app_env) -> None:
        app_env.client.cookies.clear()
        for url in (ACTIVITY, SESSIONS):
            resp = app_env.client.get(url)
            assert resp.status_code == 401, url
            assert resp.json()["code"] == "unauthenticated"

    def test_editor_is_403(self, app_env, login_as) -> None:
        login_as(app_env.client, "editor")
        resp = app_env.client.get(ACTIVITY)
        assert resp.status_code == 403
        assert resp.json() == {
            "success": False,
            "code": "forbidden",
            "message": "Zugriff verweigert. Fehlende Berechtigung.",
        }

    def test_anonymous_terminate_is_401_not_403(self, app_env) -> None:
        app_env.client.cookies.clear()
        assert app_env.client.post(f"{SESSIONS}/1/terminate").status_code == 401


class TestActivityLog:
    def test_lists_login_events(self, app_env, login_as) -> None:
        login_as(app_env.client, "admin")
        resp = app_env.client.get(ACTIVITY, params={"user": app_env.ids["admin"], "action": "login_success"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["pagination"]["total_records"] >= 1
        row = body["data"][0]
        assert row["username"] == "admin"
        assert row["details"]["username"] == "admin"
        assert row["timestamp"]
        assert row["success"] is True

    def test_failed_login_is_searchable(self, app_env, login_as) -> None:
        app_env.client.cookies.clear()
        app_env.client.post("/api/v1/auth/login", json={"username": "ghost-user", "password": "x"})
        login_as(app_env.client, "admin")

        data = app_env.client.get(ACTIVITY, params={"search": "ghost-user"}).json()["data"]
        assert len(data) == 1
        assert data[0]["action"] == "login_failed"
        assert data[0]["success"] is False
        assert data[0]["user_id"] is None
        assert data[0]["details"]["reason"] == "unknown_handle"

    def test_limit_is_capped(self, app_env, login_as) -> None:
        login_as(app_env.client, "admin")
        body = app_env.client.get(ACTIVITY, params={"limit": 5000}).json()
        assert body["pagination"]["per_page"] == 200

    def test_pagination_fields(self, app_env, login_as) -> None:
        login_as(app_env.client, "admin")
        pagination = app_env.client.get(ACTIVITY, params={"limit": 1, "page": 2}).json()["pagination"]
        assert pagination["current_page"] == 2
        assert pagination["per_page"] == 1
        assert pagination["total_pages"] == pagination["total_records"]

    def test_malformed_date_is_422(self, app_env, login_as) -> None:
        login_as(app_env.client, "admin")
        resp = app_env.client.get(ACTIVITY, params={"date": "01.03.2024"})
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation_error"

    def test_date_filter_without_matches(self, app_env, login_as) -> None:
        login_as(app_env.client, "admin")
        body = app_env.client.get(ACTIVITY, params={"date": "1999-01-01"}).json()
        assert body["data"] == []
        assert body["pagination"]["total_records"] == 0


class TestSessionLog:
    def test_tokens_are_only_prefixes(self, app_env, login_as) -> None:
        login_as(app_env.client, "admin")
        rows = app_env.client.get(SESSIONS, params={"user": app_env.ids["admin"]}).json()["data"]
        assert rows
        for row in rows:
            assert row["session_token_prefix"].endswith("...")
            assert len(row["session_token_prefix"]) == 11
            assert "session_token" not in row

    def test_terminate_requires_csrf_then_revokes(self, app_env, login_as) -> None:
        client = app_env.client
        login_as(client, "viewer")
        csrf = login_as(client, "admin")

        rows = client.get(SESSIONS, params={"user": app_env.ids["viewer"], "status": "active"}).json()["data"]
        assert rows
        session_id = rows[0]["id"]

        resp = client.post(f"{SESSIONS}/{session_id}/terminate")
        assert resp.status_code == 403
        assert resp.json()["code"] == "csrf_failed"

        resp = client.post(f"{SESSIONS}/{session_id}/terminate", headers={"X-CSRF-Token": "0" * 64})
        assert resp.status_code == 403

        resp = client.post(f"{SESSIONS}/{session_id}/terminate", headers={"X-CSRF-Token": csrf})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Sitzung beendet."

        resp = client.post(f"{SESSIONS}/{session_id}/terminate", headers={"X-CSRF-Token": csrf})
        assert resp.status_code == 404

        logged_out = client.get(SESSIONS, params={"status": "logged_out"}).json()["data"]
        assert session_id in [r["id"] for r in logged_out]

        audit = client.get(ACTIVITY, params={"action": "session_terminated"}).json()["data"]
        assert audit[0]["user_id"] == app_env.ids["admin"]
        assert audit[0]["details"]["session_id"] == session_id

    def test_unknown_status_is_422(self, app_env, login_as) -> None:
        login_as(app_env.client, "admin")
        assert app_env.client.get(SESSIONS, params={"status": "zombie"}).status_code == 422
