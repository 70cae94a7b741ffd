"""End-to-end tests for the /auth HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD

from authkernel.app import create_app

UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_1) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15"


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime=runtime))


def _login(client, email="u1@example.com", password=PASSWORD, **extra):
    return client.post(
        "/auth/login",
        json={"email": email, "password": password, **extra},
        headers={"User-Agent": UA},
    )


def _bearer(response):
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


def _cookie(token):
    return {"Cookie": f"refresh_token={token}"}


class TestLogin:
    def test_login_sets_refresh_cookie(self, client, user):
        response = _login(client)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user_id"] == user.id
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["mfa_required"] is False
        assert "refresh_token" not in body["data"]
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("refresh_token=")
        assert "HttpOnly" in set_cookie
        assert "Path=/auth" in set_cookie
        assert "samesite=lax" in set_cookie.lower()

    def test_wrong_password_is_401(self, client, user):
        response = _login(client, password="wrong")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"]["kind"] == "invalid_credentials"

    def test_locked_account_is_403_with_retry_after(self, client, user):
        for _ in range(5):
            assert _login(client, password="wrong").status_code == 401
        response = _login(client)
        assert response.status_code == 403
        assert response.headers["Retry-After"] == str(15 * 60)
        assert response.json()["error"]["details"]["kind"] == "account_locked"

    def test_invalid_email_is_validation_error(self, client):
        response = _login(client, email="not-an-email")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_login_with_gps_location(self, client, runtime, user):
        response = _login(client, location={"latitude": 48.8566, "longitude": 2.3522})
        assert response.status_code == 200
        logs, _ = runtime.sessions.list_session_logs(user.id)
        assert logs[0].location == "48.8566, 2.3522"


class TestRefreshAndLogout:
    def test_refresh_rotates_cookie(self, client, user):
        login = _login(client)
        old = login.cookies.get("refresh_token")
        response = client.post("/auth/refresh", headers=_cookie(old))
        assert response.status_code == 200
        new = response.cookies.get("refresh_token")
        assert new and new != old
        assert response.json()["data"]["user_id"] == user.id

        reused = client.post("/auth/refresh", headers=_cookie(old))
        assert reused.status_code == 401
        assert reused.json()["error"]["details"]["kind"] == "invalid_refresh_token"

    def test_refresh_without_cookie(self, client):
        client.cookies.clear()
        response = client.post("/auth/refresh")
        assert response.status_code == 401

    def test_logout_clears_cookie_and_is_idempotent(self, client, user):
        token = _login(client).cookies.get("refresh_token")
        first = client.post("/auth/logout", headers=_cookie(token))
        assert first.status_code == 200
        assert first.json()["data"]["session_ended"] is True
        assert 'refresh_token=""' in first.headers["set-cookie"] or "Max-Age=0" in first.headers["set-cookie"]
        second = client.post("/auth/logout", headers=_cookie(token))
        assert second.status_code == 200
        assert second.json()["data"]["session_ended"] is False
        assert client.post("/auth/refresh", headers=_cookie(token)).status_code == 401

    def test_logout_without_cookie_succeeds(self, client):
        client.cookies.clear()
        assert client.post("/auth/logout").status_code == 200


class TestMfaEndpoints:
    def test_setup_enable_validate(self, client, runtime, user):
        headers = _bearer(_login(client))
        setup = client.post("/auth/mfa/setup", headers=headers)
        assert setup.status_code == 200
        secret = setup.json()["data"]["secret"]
        assert setup.json()["data"]["otpauth_uri"].startswith("otpauth://totp/")

        bad = client.post(
            "/auth/mfa/enable", json={"code": "abcdef", "secret": secret}, headers=headers
        )
        assert bad.status_code == 400
        assert runtime.store.get_user(user.id).mfa_enabled is False

        code = runtime.mfa.generate_code(secret)
        enabled = client.post(
            "/auth/mfa/enable", json={"code": code, "secret": secret}, headers=headers
        )
        assert enabled.status_code == 200

        valid = client.post("/auth/mfa/validate", json={"user_id": user.id, "code": code})
        assert valid.status_code == 200
        invalid = client.post("/auth/mfa/validate", json={"user_id": user.id, "code": "abcdef"})
        assert invalid.status_code == 401

        assert _login(client).json()["data"]["mfa_required"] is True

    def test_setup_requires_bearer(self, client):
        assert client.post("/auth/mfa/setup").status_code == 401
        response = client.post("/auth/mfa/setup", headers={"Authorization": "Bearer junk"})
        assert response.status_code == 401


class TestSessionEndpoints:
    def test_list_and_revoke_sessions(self, client, runtime, user):
        first = _login(client)
        second = _login(client)
        headers = _bearer(second)
        listed = client.get("/auth/sessions", headers=headers).json()["data"]
        assert len(listed) == 2
        current = [s for s in listed if s["current"]]
        assert current[0]["id"] == second.json()["data"]["session_id"]

        first_id = first.json()["data"]["session_id"]
        assert client.delete(f"/auth/sessions/{first_id}", headers=headers).status_code == 200
        assert client.delete(f"/auth/sessions/{first_id}", headers=headers).status_code == 403
        # The revoked session's access token stops working
        assert client.get("/auth/sessions", headers=_bearer(first)).status_code == 401

    def test_session_logs_and_stats(self, client, runtime, user):
        headers = _bearer(_login(client))
        _login(client)
        page = client.get("/auth/session-logs?page=1&limit=1", headers=headers).json()["data"]
        assert page["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        stats = client.get("/auth/session-logs/stats/active", headers=headers).json()["data"]
        assert stats == {"active": 2, "total": 2}

        log_id = page["logs"][0]["id"]
        detail = client.get(f"/auth/session-logs/{log_id}", headers=headers)
        assert detail.status_code == 200
        assert client.get("/auth/session-logs/missing", headers=headers).status_code == 404

        revoked = client.delete(f"/auth/session-logs/{log_id}", headers=headers)
        assert revoked.status_code == 200
        assert revoked.json()["data"]["is_active"] is False

    def test_other_users_log_is_forbidden(self, client, runtime, user):
        runtime.store.create_user("u2@example.com", runtime.hasher.hash_sync(PASSWORD))
        other_headers = _bearer(_login(client, email="u2@example.com"))
        mine = _bearer(_login(client))
        other_logs = client.get("/auth/session-logs", headers=other_headers).json()["data"]["logs"]
        response = client.get(f"/auth/session-logs/{other_logs[0]['id']}", headers=mine)
        assert response.status_code == 403

    def test_devices(self, client, user):
        headers = _bearer(_login(client))
        devices = client.get("/auth/devices", headers=headers).json()["data"]
        assert len(devices) == 1
        assert devices[0]["name"].startswith("Safari")


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["checks"]["database"]["status"] == "healthy"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "trace-123"})
        assert response.headers["X-Request-ID"] == "trace-123"

    def test_security_headers(self, client, user):
        response = _login(client)
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_error_envelope_carries_request_id(self, client):
        response = client.post(
            "/auth/mfa/setup", headers={"X-Request-ID": "trace-456"}
        )
        assert response.json()["request_id"] == "trace-456"

    def test_lifespan_starts_and_stops_reaper(self, settings, store, clock):
        from conftest import make_settings
        from authkernel.service.runtime import Runtime

        runtime = Runtime(make_settings(idle_reaper_enabled=True), store=store, clock=clock)
        with TestClient(create_app(runtime=runtime)) as client:
            assert client.get("/healthz").status_code == 200
            assert runtime.reaper._task is not None
        assert runtime.reaper._task is None
