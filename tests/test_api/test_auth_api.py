"""Tests for /api/auth."""

import pytest
from conftest import browser_headers

from nkshield.api.common import SERVICES
from nkshield.auth import SESSION_COOKIE, SESSION_PREFIX, set_admin_password

PASSWORD = "correct horse battery"


def _cookie_headers(token: str) -> dict[str, str]:
    return browser_headers(Cookie=f"{SESSION_COOKIE}={token}")


class TestAuthStatus:
    """Tests for GET /api/auth."""

    @pytest.mark.asyncio
    async def test_needs_setup(self, client):
        """Test a fresh install reports that setup is needed."""
        resp = await client.get("/api/auth", headers=browser_headers())

        assert await resp.json() == {"authenticated": False, "needsSetup": True}

    @pytest.mark.asyncio
    async def test_authenticated(self, client, admin_headers):
        """Test a session reports as authenticated."""
        resp = await client.get("/api/auth", headers=admin_headers)

        assert (await resp.json())["authenticated"] is True


class TestSetup:
    """Tests for first-time password setup."""

    @pytest.mark.asyncio
    async def test_setup_logs_in(self, client):
        """Test setup stores the password and returns a session cookie."""
        resp = await client.post(
            "/api/auth", json={"action": "setup", "password": PASSWORD}, headers=browser_headers()
        )

        assert resp.status == 200
        cookie = resp.cookies[SESSION_COOKIE]
        assert cookie["httponly"]
        assert cookie["samesite"] == "Strict"

        status = await client.get("/api/auth", headers=_cookie_headers(cookie.value))
        assert await status.json() == {"authenticated": True, "needsSetup": False}

    @pytest.mark.asyncio
    async def test_setup_only_once(self, client, app):
        """Test setup is refused once a password exists."""
        await set_admin_password(app[SERVICES].store, PASSWORD)

        resp = await client.post(
            "/api/auth", json={"action": "setup", "password": "another password"}, headers=browser_headers()
        )

        assert resp.status == 409

    @pytest.mark.asyncio
    async def test_setup_policy(self, client):
        """Test a short password is refused."""
        resp = await client.post(
            "/api/auth", json={"action": "setup", "password": "short"}, headers=browser_headers()
        )

        assert resp.status == 400


class TestLogin:
    """Tests for password login."""

    @pytest.mark.asyncio
    async def test_login(self, client, app):
        """Test a wrong password is a 401 and the right one creates a session."""
        await set_admin_password(app[SERVICES].store, PASSWORD)

        wrong = await client.post("/api/auth", json={"password": "wrong password"}, headers=browser_headers())
        right = await client.post("/api/auth", json={"password": PASSWORD}, headers=browser_headers())

        assert wrong.status == 401
        assert right.status == 200
        token = right.cookies[SESSION_COOKIE].value
        assert await app[SERVICES].store.get(f"{SESSION_PREFIX}{token}")

    @pytest.mark.asyncio
    async def test_login_without_password_configured(self, client):
        """Test login before setup is refused."""
        resp = await client.post("/api/auth", json={"password": PASSWORD}, headers=browser_headers())

        assert resp.status == 401
        assert (await resp.json())["error"] == "No password configured"

    @pytest.mark.asyncio
    async def test_empty_body(self, client):
        """Test a body with no recognised flow is a 400."""
        resp = await client.post("/api/auth", json={}, headers=browser_headers())

        assert resp.status == 400


class TestPasswordChange:
    """Tests for changing the password."""

    @pytest.mark.asyncio
    async def test_requires_session(self, client, app):
        """Test visitors cannot change the password."""
        await set_admin_password(app[SERVICES].store, PASSWORD)

        resp = await client.post("/api/auth", json={"newPassword": "new password!"}, headers=browser_headers())

        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_change(self, client, app, admin_headers):
        """Test an admin can change the password with the current one."""
        store = app[SERVICES].store
        await set_admin_password(store, PASSWORD)

        bad = await client.post(
            "/api/auth",
            json={"newPassword": "new password!", "currentPassword": "not it at all"},
            headers=admin_headers,
        )
        good = await client.post(
            "/api/auth",
            json={"newPassword": "new password!", "currentPassword": PASSWORD},
            headers=admin_headers,
        )

        assert bad.status == 403
        assert good.status == 200
        login = await client.post("/api/auth", json={"password": "new password!"}, headers=admin_headers)
        assert login.status == 200


class TestLogout:
    """Tests for DELETE /api/auth."""

    @pytest.mark.asyncio
    async def test_logout(self, client, app, admin_headers):
        """Test logout destroys the session and expires the cookie."""
        resp = await client.delete("/api/auth", headers=admin_headers)

        assert resp.status == 200
        assert resp.cookies[SESSION_COOKIE]["max-age"] == "0"
        status = await client.get("/api/auth", headers=admin_headers)
        assert (await status.json())["authenticated"] is False
