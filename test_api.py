"""
End-to-end tests for the HTTP API.
"""

import asyncio
import time

import pytest

from leaddesk.app import Services, create_app
from leaddesk.auth.permissions import Role
from leaddesk.config import Settings
from leaddesk.security.audit import AuditAction

from conftest import ACCESS_SECRET, PASSWORD, REFRESH_SECRET


@pytest.fixture
def bearer(services):
    """Authorization header for a stored user."""

    def _bearer(user):
        access_token, _ = services.users.issue_token_pair(user)
        return {"Authorization": f"Bearer {access_token}"}

    return _bearer


def set_cookies(response):
    return {header.split("=", 1)[0]: header for header in response.headers.getall("Set-Cookie", [])}


def events(services, action):
    return services.audit.get_recent_events(limit=100, action=action)


class TestRegistration:
    """Test POST /api/auth/register."""

    async def test_weak_password(self, client):
        """Test that every failed strength rule is reported under password."""
        resp = await client.post("/api/auth/register", json={
            "firstName": "Ada",
            "lastName": "Lovelace",
            "email": "ada@example.com",
            "password": "password",
        })

        assert resp.status == 400
        body = await resp.json()
        assert body["error"] == "Validation failed"
        messages = " ".join(body["details"]["password"])
        assert "uppercase" in messages
        assert "number" in messages
        assert "special character" in messages

    async def test_register_creates_viewer(self, client, services):
        """Test successful registration."""
        resp = await client.post("/api/auth/register", json={
            "firstName": "Ada",
            "lastName": "Lovelace",
            "email": "  Ada@Example.com ",
            "password": PASSWORD,
        })

        assert resp.status == 201
        body = await resp.json()
        assert body["user"]["email"] == "ada@example.com"
        assert body["user"]["roleId"] == Role.VIEWER
        assert "passwordHash" not in body["user"]
        assert len(events(services, AuditAction.REGISTER)) == 1

    async def test_duplicate_email(self, client, make_user):
        """Test that an existing email is a conflict."""
        make_user("ada@example.com")

        resp = await client.post("/api/auth/register", json={
            "firstName": "Ada",
            "lastName": "Lovelace",
            "email": "ada@example.com",
            "password": PASSWORD,
        })

        assert resp.status == 409

    async def test_invalid_fields(self, client):
        """Test field errors for names and email."""
        resp = await client.post("/api/auth/register", json={
            "firstName": "R2-D2",
            "lastName": "",
            "email": "not-an-email",
            "password": PASSWORD,
        })

        assert resp.status == 400
        details = (await resp.json())["details"]
        assert "firstName" in details
        assert "lastName" in details
        assert details["email"] == ["Invalid email format"]


class TestLogin:
    """Test POST /api/auth."""

    async def test_login_sets_cookies(self, client, make_user, services):
        """Test that login returns the user and sets HTTP-only token cookies."""
        user = make_user("ada@example.com", Role.EDITOR)

        resp = await client.post("/api/auth", json={"email": "ada@example.com", "password": PASSWORD})

        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["user"] == user.to_public_dict()
        assert "password" not in str(body)

        cookies = set_cookies(resp)
        assert "HttpOnly" in cookies["accessToken"]
        assert "HttpOnly" in cookies["refreshToken"]
        assert "Max-Age=900" in cookies["accessToken"]
        assert f"Max-Age={7 * 24 * 3600}" in cookies["refreshToken"]
        assert "SameSite=Lax" in cookies["accessToken"]

        [event] = events(services, AuditAction.LOGIN_SUCCESS)
        assert event["userId"] == user.user_id

    @pytest.mark.parametrize("email,password", [
        ("ada@example.com", "Wr0ng!Pass"),
        ("nobody@example.com", PASSWORD),
    ])
    async def test_bad_credentials_are_indistinguishable(self, client, make_user, email, password):
        """Test that unknown accounts and wrong passwords fail identically."""
        make_user("ada@example.com")

        resp = await client.post("/api/auth", json={"email": email, "password": password})

        assert resp.status == 401
        assert await resp.json() == {"error": "Invalid email or password"}
        assert "accessToken" not in set_cookies(resp)

    async def test_login_rate_limit(self, client, services):
        """Test that the sixth attempt in the window is refused."""
        statuses = []
        for _ in range(6):
            resp = await client.post("/api/auth", json={"email": "x@example.com", "password": "nope"})
            statuses.append(resp.status)

        assert statuses == [401] * 5 + [429]
        assert int(resp.headers["Retry-After"]) > 0
        body = await resp.json()
        assert body["retryAfter"] == int(resp.headers["Retry-After"])
        assert len(events(services, AuditAction.RATE_LIMIT_EXCEEDED)) == 1

    async def test_forwarded_for_does_not_reset_limit(self, client):
        """Test that rotating X-Forwarded-For values cannot dodge the login limit."""
        statuses = []
        for i in range(6):
            resp = await client.post("/api/auth", json={"email": "x@example.com", "password": "nope"},
                                     headers={"X-Forwarded-For": f"203.0.113.{i}"})
            statuses.append(resp.status)

        assert statuses == [401] * 5 + [429]

    async def test_forwarded_for_used_behind_proxy(self, aiohttp_client, settings):
        """Test that the forwarded address is recorded when proxy headers are trusted."""
        proxied = settings.model_copy(update={"trust_proxy_headers": True})
        services = Services.build(proxied)
        client = await aiohttp_client(create_app(proxied, services))

        await client.post("/api/auth", json={"email": "x@example.com", "password": "nope"},
                          headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

        [event] = events(services, AuditAction.LOGIN_FAILED)
        assert event["ipAddress"] == "203.0.113.7"
        services.db.close()

    async def test_malformed_body(self, client):
        """Test that a non-object JSON body is a validation error."""
        resp = await client.post("/api/auth", json=["a", "b"])

        assert resp.status == 400


class TestTokensAndSession:
    """Test refresh, logout and session lookup."""

    async def test_refresh_from_cookie(self, client, make_user, services):
        """Test that the refresh cookie mints a new access cookie."""
        make_user("ada@example.com")
        await client.post("/api/auth", json={"email": "ada@example.com", "password": PASSWORD})

        resp = await client.post("/api/auth/refresh")

        assert resp.status == 200
        assert "accessToken" in set_cookies(resp)
        assert "refreshToken" not in set_cookies(resp)
        assert len(events(services, AuditAction.TOKEN_REFRESH)) == 1

    async def test_access_token_cannot_refresh(self, client, make_user, services):
        """Test that an access token is refused by the refresh endpoint."""
        access_token, _ = services.users.issue_token_pair(make_user())

        resp = await client.post("/api/auth/refresh", json={"refreshToken": access_token})

        assert resp.status == 401
        assert "Max-Age=0" in set_cookies(resp)["accessToken"]

    async def test_refresh_without_token(self, client):
        """Test the missing token case."""
        resp = await client.post("/api/auth/refresh")

        assert resp.status == 401
        assert await resp.json() == {"error": "Refresh token required"}

    async def test_logout_clears_cookies(self, client, make_user, services, bearer):
        """Test that logout expires both cookies and records the user."""
        user = make_user()

        resp = await client.post("/api/auth/logout", headers=bearer(user))

        assert resp.status == 200
        cookies = set_cookies(resp)
        assert "Max-Age=0" in cookies["accessToken"]
        assert "Max-Age=0" in cookies["refreshToken"]
        [event] = events(services, AuditAction.LOGOUT)
        assert event["userId"] == user.user_id

    async def test_session(self, client, make_user, bearer):
        """Test the current principal view."""
        user = make_user("ed@example.com", Role.EDITOR)

        resp = await client.get("/api/session", headers=bearer(user))

        assert resp.status == 200
        body = await resp.json()
        assert body["user"]["id"] == user.user_id
        assert body["role"]["name"] == "Editor"
        assert "write:leads" in body["user"]["permissions"]

    async def test_cookie_session_after_login(self, client, make_user):
        """Test that the access cookie from login authenticates later calls."""
        make_user("ada@example.com")
        await client.post("/api/auth", json={"email": "ada@example.com", "password": PASSWORD})

        resp = await client.get("/api/navigation")

        assert resp.status == 200
        assert (await resp.json())["navigation"] == ["dashboard", "leads", "customers", "messages"]

    async def test_missing_token(self, client):
        """Test 401 for API routes and a redirect for pages."""
        api = await client.get("/api/session")
        page = await client.get("/dashboard", allow_redirects=False)

        assert api.status == 401
        assert page.status == 302
        assert page.headers["Location"] == "/login"

    async def test_invalid_cookie_on_page(self, client):
        """Test that a bad access cookie on a page is cleared."""
        page = await client.get("/dashboard", allow_redirects=False, headers={"Cookie": "accessToken=garbage"})

        assert page.status == 302
        assert "Max-Age=0" in set_cookies(page)["accessToken"]


class TestPasswordReset:
    """Test POST /api/auth/password-reset."""

    async def test_reset_accepted_and_limited(self, client, services):
        """Test 202 responses and the per-email limit."""
        statuses = []
        for _ in range(4):
            resp = await client.post("/api/auth/password-reset", json={"email": "ada@example.com"})
            statuses.append(resp.status)

        assert statuses == [202, 202, 202, 429]
        assert "Retry-After" in resp.headers

        other = await client.post("/api/auth/password-reset", json={"email": "bob@example.com"})
        assert other.status == 202
        assert len(events(services, AuditAction.PASSWORD_RESET_REQUESTED)) == 4


class TestUserManagement:
    """Test admin-only user endpoints."""

    async def test_viewer_forbidden(self, client, make_user, services, bearer):
        """Test 403 on /api/users and the recorded roles."""
        viewer = make_user()

        resp = await client.get("/api/users", headers=bearer(viewer))

        assert resp.status == 403
        assert await resp.json() == {"error": "Insufficient permissions"}
        [event] = events(services, AuditAction.AUTHORIZATION_FAILED)
        assert event["userId"] == viewer.user_id
        assert event["details"]["requiredRole"] == "Super Admin, Admin"
        assert event["details"]["actualRole"] == "Viewer"

    async def test_admin_lists_users(self, client, make_user, bearer):
        """Test the user listing without password hashes."""
        admin = make_user("admin@example.com", Role.ADMIN)
        make_user("viewer@example.com")

        resp = await client.get("/api/users", headers=bearer(admin))

        assert resp.status == 200
        users = (await resp.json())["users"]
        assert {u["email"] for u in users} == {"admin@example.com", "viewer@example.com"}
        assert all("passwordHash" not in u for u in users)

    async def test_admin_promotes_viewer(self, client, make_user, services, bearer):
        """Test a permitted role change and its audit record."""
        admin = make_user("admin@example.com", Role.ADMIN)
        viewer = make_user("viewer@example.com")

        resp = await client.put("/api/users/update-role", headers=bearer(admin),
                                json={"userId": viewer.user_id, "roleId": int(Role.EDITOR)})

        assert resp.status == 200
        assert (await resp.json())["user"]["roleId"] == Role.EDITOR
        [event] = events(services, AuditAction.ROLE_CHANGE)
        assert event["oldValues"] == {"roleId": 4}
        assert event["newValues"] == {"roleId": 3}

    async def test_admin_cannot_grant_admin(self, client, make_user, services, bearer):
        """Test that an admin cannot raise a user to their own tier."""
        admin = make_user("admin@example.com", Role.ADMIN)
        viewer = make_user("viewer@example.com")

        resp = await client.put("/api/users/update-role", headers=bearer(admin),
                                json={"userId": viewer.user_id, "roleId": int(Role.ADMIN)})

        assert resp.status == 403
        [event] = events(services, AuditAction.AUTHORIZATION_FAILED)
        assert event["userId"] == admin.user_id

    async def test_unknown_user(self, client, make_user, bearer):
        """Test 404 for a missing target user."""
        admin = make_user("admin@example.com", Role.SUPER_ADMIN)

        resp = await client.put("/api/users/update-role", headers=bearer(admin),
                                json={"userId": "missing", "roleId": 3})

        assert resp.status == 404

    async def test_invalid_role(self, client, make_user, bearer):
        """Test validation of the role id."""
        admin = make_user("admin@example.com", Role.SUPER_ADMIN)

        resp = await client.put("/api/users/update-role", headers=bearer(admin),
                                json={"userId": "x", "roleId": 9})

        assert resp.status == 400
        assert "roleId" in (await resp.json())["details"]


class TestSecurityDashboard:
    """Test alert review endpoints."""

    async def test_dashboard(self, client, make_user, services, bearer):
        """Test the dashboard payload."""
        admin = make_user("admin@example.com", Role.ADMIN)
        services.audit.log_security_incident(AuditAction.XSS_ATTEMPT, "4.4.4.4")
        services.monitor.run_monitoring()

        resp = await client.get("/api/security/dashboard", headers=bearer(admin))

        assert resp.status == 200
        body = await resp.json()
        assert set(body) == {"summary", "alerts", "statistics", "events"}
        assert body["alerts"][0]["alertType"] == "XSS_ATTEMPT"
        assert body["statistics"]["period"] == "24h"

    async def test_dashboard_bad_period(self, client, make_user, bearer):
        """Test that an unknown period is a validation error."""
        admin = make_user("admin@example.com", Role.ADMIN)

        resp = await client.get("/api/security/dashboard?period=2w", headers=bearer(admin))

        assert resp.status == 400
        assert "period" in (await resp.json())["details"]

    async def test_resolve_alert(self, client, make_user, services, bearer):
        """Test resolving an alert once."""
        admin = make_user("admin@example.com", Role.ADMIN)
        services.audit.log_security_incident(AuditAction.SQL_INJECTION_ATTEMPT, "4.4.4.4")
        services.monitor.run_monitoring()
        [alert] = services.monitor.get_active_alerts()

        first = await client.put(f"/api/security/alerts/{alert.alert_id}", headers=bearer(admin),
                                 json={"resolution": "Blocked upstream"})
        second = await client.put(f"/api/security/alerts/{alert.alert_id}", headers=bearer(admin),
                                  json={"resolution": "Again"})

        assert first.status == 200
        assert second.status == 404
        assert len(events(services, AuditAction.ALERT_RESOLVED)) == 1

    async def test_editor_cannot_resolve(self, client, make_user, bearer):
        """Test that alert resolution is admin-only."""
        editor = make_user("ed@example.com", Role.EDITOR)

        resp = await client.put("/api/security/alerts/1", headers=bearer(editor), json={"resolution": "x"})

        assert resp.status == 403


class TestConcurrency:
    """Test that slow password checks do not stall other requests."""

    async def test_navigation_served_during_slow_login(self, client, make_user, services, bearer, monkeypatch):
        """Test that a request is answered while another waits on bcrypt."""
        user = make_user("ada@example.com")

        def slow_verify(password, password_hash):
            time.sleep(0.5)
            return True

        monkeypatch.setattr(services.passwords, "verify", slow_verify)

        async def navigation():
            await asyncio.sleep(0.05)
            started = time.monotonic()
            resp = await client.get("/api/navigation", headers=bearer(user))
            return resp.status, time.monotonic() - started

        login, (status, elapsed) = await asyncio.gather(
            client.post("/api/auth", json={"email": "ada@example.com", "password": PASSWORD}),
            navigation(),
        )

        assert login.status == 200
        assert status == 200
        assert elapsed < 0.3


class TestSecurityHeaders:
    """Test headers on every response."""

    @pytest.mark.parametrize("path", ["/", "/api/session", "/api/auth/refresh"])
    async def test_headers_present(self, client, path):
        """Test that success, error and not-found responses carry the headers."""
        resp = await client.get(path, allow_redirects=False)

        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "Content-Security-Policy" in resp.headers
        assert "Strict-Transport-Security" not in resp.headers

    async def test_hsts_in_production(self, aiohttp_client, tmp_path):
        """Test that production responses carry HSTS and secure cookies."""
        settings = Settings(
            environment="production",
            access_token_secret=ACCESS_SECRET,
            refresh_token_secret=REFRESH_SECRET,
            bcrypt_rounds=10,
            database_path=tmp_path / "prod.db",
            monitoring_interval_seconds=0,
        )
        client = await aiohttp_client(create_app(settings, Services.build(settings)))

        resp = await client.post("/api/auth/logout")

        assert resp.headers["Strict-Transport-Security"].startswith("max-age=31536000")
        assert "frame-ancestors 'none'" in resp.headers["Content-Security-Policy"]
        assert "Secure" in set_cookies(resp)["accessToken"]
