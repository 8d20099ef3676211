"""
aiohttp application for the LeadDesk API.

Middlewares, outermost first:
    security headers -> error conversion -> request gate
"""

import asyncio
import contextlib
import functools
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

from aiohttp import web
from loguru import logger

from .auth.database import UserDatabase
from .auth.jwt_handler import JWTHandler
from .auth.password import PasswordManager
from .auth.permissions import PermissionChecker, PermissionDeniedError
from .auth.user_manager import UserManager
from .auth.validation import (
    LoginRequest,
    PasswordResetRequest,
    RoleAssignment,
    parse_body,
    parse_registration,
)
from .config import Settings
from .db import Database
from .errors import AuthenticationError, InvalidTokenError, LeadDeskError, NotFoundError, ValidationError
from .gate import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    Reject,
    RequestContext,
    RequestGate,
    extract_token,
)
from .security.alerting import STATISTICS_PERIODS, AlertMonitor
from .security.audit import (
    ANONYMOUS,
    AuditAction,
    AuditCategory,
    AuditEvent,
    AuditLevel,
    AuditLogger,
    client_ip,
)
from .security.headers import apply_security_headers
from .security.rate_limiter import RATE_LIMIT_CONFIGS, RateLimiter


@dataclass
class Services:
    """
    Process-scoped collaborators shared by all requests.
    """
    settings: Settings
    db: Database
    passwords: PasswordManager
    tokens: JWTHandler
    checker: PermissionChecker
    limiter: RateLimiter
    audit: AuditLogger
    monitor: AlertMonitor
    users: UserManager
    gate: RequestGate

    @classmethod
    def build(cls, settings: Settings, limiter: Optional[RateLimiter] = None) -> "Services":
        """
        Wire every component from settings.

        Args:
            settings: Validated configuration
            limiter: Rate limiter to share (default: a new in-memory one)
        """
        db = Database(settings.database_path, max_connections=settings.db_pool_size)
        db.init_schema()

        passwords = PasswordManager(settings.bcrypt_rounds)
        tokens = JWTHandler.from_settings(settings)
        checker = PermissionChecker()
        limiter = limiter or RateLimiter()
        audit = AuditLogger(db)
        monitor = AlertMonitor(db)
        users = UserManager(UserDatabase(db), passwords, tokens, checker, audit)
        gate = RequestGate(tokens, checker, limiter, audit)
        return cls(settings, db, passwords, tokens, checker, limiter, audit, monitor, users, gate)


SERVICES = web.AppKey("services", Services)


# ============================================================================
# Request helpers
# ============================================================================

def request_ip(request: web.Request) -> str:
    return client_ip(
        request.headers,
        request.remote,
        trust_proxy_headers=request.app[SERVICES].settings.trust_proxy_headers,
    )


def request_context(request: web.Request) -> RequestContext:
    return RequestContext(
        method=request.method,
        path=request.path,
        headers=request.headers,
        cookies=request.cookies,
        client_ip=request_ip(request),
    )


async def run_blocking(func: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Run bcrypt and database work on the default executor.

    Only the calling request waits; the event loop keeps serving others.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


async def read_json(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError as e:
        raise ValidationError("Invalid JSON body") from e
    if not isinstance(data, dict):
        raise ValidationError("Validation failed", details={"body": ["Expected a JSON object"]})
    return data


def set_auth_cookies(
    response: web.StreamResponse,
    settings: Settings,
    access_token: str,
    refresh_token: Optional[str] = None,
) -> None:
    """Set HTTP-only token cookies with max-age matching each token's lifetime."""
    cookies = [(ACCESS_TOKEN_COOKIE, access_token, settings.access_token_ttl)]
    if refresh_token is not None:
        cookies.append((REFRESH_TOKEN_COOKIE, refresh_token, settings.refresh_token_ttl))

    for name, value, ttl in cookies:
        response.set_cookie(
            name,
            value,
            max_age=int(ttl.total_seconds()),
            path="/",
            httponly=True,
            samesite="Lax",
            secure=settings.is_production,
        )


def clear_auth_cookies(response: web.StreamResponse, settings: Settings) -> None:
    for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
        response.set_cookie(
            name,
            "",
            max_age=0,
            path="/",
            httponly=True,
            samesite="Lax",
            secure=settings.is_production,
        )


def reject_response(decision: Reject, settings: Settings) -> web.StreamResponse:
    if decision.body is None:
        response = web.Response(status=decision.status, headers=decision.headers)
    else:
        response = web.json_response(decision.body, status=decision.status, headers=decision.headers)
    if decision.clear_cookies:
        clear_auth_cookies(response, settings)
    return response


# ============================================================================
# Middlewares
# ============================================================================

@web.middleware
async def security_headers_middleware(request, handler):
    """Add security headers to all responses."""
    is_production = request.app[SERVICES].settings.is_production
    try:
        response = await handler(request)
    except web.HTTPException as e:
        apply_security_headers(e.headers, is_production)
        raise
    apply_security_headers(response.headers, is_production)
    return response


@web.middleware
async def error_middleware(request, handler):
    """Convert errors into JSON responses without leaking internals."""
    try:
        return await handler(request)
    except LeadDeskError as e:
        if e.status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.message}")
        return web.json_response(e.to_dict(), status=e.status, headers=getattr(e, "headers", None))
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        body = {"error": "Internal server error"}
        if not request.app[SERVICES].settings.is_production:
            body["details"] = str(e)
        return web.json_response(body, status=500)


@web.middleware
async def gate_middleware(request, handler):
    """Run the request gate and attach the principal for handlers."""
    services = request.app[SERVICES]
    decision = await run_blocking(services.gate.evaluate, request_context(request))

    if isinstance(decision, Reject):
        return reject_response(decision, services.settings)

    if decision.principal is not None:
        headers = request.headers.copy()
        for name, value in decision.headers.items():
            headers[name] = value
        request = request.clone(headers=headers)
        request["principal"] = decision.principal
    return await handler(request)


# ============================================================================
# Auth endpoints
# ============================================================================

async def handle_login(request):
    """
    Handle login request.

    POST /api/auth
    Body: {"email": "...", "password": "..."}
    Returns: {"success": true, "user": {...}} and sets token cookies
    """
    services = request.app[SERVICES]
    data = parse_body(LoginRequest, await read_json(request))

    user, access_token, refresh_token = await run_blocking(
        services.users.login,
        data.email,
        data.password,
        ip_address=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )

    response = web.json_response({"success": True, "user": user.to_public_dict()})
    set_auth_cookies(response, services.settings, access_token, refresh_token)
    return response


async def handle_register(request):
    """
    Handle registration request.

    POST /api/auth/register
    Body: {"firstName", "lastName", "email", "password"}
    Returns: 201 {"success": true, "user": {...}}
    """
    services = request.app[SERVICES]
    data = parse_registration(await read_json(request))
    user = await run_blocking(
        services.users.register,
        data,
        ip_address=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return web.json_response(
        {"success": True, "message": "User registered successfully", "user": user.to_public_dict()},
        status=201,
    )


async def handle_refresh(request):
    """
    Mint a new access token.

    POST /api/auth/refresh
    Reads the refresh token from the cookie, or {"refreshToken": "..."}.
    """
    services = request.app[SERVICES]
    token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    if not token:
        token = (await read_json(request)).get("refreshToken")
    if not token:
        raise AuthenticationError("Refresh token required")

    try:
        user, access_token = await run_blocking(
            services.users.refresh_access_token,
            token,
            ip_address=request_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
    except AuthenticationError as e:
        response = web.json_response(e.to_dict(), status=e.status)
        clear_auth_cookies(response, services.settings)
        return response

    response = web.json_response({"success": True, "user": user.to_public_dict()})
    set_auth_cookies(response, services.settings, access_token)
    return response


async def handle_logout(request):
    """
    Handle logout request.

    POST /api/auth/logout
    Clears both token cookies. Tokens stay valid until they expire.
    """
    services = request.app[SERVICES]
    ctx = request_context(request)

    user_id = ANONYMOUS
    token = extract_token(ctx)
    if token:
        try:
            user_id = services.users.authenticate(token).user_id
        except InvalidTokenError:
            logger.debug("Logout with an invalid or expired access token")

    await run_blocking(services.audit.log_event, AuditEvent(
        action=AuditAction.LOGOUT,
        category=AuditCategory.AUTHENTICATION,
        level=AuditLevel.INFO,
        resource="users",
        success=True,
        user_id=user_id,
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
    ))
    response = web.json_response({"success": True})
    clear_auth_cookies(response, services.settings)
    logger.info(f"Logout from {ctx.client_ip} (user={user_id})")
    return response


async def handle_password_reset(request):
    """
    Accept a password reset request.

    POST /api/auth/password-reset
    Body: {"email": "..."}
    Always answers 202 so callers cannot learn which accounts exist.
    """
    services = request.app[SERVICES]
    data = parse_body(PasswordResetRequest, await read_json(request))
    ctx = request_context(request)

    await run_blocking(
        services.gate.enforce_rate_limit, ctx, RATE_LIMIT_CONFIGS["password_reset"], identifier=data.email
    )

    await run_blocking(services.audit.log_event, AuditEvent(
        action=AuditAction.PASSWORD_RESET_REQUESTED,
        category=AuditCategory.AUTHENTICATION,
        level=AuditLevel.INFO,
        resource="users",
        success=True,
        details={"email": data.email},
        ip_address=ctx.client_ip,
        user_agent=ctx.user_agent,
    ))
    return web.json_response(
        {"success": True, "message": "If the account exists, reset instructions have been sent"},
        status=202,
    )


# ============================================================================
# Authenticated endpoints
# ============================================================================

async def handle_session(request):
    """GET /api/session: the current principal and its role."""
    services = request.app[SERVICES]
    principal = request["principal"]
    return web.json_response({
        "user": {
            "id": principal.user_id,
            "email": principal.email,
            "roleId": principal.role_id,
            "permissions": sorted(principal.permissions),
        },
        "role": services.checker.get_role_details(principal.role_id),
    })


async def handle_navigation(request):
    services = request.app[SERVICES]
    return web.json_response({"navigation": services.checker.get_navigation(request["principal"].role_id)})


async def handle_list_users(request):
    """GET /api/users: all accounts, without password hashes."""
    services = request.app[SERVICES]
    users = [
        {**user.to_public_dict(), "isActive": user.is_active, "createdAt": user.created_at.isoformat()}
        for user in await run_blocking(services.users.list_users)
    ]
    return web.json_response({"users": users})


async def handle_update_role(request):
    """
    Change a user's role.

    PUT /api/users/update-role
    Body: {"userId": "...", "roleId": 3}
    """
    services = request.app[SERVICES]
    principal = request["principal"]
    data = parse_body(RoleAssignment, await read_json(request))
    ip_address = request_ip(request)

    try:
        user = await run_blocking(
            services.users.assign_role,
            principal,
            data.user_id,
            data.role_id,
            ip_address=ip_address,
            user_agent=request.headers.get("User-Agent"),
        )
    except PermissionDeniedError as e:
        logger.warning(e.log_message)
        await run_blocking(
            services.audit.log_authorization_check,
            user_id=principal.user_id,
            resource="users",
            action=e.action,
            success=False,
            ip_address=ip_address,
            user_agent=request.headers.get("User-Agent"),
            error_message=e.message,
        )
        raise

    return web.json_response({"success": True, "user": user.to_public_dict()})


async def handle_security_dashboard(request):
    """
    GET /api/security/dashboard?period=24h

    Returns summary counters, active alerts, alert statistics and recent events.
    """
    services = request.app[SERVICES]
    period = request.query.get("period", "24h")
    if period not in STATISTICS_PERIODS:
        raise ValidationError("Validation failed", details={"period": [f"Unknown period: {period}"]})

    def collect():
        return {
            "summary": services.audit.get_security_summary(),
            "alerts": [alert.to_dict() for alert in services.monitor.get_active_alerts()],
            "statistics": services.monitor.get_alert_statistics(period),
            "events": services.audit.get_recent_events(limit=20),
        }

    return web.json_response(await run_blocking(collect))


async def handle_resolve_alert(request):
    """
    PUT /api/security/alerts/{alert_id}
    Body: {"resolution": "..."}
    """
    services = request.app[SERVICES]
    principal = request["principal"]
    alert_id = int(request.match_info["alert_id"])
    resolution = str((await read_json(request)).get("resolution") or "").strip()
    if not resolution:
        raise ValidationError("Validation failed", details={"resolution": ["Resolution is required"]})

    if not await run_blocking(services.monitor.resolve_alert, alert_id, resolution):
        raise NotFoundError("Alert not found or already resolved")

    await run_blocking(
        services.audit.log_data_modification,
        user_id=principal.user_id,
        resource="security_alerts",
        resource_id=str(alert_id),
        old_values={"resolved": False},
        new_values={"resolved": True, "resolution": resolution},
        ip_address=request_ip(request),
        user_agent=request.headers.get("User-Agent"),
        action=AuditAction.ALERT_RESOLVED,
    )
    return web.json_response({"success": True})


# ============================================================================
# Application
# ============================================================================

async def _monitoring_loop(services: Services, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_blocking(services.monitor.run_monitoring)
            await run_blocking(services.audit.clean_old_audit_logs, services.settings.audit_retention_days)
        except Exception as e:
            logger.error(f"Security monitoring sweep failed: {e}")


async def monitoring_context(app: web.Application):
    """Run periodic security monitoring for the lifetime of the app."""
    services = app[SERVICES]
    interval = services.settings.monitoring_interval_seconds
    task = None
    if interval > 0:
        logger.info(f"Security monitoring every {interval:g}s")
        task = asyncio.create_task(_monitoring_loop(services, interval))

    yield

    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    services.db.close()


def create_app(settings: Settings, services: Optional[Services] = None) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        settings: Validated configuration
        services: Pre-built collaborators (default: built from settings)

    Returns:
        Configured web.Application
    """
    app = web.Application(middlewares=[
        security_headers_middleware,
        error_middleware,
        gate_middleware,
    ])
    app[SERVICES] = services or Services.build(settings)

    app.router.add_post("/api/auth", handle_login)
    app.router.add_post("/api/auth/register", handle_register)
    app.router.add_post("/api/auth/refresh", handle_refresh)
    app.router.add_post("/api/auth/logout", handle_logout)
    app.router.add_post("/api/auth/password-reset", handle_password_reset)

    app.router.add_get("/api/session", handle_session)
    app.router.add_get("/api/navigation", handle_navigation)
    app.router.add_get("/api/users", handle_list_users)
    app.router.add_put("/api/users/update-role", handle_update_role)
    app.router.add_get("/api/security/dashboard", handle_security_dashboard)
    app.router.add_put(r"/api/security/alerts/{alert_id:\d+}", handle_resolve_alert)

    app.cleanup_ctx.append(monitoring_context)
    return app
