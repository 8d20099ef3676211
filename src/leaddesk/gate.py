"""
Per-request access control.

RequestGate turns a RequestContext into either Admit or Reject. It does
not depend on any HTTP framework. The aiohttp middleware in app.py only
translates to and from these types.

Order of checks:
    public route -> rate limit -> token -> verification -> route access
Each step short-circuits on rejection.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple, Union

from loguru import logger
from multidict import CIMultiDict, CIMultiDictProxy

from .auth.jwt_handler import JWTHandler
from .auth.models import Principal
from .auth.permissions import PermissionChecker, Role
from .errors import InvalidTokenError, RateLimitError
from .security.audit import AuditAction, AuditLogger
from .security.rate_limiter import (
    RATE_LIMIT_CONFIGS,
    RateLimitConfig,
    RateLimiter,
    rate_limit_key,
)


ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"

LOGIN_PAGE = "/login"

PUBLIC_PATHS = frozenset({"/", "/login", "/register", "/favicon.ico"})
PUBLIC_PREFIXES: Tuple[str, ...] = ("/static/", "/_next/")

AUTH_ENDPOINT = "/api/auth"
REGISTER_ENDPOINT = "/api/auth/register"
PASSWORD_RESET_ENDPOINT = "/api/auth/password-reset"


@dataclass
class RequestContext:
    """
    Framework-neutral view of an inbound request.

    Attributes:
        method: HTTP method
        path: URL path without query string
        headers: Request headers (looked up case-insensitively)
        cookies: Request cookies
        client_ip: Resolved client address
    """
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    client_ip: str = "unknown"

    def __post_init__(self):
        self.method = self.method.upper()
        if not isinstance(self.headers, (CIMultiDict, CIMultiDictProxy)):
            self.headers = CIMultiDict(self.headers)

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("User-Agent")

    @property
    def is_api(self) -> bool:
        return self.path == "/api" or self.path.startswith("/api/")


@dataclass
class Admit:
    """
    Request may proceed.

    Attributes:
        principal: Authenticated principal (None on public and auth endpoints)
        headers: Identity headers to attach for downstream handlers
    """
    principal: Optional[Principal] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Reject:
    """
    Request is refused.

    Attributes:
        status: HTTP status code
        body: JSON body (None for redirects)
        headers: Response headers (Location for redirects)
        clear_cookies: Whether to expire the auth cookies
    """
    status: int
    body: Optional[Dict] = None
    headers: Dict[str, str] = field(default_factory=dict)
    clear_cookies: bool = False


GateDecision = Union[Admit, Reject]


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def is_auth_endpoint(path: str) -> bool:
    return path == AUTH_ENDPOINT or path.startswith(AUTH_ENDPOINT + "/")


def extract_token(ctx: RequestContext) -> Optional[str]:
    """
    Bearer token from the Authorization header, else the access cookie.
    """
    authorization = ctx.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return ctx.cookies.get(ACCESS_TOKEN_COOKIE) or None


class RequestGate:
    """
    Composes token verification, rate limiting, RBAC and audit logging
    into one decision per request.
    """

    def __init__(
        self,
        tokens: JWTHandler,
        checker: PermissionChecker,
        limiter: RateLimiter,
        audit: AuditLogger,
    ):
        """
        Initialize gate.

        Args:
            tokens: Access token verification
            checker: Route access decisions
            limiter: Shared rate limiter
            audit: Audit trail
        """
        self.tokens = tokens
        self.checker = checker
        self.limiter = limiter
        self.audit = audit

    @staticmethod
    def select_rate_limit(path: str) -> Optional[RateLimitConfig]:
        """
        Rate-limit config for a path, or None if the gate does not limit it.

        Password reset is limited by its handler, keyed by email and IP.
        """
        if path == REGISTER_ENDPOINT:
            return RATE_LIMIT_CONFIGS["registration"]
        if path == PASSWORD_RESET_ENDPOINT:
            return None
        if path == AUTH_ENDPOINT:
            return RATE_LIMIT_CONFIGS["auth"]
        if is_auth_endpoint(path):
            return RATE_LIMIT_CONFIGS["general"]
        if path.startswith("/api/"):
            return RATE_LIMIT_CONFIGS["api"]
        return None

    def check_rate_limit(
        self,
        ctx: RequestContext,
        config: RateLimitConfig,
        identifier: Optional[str] = None,
    ) -> Optional[Reject]:
        """
        Count one request and build the 429 rejection if it is over the limit.

        Args:
            ctx: Request context
            config: Limit to apply
            identifier: Secondary key (e.g. target email)

        Returns:
            Reject with retry headers, or None if admitted
        """
        key = rate_limit_key(config, ctx.client_ip, identifier)
        if not self.limiter.is_rate_limited(key, config):
            return None

        info = self.limiter.get_rate_limit_info(key, config)
        self.audit.log_security_incident(
            action=AuditAction.RATE_LIMIT_EXCEEDED,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
            details={"path": ctx.path, "method": ctx.method, "limit": config.name},
            error_message=config.message,
        )
        headers = {"Retry-After": str(info.retry_after), **info.headers()}
        return Reject(
            status=429,
            body={"error": config.message, "retryAfter": info.retry_after},
            headers=headers,
        )

    def enforce_rate_limit(
        self,
        ctx: RequestContext,
        config: RateLimitConfig,
        identifier: Optional[str] = None,
    ) -> None:
        """
        Like check_rate_limit, for use inside handlers.

        Raises:
            RateLimitError: With retry headers, if over the limit
        """
        rejection = self.check_rate_limit(ctx, config, identifier)
        if rejection is not None:
            raise RateLimitError(
                config.message,
                retry_after=rejection.body["retryAfter"],
                headers=rejection.headers,
            )

    def _unauthenticated(self, ctx: RequestContext, message: str, clear_cookies: bool) -> Reject:
        if ctx.is_api:
            return Reject(status=401, body={"error": message})
        return Reject(status=302, headers={"Location": LOGIN_PAGE}, clear_cookies=clear_cookies)

    def evaluate(self, ctx: RequestContext) -> GateDecision:
        """
        Decide whether a request may proceed.

        Args:
            ctx: Request context

        Returns:
            Admit (with identity headers when authenticated) or Reject
        """
        if is_public_path(ctx.path):
            return Admit()

        config = self.select_rate_limit(ctx.path)
        if config is not None:
            rejection = self.check_rate_limit(ctx, config)
            if rejection is not None:
                return rejection

        # Login, registration and refresh run before a token exists
        if is_auth_endpoint(ctx.path):
            return Admit()

        token = extract_token(ctx)
        if token is None:
            self.audit.log_authentication_attempt(
                email=None,
                success=False,
                ip_address=ctx.client_ip,
                user_agent=ctx.user_agent,
                error_message="No token provided",
            )
            return self._unauthenticated(ctx, "Authentication required", clear_cookies=False)

        try:
            payload = self.tokens.verify_access_token(token)
        except InvalidTokenError:
            self.audit.log_authentication_attempt(
                email=None,
                success=False,
                ip_address=ctx.client_ip,
                user_agent=ctx.user_agent,
                error_message="Invalid or expired token",
            )
            return self._unauthenticated(ctx, "Invalid or expired token", clear_cookies=True)

        principal = self.checker.principal_for(payload.user_id, payload.email, payload.role_id)
        self.audit.log_authentication_attempt(
            email=principal.email,
            success=True,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
            user_id=principal.user_id,
        )

        if not self.checker.can_access_route(principal, ctx.path, ctx.method):
            required = self.checker.required_roles(ctx.path, ctx.method)
            actual = self._role_name(principal.role_id)
            self.audit.log_failed_authorization(
                user_id=principal.user_id,
                resource=ctx.path,
                required_role=", ".join(required) or "none",
                actual_role=actual,
                ip_address=ctx.client_ip,
                user_agent=ctx.user_agent,
                method=ctx.method,
            )
            logger.warning(f"Access denied: {principal.email} ({actual}) {ctx.method} {ctx.path}")
            return Reject(status=403, body={"error": "Insufficient permissions"})

        self.audit.log_data_access(
            user_id=principal.user_id,
            resource=ctx.path,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
            details={"method": ctx.method},
        )
        return Admit(
            principal=principal,
            headers={
                "x-user-id": principal.user_id,
                "x-user-email": principal.email,
                "x-user-role": str(principal.role_id),
            },
        )

    @staticmethod
    def _role_name(role_id: int) -> str:
        try:
            return Role(role_id).display_name
        except ValueError:
            return f"unknown ({role_id})"
