"""
Security response headers.
"""

from typing import Dict, MutableMapping


DEVELOPMENT_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; "
    "font-src 'self' data:; "
    "connect-src 'self' https:; "
    "media-src 'self'; "
    "object-src 'none'; "
    "child-src 'none';"
)

PRODUCTION_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; "
    "font-src 'self' data:; "
    "connect-src 'self'; "
    "media-src 'self'; "
    "object-src 'none'; "
    "child-src 'none'; "
    "frame-ancestors 'none';"
)

HSTS = "max-age=31536000; includeSubDomains; preload"

BASE_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def security_headers(is_production: bool) -> Dict[str, str]:
    """
    Headers applied to every response.

    HSTS is only sent in production, where the site is served over TLS.
    """
    headers = dict(BASE_HEADERS)
    if is_production:
        headers["Strict-Transport-Security"] = HSTS
        headers["Content-Security-Policy"] = PRODUCTION_CSP
    else:
        headers["Content-Security-Policy"] = DEVELOPMENT_CSP
    return headers


def apply_security_headers(headers: MutableMapping[str, str], is_production: bool) -> None:
    """Set security headers in place, overriding existing values."""
    for name, value in security_headers(is_production).items():
        headers[name] = value
