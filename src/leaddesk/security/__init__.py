"""
Rate limiting, audit trail, alerting and response headers.
"""

from .rate_limiter import (
    RATE_LIMIT_CONFIGS,
    RateLimitConfig,
    RateLimitInfo,
    RateLimiter,
    rate_limit_key,
)
from .audit import (
    AuditAction,
    AuditCategory,
    AuditEvent,
    AuditLevel,
    AuditLogger,
    client_ip,
)
from .alerting import (
    ALERT_CONFIGS,
    AlertConfig,
    AlertMonitor,
    AlertSeverity,
    SecurityAlert,
)
from .headers import apply_security_headers, security_headers

__all__ = [
    # Rate limiting
    "RATE_LIMIT_CONFIGS",
    "RateLimitConfig",
    "RateLimitInfo",
    "RateLimiter",
    "rate_limit_key",
    # Audit
    "AuditAction",
    "AuditCategory",
    "AuditEvent",
    "AuditLevel",
    "AuditLogger",
    "client_ip",
    # Alerting
    "ALERT_CONFIGS",
    "AlertConfig",
    "AlertMonitor",
    "AlertSeverity",
    "SecurityAlert",
    # Headers
    "apply_security_headers",
    "security_headers",
]
