"""
Error taxonomy for LeadDesk.

Every error carries the HTTP status it maps to, so the web layer can
convert it into a JSON response without inspecting the exception type.
"""

from typing import Any, Optional


class LeadDeskError(Exception):
    """
    Base class for errors surfaced to API callers.

    Attributes:
        message: Human-readable, caller-safe message
        status: HTTP status code
        details: Optional structured detail (e.g. field errors)
    """

    status = 500

    def __init__(self, message: str, details: Optional[Any] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status is not None:
            self.status = status

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(LeadDeskError):
    """Malformed input. `details` maps field name to a list of messages."""

    status = 400


class AuthenticationError(LeadDeskError):
    """Missing, invalid or expired credentials."""

    status = 401


class InvalidTokenError(AuthenticationError):
    """Token signature, issuer, audience or expiry check failed."""


class AuthorizationError(LeadDeskError):
    """Valid identity, insufficient role."""

    status = 403


class NotFoundError(LeadDeskError):
    status = 404


class ConflictError(LeadDeskError):
    status = 409


class RateLimitError(LeadDeskError):
    """
    Too many requests for a rate-limit key.

    Attributes:
        retry_after: Seconds until the current window resets
        headers: Retry-After and X-Rate-Limit-* response headers
    """

    status = 429

    def __init__(self, message: str, retry_after: int, headers: Optional[dict] = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.headers = headers or {"Retry-After": str(retry_after)}

    def to_dict(self) -> dict:
        return {"error": self.message, "retryAfter": self.retry_after}


class HashingError(LeadDeskError):
    """The password primitive failed; the request cannot continue."""

    status = 500


class PersistenceError(LeadDeskError):
    """Audit or alert write failed. Never surfaced to callers."""


class ConfigurationError(Exception):
    """Invalid or incomplete configuration detected at startup."""
