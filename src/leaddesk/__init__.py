"""
LeadDesk authentication and authorization core.
"""

from .config import Settings
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    HashingError,
    InvalidTokenError,
    LeadDeskError,
    PersistenceError,
    RateLimitError,
    ValidationError,
)
from .gate import Admit, Reject, RequestContext, RequestGate

__version__ = "0.3.0"

__all__ = [
    "Settings",
    # Errors
    "AuthenticationError",
    "AuthorizationError",
    "ConfigurationError",
    "HashingError",
    "InvalidTokenError",
    "LeadDeskError",
    "PersistenceError",
    "RateLimitError",
    "ValidationError",
    # Gate
    "Admit",
    "Reject",
    "RequestContext",
    "RequestGate",
]
