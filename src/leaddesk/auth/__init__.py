"""
Authentication module for LeadDesk.

Provides password hashing, JWT access/refresh tokens and role-based
route access control.
"""

from .models import User, Principal
from .database import UserDatabase
from .jwt_handler import JWTHandler, TokenPayload
from .password import PasswordManager, PasswordStrength
from .user_manager import UserManager
from .permissions import (
    Permission,
    Role,
    RouteRule,
    PermissionChecker,
    PermissionDeniedError,
    normalize_path,
    require_permission,
    require_role_management,
    ROLE_PERMISSIONS,
    ROUTE_PERMISSIONS,
)

__all__ = [
    # User models and database
    "User",
    "Principal",
    "UserDatabase",
    # Credentials
    "JWTHandler",
    "TokenPayload",
    "PasswordManager",
    "PasswordStrength",
    "UserManager",
    # RBAC
    "Permission",
    "Role",
    "RouteRule",
    "PermissionChecker",
    "PermissionDeniedError",
    "normalize_path",
    "require_permission",
    "require_role_management",
    "ROLE_PERMISSIONS",
    "ROUTE_PERMISSIONS",
]
