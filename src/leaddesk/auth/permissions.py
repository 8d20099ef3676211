"""
Role-Based Access Control (RBAC) for LeadDesk.

This module provides:
- Role and permission definitions
- The route access table (route pattern, methods, allowed roles)
- Route, permission and role-management decisions

Permissions are looked up from the role at check time, so a role change
takes effect on the next request without re-issuing tokens.
"""

import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, List, Optional, Set

from ..errors import AuthorizationError
from .models import Principal


class Role(IntEnum):
    """
    Predefined roles, most privileged first.
    """
    SUPER_ADMIN = 1     # Everything, including unmapped routes
    ADMIN = 2           # User management, all data
    EDITOR = 3          # Edit customers and leads
    VIEWER = 4          # Read-only

    @property
    def display_name(self) -> str:
        return ROLE_NAMES[self]


ROLE_NAMES: Dict[Role, str] = {
    Role.SUPER_ADMIN: "Super Admin",
    Role.ADMIN: "Admin",
    Role.EDITOR: "Editor",
    Role.VIEWER: "Viewer",
}


class Permission(str, Enum):
    """
    Capability strings granted to roles.
    """
    ALL = "*"

    # Broad grants
    READ_ALL = "read:all"
    WRITE_ALL = "write:all"
    DELETE_LIMITED = "delete:limited"
    MANAGE_USERS = "manage:users"

    # Resource grants
    READ_CUSTOMERS = "read:customers"
    WRITE_CUSTOMERS = "write:customers"
    READ_MESSAGES = "read:messages"
    READ_LEADS = "read:leads"
    WRITE_LEADS = "write:leads"
    READ_DASHBOARD = "read:dashboard"


# Map each role to its permissions
ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.SUPER_ADMIN: {Permission.ALL},
    Role.ADMIN: {
        Permission.READ_ALL,
        Permission.WRITE_ALL,
        Permission.DELETE_LIMITED,
        Permission.MANAGE_USERS,
    },
    Role.EDITOR: {
        Permission.READ_CUSTOMERS,
        Permission.WRITE_CUSTOMERS,
        Permission.READ_MESSAGES,
        Permission.READ_LEADS,
        Permission.WRITE_LEADS,
    },
    Role.VIEWER: {
        Permission.READ_CUSTOMERS,
        Permission.READ_MESSAGES,
        Permission.READ_LEADS,
        Permission.READ_DASHBOARD,
    },
}


@dataclass(frozen=True)
class RouteRule:
    """
    Route access rule.

    Attributes:
        methods: HTTP methods the rule covers
        roles: Roles allowed to use those methods
    """
    methods: FrozenSet[str]
    roles: FrozenSet[Role]


def _rule(methods: str, *roles: Role) -> RouteRule:
    return RouteRule(frozenset(methods.split()), frozenset(roles))


_ALL_ROLES = (Role.SUPER_ADMIN, Role.ADMIN, Role.EDITOR, Role.VIEWER)
_STAFF = (Role.SUPER_ADMIN, Role.ADMIN, Role.EDITOR)
_ADMINS = (Role.SUPER_ADMIN, Role.ADMIN)

# Keys are normalized paths: a trailing numeric segment becomes /[id]
ROUTE_PERMISSIONS: Dict[str, RouteRule] = {
    # User management
    "/api/users": _rule("GET POST PUT DELETE", *_ADMINS),
    "/api/users/[id]": _rule("GET PUT DELETE", *_ADMINS),
    "/api/users/update-role": _rule("PUT", *_ADMINS),

    # Business data
    "/api/customers": _rule("GET", *_ALL_ROLES),
    "/api/customers/[id]": _rule("GET PUT", *_STAFF),
    "/api/leads": _rule("GET POST PUT DELETE", *_ALL_ROLES),
    "/api/messages": _rule("GET POST", *_ALL_ROLES),
    "/api/messages/[id]": _rule("GET PUT DELETE", *_STAFF),

    # Session and navigation
    "/api/session": _rule("GET", *_ALL_ROLES),
    "/api/navigation": _rule("GET", *_ALL_ROLES),

    # Security monitoring
    "/api/security/dashboard": _rule("GET", *_ADMINS),
    "/api/security/alerts/[id]": _rule("PUT", *_ADMINS),

    # Pages
    "/dashboard": _rule("GET", *_ALL_ROLES),
    "/leads": _rule("GET", *_ALL_ROLES),
    "/customers": _rule("GET", *_ALL_ROLES),
    "/messages": _rule("GET", *_ALL_ROLES),
    "/users": _rule("GET", *_ADMINS),
    "/settings": _rule("GET", Role.SUPER_ADMIN),
}


NAVIGATION: Dict[Role, List[str]] = {
    Role.SUPER_ADMIN: ["dashboard", "leads", "customers", "messages", "users", "settings"],
    Role.ADMIN: ["dashboard", "leads", "customers", "messages", "users"],
    Role.EDITOR: ["dashboard", "leads", "customers", "messages"],
    Role.VIEWER: ["dashboard", "leads", "customers", "messages"],
}

_TRAILING_ID = re.compile(r"/\d+$")


def normalize_path(path: str) -> str:
    """
    Collapse a trailing numeric segment so one rule covers a resource family.

    "/api/users/42" becomes "/api/users/[id]".
    """
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return _TRAILING_ID.sub("/[id]", path)


def _as_role(role_id) -> Optional[Role]:
    try:
        return Role(int(role_id))
    except (TypeError, ValueError):
        return None


class PermissionChecker:
    """
    Checks whether a principal may perform an action.

    Args:
        route_permissions: Route table (default: ROUTE_PERMISSIONS)
        allow_unmapped_for_top_role: Let SUPER_ADMIN through routes with no rule
    """

    def __init__(
        self,
        route_permissions: Optional[Dict[str, RouteRule]] = None,
        allow_unmapped_for_top_role: bool = True,
    ):
        self.role_permissions = ROLE_PERMISSIONS
        self.route_permissions = ROUTE_PERMISSIONS if route_permissions is None else route_permissions
        self.allow_unmapped_for_top_role = allow_unmapped_for_top_role

    def get_role_permissions(self, role_id) -> Set[str]:
        """
        Get all permissions for a role.

        Args:
            role_id: Role identifier

        Returns:
            Set of permission strings, empty for unknown roles
        """
        role = _as_role(role_id)
        if role is None:
            return set()
        return {p.value for p in self.role_permissions.get(role, set())}

    def has_permission(self, principal: Principal, permission) -> bool:
        """
        Check if a principal's role grants a permission.

        Args:
            principal: Authenticated principal
            permission: Permission enum member or literal string

        Returns:
            bool: True if the role has the wildcard or the literal permission
        """
        granted = self.get_role_permissions(principal.role_id)
        wanted = permission.value if isinstance(permission, Permission) else str(permission)
        return Permission.ALL.value in granted or wanted in granted

    def get_rule(self, path: str) -> Optional[RouteRule]:
        return self.route_permissions.get(normalize_path(path))

    def can_access_route(self, principal: Principal, path: str, method: str) -> bool:
        """
        Check if a principal may call a route.

        Args:
            principal: Authenticated principal
            path: Request path
            method: HTTP method

        Returns:
            bool: True if the route rule admits the principal's role
        """
        role = _as_role(principal.role_id)
        if role is None:
            return False

        rule = self.get_rule(path)
        if rule is None:
            return self.allow_unmapped_for_top_role and role is Role.SUPER_ADMIN

        if method.upper() not in rule.methods:
            return False
        return role in rule.roles

    def required_roles(self, path: str, method: str) -> List[str]:
        """
        Names of the roles a route admits, for audit records.

        Returns:
            Role names, most privileged first (empty if the method is not allowed)
        """
        rule = self.get_rule(path)
        if rule is None:
            return [Role.SUPER_ADMIN.display_name] if self.allow_unmapped_for_top_role else []
        if method.upper() not in rule.methods:
            return []
        return [role.display_name for role in sorted(rule.roles)]

    @staticmethod
    def can_manage_role(manager_role_id, target_role_id) -> bool:
        """
        Check if one role may assign another.

        SUPER_ADMIN manages every role, ADMIN manages EDITOR and VIEWER,
        everyone else manages nothing.
        """
        manager = _as_role(manager_role_id)
        target = _as_role(target_role_id)
        if manager is None or target is None:
            return False
        if manager is Role.SUPER_ADMIN:
            return True
        if manager is Role.ADMIN:
            return target in (Role.EDITOR, Role.VIEWER)
        return False

    def get_role_details(self, role_id) -> Optional[Dict]:
        """Role id, name and permission list, or None for unknown roles."""
        role = _as_role(role_id)
        if role is None:
            return None
        return {
            "id": int(role),
            "name": role.display_name,
            "permissions": sorted(self.get_role_permissions(role)),
        }

    @staticmethod
    def get_navigation(role_id) -> List[str]:
        """Navigation entries visible to a role."""
        role = _as_role(role_id)
        return list(NAVIGATION.get(role, ["dashboard"]))

    def principal_for(self, user_id: str, email: str, role_id) -> Principal:
        """Build a principal whose permissions come from the current role table."""
        return Principal(
            user_id=user_id,
            email=email,
            role_id=int(role_id),
            permissions=frozenset(self.get_role_permissions(role_id)),
        )


class PermissionDeniedError(AuthorizationError):
    """
    Raised when a user attempts an action they don't have permission for.

    Attributes:
        user_id: The user who was denied
        action: The action that was denied
        required_permission: The permission that was required
    """

    def __init__(
        self,
        user_id: str,
        action: str,
        required_permission: Optional[str] = None,
    ):
        self.user_id = user_id
        self.action = action
        self.required_permission = required_permission

        log_message = f"User {user_id} denied permission for action: {action}"
        if required_permission:
            log_message += f" (requires: {required_permission})"
        self.log_message = log_message

        super().__init__("Insufficient permissions")


def require_permission(checker: PermissionChecker, principal: Principal, permission) -> None:
    """
    Require a permission, raising PermissionDeniedError if not authorized.

    Args:
        checker: Permission checker
        principal: The acting principal
        permission: The required permission

    Raises:
        PermissionDeniedError: If the role doesn't grant the permission
    """
    if not checker.has_permission(principal, permission):
        value = permission.value if isinstance(permission, Permission) else str(permission)
        raise PermissionDeniedError(
            user_id=principal.user_id,
            action=value,
            required_permission=value,
        )


def require_role_management(checker: PermissionChecker, principal: Principal, target_role_id) -> None:
    """
    Require that a principal may assign the target role.

    Raises:
        PermissionDeniedError: If the principal's role cannot manage the target
    """
    if not checker.can_manage_role(principal.role_id, target_role_id):
        raise PermissionDeniedError(
            user_id=principal.user_id,
            action=f"assign role {target_role_id}",
        )
