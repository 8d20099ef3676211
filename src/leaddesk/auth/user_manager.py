"""
User management: login, registration, token refresh and role changes.

Combines the user store, password manager, token handler and RBAC
checker, and records every outcome in the audit trail.
"""

from typing import List, Optional, Tuple

from loguru import logger

from ..errors import AuthenticationError, ConflictError, InvalidTokenError, NotFoundError
from ..security.audit import AuditAction, AuditCategory, AuditEvent, AuditLevel, AuditLogger
from .database import UserDatabase
from .jwt_handler import JWTHandler
from .models import Principal, User
from .password import PasswordManager
from .permissions import PermissionChecker, Role, require_role_management
from .validation import RegisterRequest


INVALID_CREDENTIALS = "Invalid email or password"


class UserManager:
    """
    High-level authentication operations.
    """

    def __init__(
        self,
        users: UserDatabase,
        passwords: PasswordManager,
        tokens: JWTHandler,
        checker: PermissionChecker,
        audit: AuditLogger,
    ):
        """
        Initialize user manager.

        Args:
            users: User account store
            passwords: Password hashing
            tokens: JWT issuing and verification
            checker: RBAC decisions
            audit: Audit trail
        """
        self.users = users
        self.passwords = passwords
        self.tokens = tokens
        self.checker = checker
        self.audit = audit

    def issue_token_pair(self, user: User) -> Tuple[str, str]:
        """
        Create an access/refresh token pair for a user.

        Returns:
            Tuple of (access_token, refresh_token)
        """
        access_token = self.tokens.create_access_token(
            user_id=user.user_id,
            email=user.email,
            role_id=user.role_id,
            permissions=sorted(self.checker.get_role_permissions(user.role_id)),
        )
        refresh_token = self.tokens.create_refresh_token(user.user_id)
        return access_token, refresh_token

    def login(
        self,
        email: str,
        password: str,
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, str, str]:
        """
        Authenticate user and issue tokens.

        Unknown accounts, inactive accounts and wrong passwords all fail
        with the same message after one bcrypt comparison.

        Args:
            email: Normalized email
            password: Plain text password
            ip_address: Client address for the audit trail
            user_agent: Client user agent for the audit trail

        Returns:
            Tuple of (user, access_token, refresh_token)

        Raises:
            AuthenticationError: If credentials are invalid
        """
        user = self.users.get_user_by_email(email)

        if user is None:
            self.passwords.verify_dummy(password)
            logger.warning(f"Login failed: user '{email}' not found")
            reason = "unknown account"
        elif not self.passwords.verify(password, user.password_hash):
            logger.warning(f"Login failed: invalid password for '{email}'")
            reason = "invalid password"
        elif not user.is_active:
            logger.warning(f"Login failed: user '{email}' is inactive")
            reason = "inactive account"
        else:
            reason = None

        if reason is not None:
            self.audit.log_authentication_attempt(
                email=email,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message=reason,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        access_token, refresh_token = self.issue_token_pair(user)
        self.audit.log_authentication_attempt(
            email=email,
            success=True,
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=user.user_id,
        )
        logger.info(f"User logged in: {email}")
        return user, access_token, refresh_token

    def register(
        self,
        request: RegisterRequest,
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> User:
        """
        Create a VIEWER account.

        Args:
            request: Validated registration body
            ip_address: Client address for the audit trail
            user_agent: Client user agent for the audit trail

        Returns:
            Created User

        Raises:
            ConflictError: If the email is already registered
            HashingError: If the password cannot be hashed
        """
        if self.users.email_exists(request.email):
            logger.warning(f"Registration rejected: '{request.email}' already registered")
            raise ConflictError("Email already registered")

        user = self.users.create_user(
            email=request.email,
            first_name=request.first_name,
            last_name=request.last_name,
            password_hash=self.passwords.hash(request.password),
            role_id=Role.VIEWER,
        )
        self.audit.log_data_modification(
            user_id=user.user_id,
            resource="users",
            resource_id=user.user_id,
            old_values=None,
            new_values={"email": user.email, "roleId": user.role_id},
            ip_address=ip_address,
            user_agent=user_agent,
            action=AuditAction.REGISTER,
        )
        return user

    def authenticate(self, access_token: str) -> Principal:
        """
        Verify an access token and build the principal.

        Raises:
            InvalidTokenError: If the token does not verify
        """
        payload = self.tokens.verify_access_token(access_token)
        return self.checker.principal_for(payload.user_id, payload.email, payload.role_id)

    def refresh_access_token(
        self,
        refresh_token: str,
        ip_address: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> Tuple[User, str]:
        """
        Mint a new access token from a refresh token.

        Args:
            refresh_token: Refresh token string
            ip_address: Client address for the audit trail
            user_agent: Client user agent for the audit trail

        Returns:
            Tuple of (user, new_access_token)

        Raises:
            InvalidTokenError: If the token is invalid or the user is gone or inactive
        """
        user_id = self.tokens.verify_refresh_token(refresh_token)
        user = self.users.get_user_by_id(user_id)
        if user is None or not user.is_active:
            logger.warning("Refresh rejected: user not found or inactive")
            raise InvalidTokenError("Invalid or expired refresh token")

        access_token, _ = self.issue_token_pair(user)
        self.audit.log_event(AuditEvent(
            action=AuditAction.TOKEN_REFRESH,
            category=AuditCategory.AUTHENTICATION,
            level=AuditLevel.INFO,
            resource="users",
            success=True,
            user_id=user.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        logger.debug(f"Access token refreshed for user {user.email}")
        return user, access_token

    def list_users(self) -> List[User]:
        return self.users.list_users()

    def assign_role(
        self,
        actor: Principal,
        user_id: str,
        role_id: int,
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> User:
        """
        Change another user's role.

        The actor must be able to manage both the user's current role and
        the new one.

        Raises:
            NotFoundError: If the user does not exist
            PermissionDeniedError: If the actor may not make this change
        """
        user = self.users.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")

        require_role_management(self.checker, actor, user.role_id)
        require_role_management(self.checker, actor, role_id)

        self.users.update_role(user_id, role_id)
        self.audit.log_data_modification(
            user_id=actor.user_id,
            resource="users",
            resource_id=user_id,
            old_values={"roleId": user.role_id},
            new_values={"roleId": int(role_id)},
            ip_address=ip_address,
            user_agent=user_agent,
            action=AuditAction.ROLE_CHANGE,
        )
        user.role_id = int(role_id)
        return user
