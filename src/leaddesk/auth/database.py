"""
User account store.

All statements go through a QueryExecutor with bound parameters.
"""

import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from ..db import QueryExecutor
from ..errors import ConflictError
from .models import User
from .permissions import Role


_USER_COLUMNS = "user_id, email, first_name, last_name, password_hash, role_id, is_active, created_at"


def _row_to_user(row: Dict) -> User:
    return User(
        user_id=row["user_id"],
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        password_hash=row["password_hash"],
        role_id=int(row["role_id"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        is_active=bool(row["is_active"]),
    )


class UserDatabase:
    """
    User accounts backed by the shared query executor.
    """

    def __init__(self, executor: QueryExecutor):
        """
        Initialize store.

        Args:
            executor: Parameterized query executor
        """
        self.executor = executor

    # ========================================================================
    # User Operations
    # ========================================================================

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        password_hash: str,
        role_id: int = Role.VIEWER,
    ) -> User:
        """
        Insert a new user.

        Args:
            email: Unique, normalized email
            first_name: Given name
            last_name: Family name
            password_hash: Already hashed password
            role_id: Role for RBAC (default: VIEWER)

        Returns:
            Created User object

        Raises:
            ConflictError: If the email is already registered
        """
        user = User(
            user_id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            role_id=int(role_id),
            created_at=datetime.now(timezone.utc),
            is_active=True,
        )

        try:
            self.executor.execute_query(
                f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    user.user_id,
                    user.email,
                    user.first_name,
                    user.last_name,
                    user.password_hash,
                    user.role_id,
                    1,
                    user.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError("Email already registered") from e

        logger.info(f"Created user: {email} (role: {user.role_id})")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Get user by email.

        Args:
            email: Normalized email

        Returns:
            User object or None if not found
        """
        rows = self.executor.execute_query(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,)
        )
        return _row_to_user(rows[0]) if rows else None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        """
        Get user by ID.

        Args:
            user_id: User UUID

        Returns:
            User object or None if not found
        """
        rows = self.executor.execute_query(
            f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = ?", (user_id,)
        )
        return _row_to_user(rows[0]) if rows else None

    def email_exists(self, email: str) -> bool:
        rows = self.executor.execute_query("SELECT 1 FROM users WHERE email = ?", (email,))
        return bool(rows)

    def list_users(self) -> List[User]:
        """All users, oldest first."""
        rows = self.executor.execute_query(
            f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at"
        )
        return [_row_to_user(row) for row in rows]

    def update_role(self, user_id: str, role_id: int) -> None:
        """Change a user's role."""
        self.executor.execute_query(
            "UPDATE users SET role_id = ? WHERE user_id = ?", (int(role_id), user_id)
        )
        logger.info(f"Updated role for user {user_id} to {role_id}")

    def deactivate_user(self, user_id: str) -> None:
        self.executor.execute_query("UPDATE users SET is_active = 0 WHERE user_id = ?", (user_id,))
        logger.info(f"Deactivated user: {user_id}")
