"""
User authentication data models.

Data classes for stored user accounts and the per-request principal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet


@dataclass
class User:
    """
    User account.

    Attributes:
        user_id: Unique user identifier (UUID)
        email: Unique, lowercased email address
        first_name: Given name
        last_name: Family name
        password_hash: Bcrypt hashed password
        role_id: Role identifier (see permissions.Role)
        created_at: Account creation timestamp
        is_active: Whether account is active
    """
    user_id: str
    email: str
    first_name: str
    last_name: str
    password_hash: str
    role_id: int
    created_at: datetime
    is_active: bool = True

    def to_public_dict(self) -> Dict:
        """Serializable view without the password hash."""
        return {
            "id": self.user_id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "roleId": self.role_id,
        }


@dataclass(frozen=True)
class Principal:
    """
    Authenticated actor for the duration of one request.

    Materialized from a verified access token, never persisted.

    Attributes:
        user_id: Stable user identifier
        email: User email
        role_id: Role identifier
        permissions: Capability strings derived from the role
    """
    user_id: str
    email: str
    role_id: int
    permissions: FrozenSet[str] = field(default_factory=frozenset)
