"""
Password hashing and strength policy.

Hashing uses bcrypt with a fixed work factor. Strength validation
reports every violated rule at once.
"""

import re
from dataclasses import dataclass, field
from typing import List

import bcrypt
from loguru import logger

from ..config import MIN_BCRYPT_ROUNDS
from ..errors import HashingError


MIN_LENGTH = 8
MAX_LENGTH = 128
# bcrypt only reads the first 72 bytes; newer releases reject longer input
BCRYPT_MAX_BYTES = 72

_SYMBOL = re.compile(r"[^A-Za-z0-9]")


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


@dataclass
class PasswordStrength:
    """
    Result of a strength check.

    Attributes:
        is_valid: True when no rule is violated
        errors: Messages for every violated rule
    """
    is_valid: bool
    errors: List[str] = field(default_factory=list)


class PasswordManager:
    """Hashes, verifies and validates user passwords."""

    def __init__(self, rounds: int = 12):
        """
        Initialize manager.

        Args:
            rounds: bcrypt cost factor (at least 10)

        Raises:
            ValueError: If rounds is below the minimum
        """
        if rounds < MIN_BCRYPT_ROUNDS:
            raise ValueError(f"bcrypt rounds must be >= {MIN_BCRYPT_ROUNDS}, got {rounds}")
        self.rounds = rounds
        # Verified against when the account does not exist, so both
        # failure paths cost one bcrypt comparison.
        self._dummy_hash = self.hash("dummy-password-for-timing")

    def hash(self, password: str) -> str:
        """
        Hash a password.

        Args:
            password: Plain text password

        Returns:
            bcrypt hash string

        Raises:
            HashingError: If the bcrypt primitive fails
        """
        try:
            return bcrypt.hashpw(
                _encode(password),
                bcrypt.gensalt(rounds=self.rounds)
            ).decode("utf-8")
        except (ValueError, TypeError) as e:
            logger.error(f"Password hashing failed: {e}")
            raise HashingError("Failed to hash password") from e

    def verify(self, password: str, password_hash: str) -> bool:
        """
        Check a password against a stored hash.

        Args:
            password: Plain text password
            password_hash: Stored bcrypt hash

        Returns:
            True on match, False on mismatch

        Raises:
            HashingError: If the stored hash is malformed
        """
        try:
            return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
        except (ValueError, TypeError) as e:
            logger.error(f"Password verification failed: {e}")
            raise HashingError("Failed to verify password") from e

    def verify_dummy(self, password: str) -> bool:
        """Burn one comparison for an unknown account. Always False."""
        self.verify(password, self._dummy_hash)
        return False

    @staticmethod
    def validate_strength(password: str) -> PasswordStrength:
        """
        Validate a password against the strength policy.

        Args:
            password: Candidate password

        Returns:
            PasswordStrength listing every violated rule
        """
        errors = []
        if len(password) < MIN_LENGTH:
            errors.append(f"Password must be at least {MIN_LENGTH} characters long")
        if not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", password):
            errors.append("Password must contain at least one number")
        if not _SYMBOL.search(password):
            errors.append("Password must contain at least one special character")
        if len(password) > MAX_LENGTH:
            errors.append(f"Password must not exceed {MAX_LENGTH} characters")

        return PasswordStrength(is_valid=not errors, errors=errors)
