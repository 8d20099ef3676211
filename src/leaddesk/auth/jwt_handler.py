"""
JWT token generation and validation.

Access and refresh tokens are signed with separate secrets and carry
separate lifetimes. Both are verified for signature, issuer, audience
and expiry together.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import jwt
from loguru import logger

from ..errors import InvalidTokenError


ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)

REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud"]


@dataclass
class TokenPayload:
    """
    Decoded access token claims.

    Attributes:
        user_id: User UUID
        email: User email
        role_id: Role identifier
        permissions: Permission strings at issue time
        iat: Issued at timestamp
        exp: Expiration timestamp
    """
    user_id: str
    email: str
    role_id: int
    permissions: List[str] = field(default_factory=list)
    iat: Optional[datetime] = None
    exp: Optional[datetime] = None


class JWTHandler:
    """
    JWT token handler.

    Creates and validates access and refresh tokens.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        issuer: str = "leaddesk",
        audience: str = "leaddesk-users",
        access_ttl: timedelta = ACCESS_TOKEN_TTL,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
        algorithm: str = ALGORITHM,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize handler.

        Args:
            access_secret: Secret for signing access tokens
            refresh_secret: Secret for signing refresh tokens
            issuer: `iss` claim
            audience: `aud` claim
            access_ttl: Access token lifetime
            refresh_ttl: Refresh token lifetime
            algorithm: JWT algorithm (default: HS256)
            clock: Returns the current epoch time, used for `iat`/`exp`
        """
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")

        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.algorithm = algorithm
        self.clock = clock

    @classmethod
    def from_settings(cls, settings) -> "JWTHandler":
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
        )

    def _registered_claims(self, ttl: timedelta) -> Dict:
        now = int(self.clock())
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
        }

    def create_access_token(
        self,
        user_id: str,
        email: str,
        role_id: int,
        permissions: List[str]
    ) -> str:
        """
        Create JWT access token.

        Args:
            user_id: User UUID
            email: User email
            role_id: Role identifier
            permissions: Permission names derived from the role

        Returns:
            JWT token string
        """
        payload = {
            "userId": user_id,
            "email": email,
            "roleId": role_id,
            "permissions": list(permissions),
            **self._registered_claims(self.access_ttl),
        }

        token = jwt.encode(payload, self.access_secret, algorithm=self.algorithm)
        logger.debug(f"Access token created for user {user_id}")

        return token

    def create_refresh_token(self, user_id: str) -> str:
        """
        Create refresh token (long-lived).

        Args:
            user_id: User UUID

        Returns:
            JWT refresh token string
        """
        payload = {"userId": user_id, **self._registered_claims(self.refresh_ttl)}
        return jwt.encode(payload, self.refresh_secret, algorithm=self.algorithm)

    def _decode(self, token: str, secret: str, kind: str) -> Dict:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as e:
            logger.warning(f"{kind.capitalize()} token has expired")
            raise InvalidTokenError(f"Invalid or expired {kind} token") from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid {kind} token: {e}")
            raise InvalidTokenError(f"Invalid or expired {kind} token") from e

    def verify_access_token(self, token: str) -> TokenPayload:
        """
        Verify and decode an access token.

        Args:
            token: JWT token string

        Returns:
            TokenPayload with the embedded claims

        Raises:
            InvalidTokenError: On bad signature, issuer, audience, expiry or claims
        """
        payload = self._decode(token, self.access_secret, "access")
        try:
            return TokenPayload(
                user_id=str(payload["userId"]),
                email=str(payload["email"]),
                role_id=int(payload["roleId"]),
                permissions=list(payload.get("permissions", [])),
                iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Access token missing identity claims: {e}")
            raise InvalidTokenError("Invalid or expired access token") from e

    def verify_refresh_token(self, token: str) -> str:
        """
        Verify a refresh token.

        Args:
            token: JWT refresh token string

        Returns:
            The user ID carried by the token

        Raises:
            InvalidTokenError: On bad signature, issuer, audience, expiry or claims
        """
        payload = self._decode(token, self.refresh_secret, "refresh")
        user_id = payload.get("userId")
        if not user_id:
            raise InvalidTokenError("Invalid or expired refresh token")
        return str(user_id)

    def decode_without_verification(self, token: str) -> Optional[Dict]:
        """
        Decode token without verifying (for inspection only).

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict, or None on error

        Warning:
            This method does NOT verify the token signature.
            Only use for debugging/inspection purposes.
        """
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.DecodeError as e:
            logger.error(f"Failed to decode token: {e}")
            return None

    def get_token_expiration(self, token: str) -> Optional[datetime]:
        """Expiry of a token without verifying it, or None."""
        payload = self.decode_without_verification(token)
        if payload and "exp" in payload:
            return datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        return None
