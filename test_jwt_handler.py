"""
Unit tests for access and refresh token handling.
"""

import time
from datetime import timedelta

import jwt
import pytest

from leaddesk.auth.jwt_handler import JWTHandler
from leaddesk.errors import AuthenticationError, InvalidTokenError

from conftest import ACCESS_SECRET, REFRESH_SECRET


@pytest.fixture
def handler():
    return JWTHandler(ACCESS_SECRET, REFRESH_SECRET)


def make_claims(**overrides):
    claims = {
        "user_id": "6f1c2d0e-0000-4000-8000-000000000001",
        "email": "ada@example.com",
        "role_id": 2,
        "permissions": ["read:all", "write:all"],
    }
    claims.update(overrides)
    return claims


class TestAccessTokens:
    """Test access token issue and verification."""

    @pytest.mark.parametrize("claims", [
        make_claims(),
        make_claims(role_id=1, permissions=["*"]),
        make_claims(email="o'neil+tag@sub.example.org", permissions=[]),
        make_claims(user_id="x" * 64, role_id=4),
    ])
    def test_round_trip(self, handler, claims):
        """Test that verify(issue(C)) returns C."""
        payload = handler.verify_access_token(handler.create_access_token(**claims))

        assert payload.user_id == claims["user_id"]
        assert payload.email == claims["email"]
        assert payload.role_id == claims["role_id"]
        assert payload.permissions == claims["permissions"]

    def test_wire_claims(self, handler):
        """Test the claim names and lifetime on the wire."""
        token = handler.create_access_token(**make_claims())
        claims = handler.decode_without_verification(token)

        assert claims["userId"] == make_claims()["user_id"]
        assert claims["roleId"] == 2
        assert claims["iss"] == "leaddesk"
        assert claims["aud"] == "leaddesk-users"
        assert claims["exp"] - claims["iat"] == 15 * 60
        assert jwt.get_unverified_header(token)["alg"] == "HS256"

    def test_deterministic(self):
        """Test that identical claims, time and secret give identical tokens."""
        fixed = JWTHandler(ACCESS_SECRET, REFRESH_SECRET, clock=lambda: 1_700_000_000)

        assert fixed.create_access_token(**make_claims()) == fixed.create_access_token(**make_claims())

    def test_expired_token(self):
        """Test that a token whose exp has passed fails verification."""
        issued_long_ago = JWTHandler(
            ACCESS_SECRET, REFRESH_SECRET, clock=lambda: time.time() - 3600
        )
        token = issued_long_ago.create_access_token(**make_claims())

        with pytest.raises(AuthenticationError, match="Invalid or expired access token"):
            issued_long_ago.verify_access_token(token)

    def test_wrong_issuer(self, handler):
        """Test that a token from another issuer is rejected."""
        other = JWTHandler(ACCESS_SECRET, REFRESH_SECRET, issuer="someone-else")
        with pytest.raises(InvalidTokenError):
            handler.verify_access_token(other.create_access_token(**make_claims()))

    def test_wrong_audience(self, handler):
        """Test that a token for another audience is rejected."""
        other = JWTHandler(ACCESS_SECRET, REFRESH_SECRET, audience="another-app")
        with pytest.raises(InvalidTokenError):
            handler.verify_access_token(other.create_access_token(**make_claims()))

    def test_tampered_token(self, handler):
        """Test that swapping in other claims breaks the signature."""
        token = handler.create_access_token(**make_claims())
        header, _, signature = token.split(".")
        forged_claims = handler.create_access_token(**make_claims(role_id=1)).split(".")[1]
        tampered = ".".join([header, forged_claims, signature])

        with pytest.raises(InvalidTokenError):
            handler.verify_access_token(tampered)

    def test_garbage(self, handler):
        """Test that a non-JWT string is rejected."""
        with pytest.raises(InvalidTokenError):
            handler.verify_access_token("not.a.token")


class TestRefreshTokens:
    """Test refresh tokens and secret isolation."""

    def test_refresh_carries_only_user_id(self, handler):
        """Test refresh token claims and lifetime."""
        token = handler.create_refresh_token("user-1")
        claims = handler.decode_without_verification(token)

        assert set(claims) == {"userId", "iss", "aud", "iat", "exp"}
        assert claims["exp"] - claims["iat"] == int(timedelta(days=7).total_seconds())
        assert handler.verify_refresh_token(token) == "user-1"

    def test_refresh_token_rejected_as_access(self, handler):
        """Test that a refresh token never verifies as an access token."""
        with pytest.raises(InvalidTokenError):
            handler.verify_access_token(handler.create_refresh_token("user-1"))

    def test_access_token_rejected_as_refresh(self, handler):
        """Test that an access token never verifies as a refresh token."""
        with pytest.raises(InvalidTokenError):
            handler.verify_refresh_token(handler.create_access_token(**make_claims()))

    def test_identical_secrets_refused(self):
        """Test that one secret cannot serve both token kinds."""
        with pytest.raises(ValueError, match="must differ"):
            JWTHandler("same-secret", "same-secret")


class TestInspection:
    """Test unverified helpers."""

    def test_get_token_expiration(self, handler):
        """Test reading exp without verification."""
        token = handler.create_access_token(**make_claims())
        expires = handler.get_token_expiration(token)

        assert expires is not None
        assert abs(expires.timestamp() - (time.time() + 15 * 60)) < 5

    def test_decode_garbage(self, handler):
        """Test that undecodable input yields None."""
        assert handler.decode_without_verification("garbage") is None
        assert handler.get_token_expiration("garbage") is None
