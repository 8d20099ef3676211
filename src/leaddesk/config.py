"""
Application configuration.

Settings are read once at startup and passed to every component that
needs them. Nothing in the package reads the environment on its own.
"""

import os
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Literal, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError


MIN_BCRYPT_ROUNDS = 10


class Settings(BaseModel):
    """
    Validated process configuration.

    Attributes:
        environment: "development" or "production"
        access_token_secret: HMAC secret for access tokens
        refresh_token_secret: HMAC secret for refresh tokens (must differ)
        token_issuer: `iss` claim written and required on every token
        token_audience: `aud` claim written and required on every token
        access_token_ttl: Access token lifetime
        refresh_token_ttl: Refresh token lifetime
        bcrypt_rounds: bcrypt work factor
        database_path: SQLite database file
        db_pool_size: Maximum number of live database connections
        host: Bind address for the HTTP server
        port: Bind port for the HTTP server
        audit_retention_days: Audit rows older than this are purged
        monitoring_interval_seconds: Alert sweep period, 0 disables it
        log_level: loguru level for the stderr sink
        trust_proxy_headers: Take the client address from forwarding headers
            (only behind a reverse proxy that overwrites them)
    """

    environment: Literal["development", "production"] = "development"
    access_token_secret: Optional[str] = None
    refresh_token_secret: Optional[str] = None
    token_issuer: str = "leaddesk"
    token_audience: str = "leaddesk-users"
    access_token_ttl: timedelta = timedelta(minutes=15)
    refresh_token_ttl: timedelta = timedelta(days=7)
    bcrypt_rounds: int = Field(default=12, ge=MIN_BCRYPT_ROUNDS, le=31)
    database_path: Path = Path("data/leaddesk.db")
    db_pool_size: int = Field(default=10, ge=1)
    host: str = "0.0.0.0"
    port: int = 8080
    audit_retention_days: int = Field(default=90, ge=1)
    monitoring_interval_seconds: float = Field(default=300, ge=0)
    log_level: str = "INFO"
    trust_proxy_headers: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @model_validator(mode="after")
    def check_secrets(self) -> "Settings":
        missing = [
            name
            for name in ("access_token_secret", "refresh_token_secret")
            if not getattr(self, name)
        ]
        if missing and self.is_production:
            raise ConfigurationError(
                f"Missing required secrets in production: {', '.join(missing)}"
            )
        for name in missing:
            # Ephemeral secrets: tokens do not survive a restart
            logger.warning(f"{name} not configured, generating an ephemeral secret")
            setattr(self, name, secrets.token_urlsafe(64))

        if self.access_token_secret == self.refresh_token_secret:
            raise ConfigurationError("Access and refresh token secrets must differ")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Validated Settings

        Raises:
            ConfigurationError: If a value is invalid or secrets are missing in production
        """
        env = os.environ if environ is None else environ
        try:
            return cls(**cls._read_env(env))
        except (PydanticValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @staticmethod
    def _read_env(env: Mapping[str, str]) -> dict:
        return {
            "environment": env.get("APP_ENV", "development"),
            "access_token_secret": env.get("JWT_SECRET") or None,
            "refresh_token_secret": env.get("JWT_REFRESH_SECRET") or None,
            "token_issuer": env.get("JWT_ISSUER", "leaddesk"),
            "token_audience": env.get("JWT_AUDIENCE", "leaddesk-users"),
            "access_token_ttl": timedelta(minutes=int(env.get("ACCESS_TOKEN_TTL_MINUTES", "15"))),
            "refresh_token_ttl": timedelta(days=int(env.get("REFRESH_TOKEN_TTL_DAYS", "7"))),
            "bcrypt_rounds": int(env.get("BCRYPT_ROUNDS", "12")),
            "database_path": Path(env.get("DATABASE_PATH", "data/leaddesk.db")),
            "db_pool_size": int(env.get("DB_POOL_SIZE", "10")),
            "host": env.get("HOST", "0.0.0.0"),
            "port": int(env.get("PORT", "8080")),
            "audit_retention_days": int(env.get("AUDIT_RETENTION_DAYS", "90")),
            "monitoring_interval_seconds": float(env.get("MONITORING_INTERVAL_SECONDS", "300")),
            "log_level": env.get("LOG_LEVEL", "INFO"),
            "trust_proxy_headers": env.get("TRUST_PROXY_HEADERS", "false").strip().lower() in ("1", "true", "yes"),
        }
