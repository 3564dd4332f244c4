"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for idcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Services
      accept an explicit Settings instance so tests can build their own
      without touching the cached singleton.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      policy and to check DEFAULT_ROLE against ALLOWED_ROLES.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs every
       session token, confirmation token, and refresh-secret HMAC.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or notify/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("idcore.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///idcore.db"

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "idcore"
    jwt_audience: str = "idcore-clients"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    confirmation_token_expire_hours: int = 24
    # Base address the confirmation link in outgoing mail points at.
    confirmation_base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    allowed_roles: list[str] = ["Admin", "Mentor", "User"]
    default_role: str = "User"

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = 3
    lockout_base_minutes: int = 5
    # 0 means unbounded backoff growth.
    lockout_max_multiplier: int = 0

    # ------------------------------------------------------------------
    # Mail (empty SMTP_HOST = log-only notifier)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "no-reply@localhost"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_roles(self) -> "Settings":
        """DEFAULT_ROLE must be one of ALLOWED_ROLES (case-insensitive)."""
        if not self.allowed_roles:
            raise ValueError("ALLOWED_ROLES must name at least one role.")
        if self.default_role.lower() not in {r.lower() for r in self.allowed_roles}:
            raise ValueError(f"DEFAULT_ROLE {self.default_role!r} is not in ALLOWED_ROLES {self.allowed_roles!r}.")
        if self.lockout_threshold < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
