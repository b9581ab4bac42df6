"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. access_token_ttl_seconds -> ACCESS_TOKEN_TTL_SECONDS). Type
      coercion and bounds checks are built in.

  @model_validator(mode="after"): enforces the secret policy once every
      field is resolved. Dev mode generates throwaway secrets with a warning,
      production mode refuses to start without them.

Security notes:
  SECRET_KEY signs every JWT; PEPPER is mixed into every password hash. They
  are independent secrets: leaking one must not weaken the other. Both must
  be at least 32 characters (256 bits of entropy when randomly generated).

  Argon2id cost floors (64 MiB, 3 passes, 2 lanes) are enforced by Field
  bounds so a mistyped env var cannot silently weaken password storage.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantauth.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file, as long as DEBUG=true or both
    secrets are provided.
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
    # Empty string is the sentinel for "not configured". The validator below
    # either generates a dev value or raises, so callers never see "".
    secret_key: str = ""
    pepper: str = ""
    database_url: str = "sqlite:///tenantauth.db"
    db_timeout_seconds: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------
    # Bearer tokens
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_ttl_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Browser sessions
    # ------------------------------------------------------------------

    session_idle_timeout_seconds: int = Field(default=30 * 60, gt=0)
    session_absolute_timeout_seconds: int = Field(default=12 * 60 * 60, gt=0)
    session_cookie_name: str = "sid"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Lockout and rate limiting
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, ge=1)
    lockout_window_seconds: int = Field(default=15 * 60, gt=0)
    source_throttle_threshold: int = Field(default=50, ge=1)
    login_rate_limit: str = "10/minute"
    login_attempt_retention_days: int = Field(default=90, ge=1)

    # ------------------------------------------------------------------
    # Password hashing (Argon2id)
    # ------------------------------------------------------------------

    argon2_memory_cost: int = Field(default=64 * 1024, ge=64 * 1024)  # KiB
    argon2_time_cost: int = Field(default=3, ge=3)
    argon2_parallelism: int = Field(default=2, ge=2)
    hash_workers: int = Field(default=4, ge=1)
    hash_timeout_seconds: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------
    # Permission cache and maintenance
    # ------------------------------------------------------------------

    permission_cache_ttl_seconds: int = Field(default=15 * 60, gt=0)
    cache_namespace: str = "default"
    sweep_interval_seconds: int = Field(default=60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the SECRET_KEY / PEPPER policy.

        Dev mode (DEBUG=true): auto-generate random values with a warning.
            Tokens will not survive restart and stored password hashes will
            stop verifying once the generated pepper is gone -- acceptable
            for local dev only.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject values shorter than 32 characters.
        """
        for name in ("secret_key", "pepper"):
            value = getattr(self, name)
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning("WARNING: Using auto-generated %s. Do not use in production.", name.upper())
                    continue
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    f"Set {name.upper()} in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.secret_key == self.pepper:
            raise ValueError("SECRET_KEY and PEPPER must be different values.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
