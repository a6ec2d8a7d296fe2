"""
core/config.py -- Account service configuration via pydantic-settings.

All environment variable reads for the account service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

How it is loaded:
  get_settings() is wrapped in lru_cache, so Settings is built once on first
      use and shared afterwards. FastAPI dependencies and the app factory both
      go through it.

  Settings is a BaseSettings model: each field is read from the upper-cased
      environment variable of the same name (lockout_threshold ->
      LOCKOUT_THRESHOLD) or from an optional .env file, with pydantic doing
      the coercion and range checks.

  The after-validator runs once every field is resolved. Dev mode generates a
      signing key with a warning; production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies on
  key entropy -- a short key makes HS256 tokens forgeable by brute force.

  BCRYPT_ROUNDS below 12 is rejected outside dev mode. The test suite runs with
  DEBUG=true so it can use the bcrypt minimum (4) and stay fast.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or users/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accounts.config")

_MIN_PRODUCTION_ROUNDS = 12


class Settings(BaseSettings):
    """Account service settings.

    Every field has a default, so tests can build Settings() with no .env
    file present. validate_secrets() applies the production rules at startup.
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

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///accounts.db"
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    lockout_threshold: int = Field(default=5, ge=1)
    lockout_duration_seconds: int = Field(default=2 * 60 * 60, ge=1)
    lockout_update_retries: int = Field(default=3, ge=1)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=15 * 60, ge=1)
    refresh_token_expire_days: int = Field(default=30, ge=1)
    max_sessions_per_account: int = Field(default=10, ge=1)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce SECRET_KEY and cost-factor policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing, and refuse a bcrypt cost below 12.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.debug and self.bcrypt_rounds < _MIN_PRODUCTION_ROUNDS:
            raise ValueError(f"BCRYPT_ROUNDS must be at least {_MIN_PRODUCTION_ROUNDS} in production mode.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
