"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      signing key and token lifetimes are process-wide and never mutated after
      startup.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a key with a warning,
      production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing relies
  on key entropy -- a short key makes access tokens forgeable.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. Running with a random key would silently invalidate every
  access token on restart.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("marketplace.config")


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
    database_url: str = "sqlite:///marketplace_auth.db"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=3600, gt=0)
    refresh_token_ttl_days: int = Field(default=7, gt=0)
    reset_token_ttl_minutes: int = Field(default=10, gt=0)
    # Upper bound on the number of links followed when walking a refresh
    # token lineage. A longer chain is treated as corrupted data.
    max_refresh_chain_length: int = Field(default=10000, gt=0)

    # ------------------------------------------------------------------
    # Passwords and registration
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    default_role: str = "seller"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Access tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Access tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.default_role not in ("admin", "seller", "user"):
            raise ValueError(f"DEFAULT_ROLE must be one of admin, seller, user (got {self.default_role!r}).")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
