"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the MDM backend happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      process entry points (api/main.py lifespan, main.py CLI) call it. The
      services receive the Settings instance through their constructors, so
      tests can build isolated configurations without touching the cache.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. token_expiration_days -> TOKEN_EXPIRATION_DAYS).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Used to reject token lengths that would weaken the 256-bit
      entropy floor.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
audit/, devices/, or commands/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("mdm.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'mdm.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    log_level: str = "INFO"
    version: str = "1.0.0"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound on waiting for a row/table lock before StoreBusy is raised.
    db_lock_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Device tokens
    # ------------------------------------------------------------------

    # Hex characters. 64 hex chars = 32 random bytes = 256 bits.
    token_length: int = 64
    # Absolute lifetime from issuance. No sliding renewal.
    token_expiration_days: int = 365

    # ------------------------------------------------------------------
    # Check-in and commands
    # ------------------------------------------------------------------

    poll_interval_seconds: int = 300
    expiry_sweep_seconds: int = 300
    stale_after_minutes: int = 60
    # "queue": tracked command lifecycle. "whitelist": latest-wins whitelist rows.
    command_mode: Literal["queue", "whitelist"] = "queue"

    # ------------------------------------------------------------------
    # Actors
    # ------------------------------------------------------------------

    default_admin_actor: str = "admin"
    system_actor: str = "mdm-backend"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_token_policy(self) -> "Settings":
        """Reject token and timing settings that break the device contract.

        token_length is counted in hex characters, so it must be even (two
        characters per random byte) and at least 64 (256 bits of entropy).
        """
        if self.token_length < 64 or self.token_length % 2:
            raise ValueError("TOKEN_LENGTH must be an even number of hex characters, at least 64.")
        if self.token_expiration_days < 1:
            raise ValueError("TOKEN_EXPIRATION_DAYS must be at least 1.")
        if self.expiry_sweep_seconds < 1:
            raise ValueError("EXPIRY_SWEEP_SECONDS must be at least 1.")
        if self.debug:
            logger.warning("DEBUG mode enabled -- do not run like this in production.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: construct Settings(...) directly and pass it to the services, or
    call get_settings.cache_clear() after changing environment variables.
    """
    return Settings()
