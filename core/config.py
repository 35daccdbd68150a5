"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for Marquee happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. provider_endpoint -> PROVIDER_ENDPOINT).

  @model_validator(mode="after"): Cross-field validation once all fields are
      resolved. Production mode refuses to start against a plain-http identity
      provider or without a project id; debug mode only warns.

Layer rule: core/ is the kernel. This module may not import from auth/ or cache/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("marquee.config")

_DATA_DIR = Path.home() / ".marquee"


class Settings(BaseSettings):
    """Session core settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file.
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

    # ------------------------------------------------------------------
    # Identity provider (Credential Store)
    # ------------------------------------------------------------------

    provider_endpoint: str = "https://cloud.appwrite.io/v1"
    # Empty string is the sentinel for "not configured".
    provider_project_id: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # User Directory + Session Record Store. Any SQLAlchemy URL.
    database_url: str = f"sqlite:///{_DATA_DIR / 'marquee_sessions.db'}"
    # Device-local cache of the authenticated user (sqlite3 file).
    local_cache_path: str = str(_DATA_DIR / "marquee_cache.db")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_ttl_days: int = 30
    # Passive drift detection period for SessionContext, in seconds.
    session_validation_interval: float = 300.0
    # Upper bound on any single remote call. The provider SDK had none.
    remote_timeout_seconds: float = 10.0
    min_password_length: int = 6

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_provider(self) -> "Settings":
        """Enforce the identity provider policy.

        Production mode (DEBUG=false or not set): the provider endpoint must be
            https and PROVIDER_PROJECT_ID must be set. Passwords travel to this
            endpoint, so plain http is refused outright.

        Dev mode (DEBUG=true): both rules downgrade to warnings so a local
            emulator on http://localhost works.

        Both modes: TTL, validation interval and timeout must be positive.
        """
        if self.session_ttl_days <= 0:
            raise ValueError("SESSION_TTL_DAYS must be a positive number of days.")
        if self.session_validation_interval <= 0:
            raise ValueError("SESSION_VALIDATION_INTERVAL must be positive.")
        if self.remote_timeout_seconds <= 0:
            raise ValueError("REMOTE_TIMEOUT_SECONDS must be positive.")
        if self.min_password_length < 1:
            raise ValueError("MIN_PASSWORD_LENGTH must be at least 1.")

        insecure = not self.provider_endpoint.startswith("https://")
        if self.debug:
            if insecure:
                logger.warning("WARNING: identity provider endpoint is not https: %s", self.provider_endpoint)
            if not self.provider_project_id:
                logger.warning("WARNING: PROVIDER_PROJECT_ID is not set. Provider calls will be rejected.")
        else:
            if insecure:
                raise ValueError(
                    "PROVIDER_ENDPOINT must use https in production mode. "
                    "To run against a local emulator, set DEBUG=true."
                )
            if not self.provider_project_id:
                raise ValueError(
                    "PROVIDER_PROJECT_ID is required in production mode. "
                    "Set it in your environment or .env file."
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
