"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for BankDVWA happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_idle_timeout -> SESSION_IDLE_TIMEOUT).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Enforces the SECRET_KEY policy and checks that the configured
      default security level is one of the four recognized levels.

Security notes:
  SECRET_KEY keys the HMAC that hides session ids in the session table. A key
  shorter than 32 chars is rejected outright. In production mode (DEBUG not
  set or false) a missing SECRET_KEY is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, security/, sessions/, or bank/.
"""

import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.models import KNOWN_VULNERABILITIES, Level

logger = logging.getLogger("bankdvwa.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'bankdvwa.db'}"
_DEFAULT_SESSION_DB = str(Path(__file__).resolve().parent.parent / "bankdvwa_sessions.db")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_db_path: str = _DEFAULT_SESSION_DB
    session_cookie_name: str = "bankdvwa_session"
    secure_cookies: bool = False
    # Authenticated sessions older than this (measured from auth_time) are
    # treated as anonymous on the next check.
    session_idle_timeout: int = 1800
    # Rows untouched for this long are dropped by the purge task.
    session_store_ttl: int = 86400

    # ------------------------------------------------------------------
    # CSRF
    # ------------------------------------------------------------------

    csrf_token_bytes: int = 32
    csrf_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    rate_limit_max_requests: int = 5
    rate_limit_period: int = 300
    # Per-IP outer limit applied by slowapi on top of the session limiter.
    login_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Vulnerability demos
    # ------------------------------------------------------------------

    default_security_level: Level = Level.LOW
    vulnerabilities: list[str] = list(KNOWN_VULNERABILITIES)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    items_per_page: int = 10
    currency: str = "USD"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Session ids hashed under the old key stop resolving after a
            restart, so everyone is logged out -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.csrf_token_bytes < 16:
            raise ValueError("CSRF_TOKEN_BYTES must be at least 16.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
