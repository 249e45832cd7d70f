"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CaseGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and for policy values that only make sense together (lockout
      backoff caps, TTL ordering).

Security notes:
  [M6] SECRET_KEY (and REFRESH_SECRET_KEY when set) shorter than 32 chars is
       rejected outright. JWT signing and session fingerprints both rely on key
       entropy -- a short key weakens both.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       issued token on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("casegate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'casegate_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `lockout_threshold` reads from LOCKOUT_THRESHOLD.
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
    # Refresh tokens may be signed with a distinct key. Empty = reuse secret_key.
    refresh_secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "casegate-api"
    token_audience: str = "casegate-client"
    access_token_ttl_seconds: int = Field(default=900, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    remember_me_ttl_seconds: int = Field(default=30 * 24 * 3600, gt=0)
    refresh_token_rotation: bool = True
    clock_skew_seconds: int = Field(default=5, ge=0, le=300)

    # ------------------------------------------------------------------
    # Secrets (passwords)
    # ------------------------------------------------------------------

    # bcrypt accepts 4..31. The cost is embedded in every hash, so raising
    # it never breaks verification of older hashes.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    secret_min_length: int = Field(default=8, ge=1, le=72)
    secret_require_upper: bool = True
    secret_require_lower: bool = True
    secret_require_digit: bool = True
    secret_require_special: bool = True
    secret_history_limit: int = Field(default=5, ge=0)

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, gt=0)
    lockout_duration_seconds: int = Field(default=15 * 60, gt=0)
    progressive_lockout: bool = False
    lockout_backoff_factor: float = Field(default=2.0, ge=1.0)
    lockout_max_duration_seconds: int = Field(default=24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    max_sessions: int = Field(default=3, gt=0)
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    session_purge_interval_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Registration and recovery
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    require_account_approval: bool = False
    invitation_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    reset_token_ttl_seconds: int = Field(default=10 * 60, gt=0)
    # Self-registered accounts start pending_verification until the mailbox is
    # proven by link token or numeric code.
    require_email_verification: bool = False
    email_verification_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    email_verification_resend_seconds: int = Field(default=60, ge=0)
    email_verification_max_attempts: int = Field(default=5, gt=0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. " "Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.refresh_secret_key and len(self.refresh_secret_key) < 32:
            raise ValueError("REFRESH_SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_policy(self) -> "Settings":
        """Reject policy combinations that contradict each other."""
        if self.lockout_max_duration_seconds < self.lockout_duration_seconds:
            raise ValueError("LOCKOUT_MAX_DURATION_SECONDS must be >= LOCKOUT_DURATION_SECONDS.")
        if self.refresh_token_ttl_seconds < self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be >= ACCESS_TOKEN_TTL_SECONDS.")
        return self

    @property
    def refresh_signing_key(self) -> str:
        """Key used for refresh tokens: REFRESH_SECRET_KEY when set, else SECRET_KEY."""
        return self.refresh_secret_key or self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly. Services accept an explicit Settings instance so tests can pass
    their own without touching the environment.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
