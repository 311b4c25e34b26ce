"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CodeGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). List and dict fields are parsed as JSON.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and keeps the fixed debug code
      from ever being switched on outside DEBUG mode.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256 (the
       secure cache) and JWT signing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [D1] DEBUG_CODES_ENABLED=true without DEBUG=true is a hard startup failure.
       The fixed debug code authenticates any account, so it must be an
       explicit opt-in that production configuration cannot express.

Layer rule: core/ is the kernel. This module may not import from auth/,
rbac/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("codegate.config")

_BASE_DIR = Path(__file__).resolve().parent.parent


class ClientApplicationConfig(BaseModel):
    """One OAuth2-style client entry from CLIENT_APPLICATIONS (JSON list)."""

    client_id: str
    client_secret: str
    name: str = ""


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true still required for the
    auto-generated key).
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
    secret_key: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    auth_db_url: str = f"sqlite:///{_BASE_DIR / 'auth' / 'codegate_auth.db'}"
    rbac_db_url: str = f"sqlite:///{_BASE_DIR / 'rbac' / 'codegate_rbac.db'}"
    cache_db_path: str = str(_BASE_DIR / "cache" / "codegate_cache.db")

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Duration specifiers: <integer><d|h|m|s>. Anything else falls back to 30d.
    access_token_expire: str = "30d"
    refresh_token_expire: str = "90d"

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    code_expire_seconds: int = 15 * 60
    code_cache_key: str = "NC_T"
    debug_codes_enabled: bool = False
    debug_code: str = "123456"
    email_debug_enabled: bool = False
    # Exact addresses or "prefix*" patterns. Empty list disables tester codes.
    tester_emails: list[str] = []
    tester_code: str = "789654"
    resend_suppress_seconds: int = 30
    placeholder_email_domain: str = "placeholder.com"

    # ------------------------------------------------------------------
    # OAuth2 client applications (registered once at start-up)
    # ------------------------------------------------------------------

    client_applications: list[ClientApplicationConfig] = []

    # ------------------------------------------------------------------
    # SMTP notifier (optional -- empty host means log-only delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = ""
    email_exclude_domains: list[str] = []

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
                )
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
    def validate_debug_codes(self) -> "Settings":
        """Refuse DEBUG_CODES_ENABLED outside DEBUG mode [D1]."""
        if self.debug_codes_enabled and not self.debug:
            raise ValueError("DEBUG_CODES_ENABLED requires DEBUG=true.")
        if self.code_expire_seconds <= 0:
            raise ValueError("CODE_EXPIRE_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
