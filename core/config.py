"""
core/config.py -- Plannr auth settings, read once from the environment.

Every environment variable the auth core understands is a field on Settings.
Other modules import get_settings() and never touch os.environ themselves.

How it is wired:
  get_settings() is wrapped in lru_cache, so the first call builds Settings
      and later calls share that instance. Tests that need different values
      build their own Settings(...) and pass it in explicitly.

  pydantic-settings maps each field to an upper-case env var or .env entry
      (session_expire_seconds -> SESSION_EXPIRE_SECONDS) and coerces types,
      so PROTECTED_PREFIXES='["/app", "/create"]' arrives as a list.

  Validators clean up route prefixes and enforce the SECRET_KEY policy
      after every field is resolved.

Security notes:
  [M6] A SECRET_KEY under 32 characters is refused. Session tokens are HS256,
       so the key is the only thing standing between a client and a forged role.

  [M7] Without DEBUG=true a missing SECRET_KEY or APP_URL stops startup.
       APP_URL is the only source of the origin in emailed links.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("plannr.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'plannr_auth.db'}"


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    app_name: str = "Plannr"
    # Public origin used to build emailed links. Required unless DEBUG=true;
    # in debug an empty value falls back to the request base URL.
    app_url: str = ""

    # ------------------------------------------------------------------
    # Identity store
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = "plannr.session"
    session_expire_seconds: int = 30 * 24 * 60 * 60
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Role selection
    # ------------------------------------------------------------------

    role_intent_cookie_name: str = "plannr.signup_role"
    role_intent_max_age_seconds: int = 600

    # ------------------------------------------------------------------
    # Route protection
    # ------------------------------------------------------------------

    protected_prefixes: list[str] = ["/app", "/dashboard", "/create", "/organizer"]
    # Subset of protected_prefixes that additionally require ORGANIZER.
    organizer_prefixes: list[str] = ["/create", "/organizer"]
    login_path: str = "/login"
    default_after_login: str = "/app/dashboard"

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_token_ttl_seconds: int = 60 * 60
    min_password_length: int = 8

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    # Credentials login is refused until the address is verified.
    require_verified_email: bool = True
    email_verification_ttl_seconds: int = 30 * 60
    # A resend inside this window of the last issued token sends nothing.
    verification_resend_cooldown_seconds: int = 60

    # ------------------------------------------------------------------
    # Mail (optional -- empty smtp_host means emails are logged, not sent)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    # True: plain connection upgraded with STARTTLS (usually port 587).
    # False: implicit TLS from the first byte via SMTP_SSL (usually port 465).
    # There is no unencrypted mode.
    smtp_starttls: bool = True
    email_from: str = "Plannr <no-reply@plannr.local>"
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    forgot_password_rate_limit: str = "5/minute"
    resend_verification_rate_limit: str = "3/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("protected_prefixes", "organizer_prefixes")
    @classmethod
    def normalize_prefixes(cls, values: list[str]) -> list[str]:
        """Give every prefix exactly one leading slash and no trailing slash."""
        result: list[str] = []
        for v in values:
            prefix = "/" + v.strip().strip("/")
            if prefix not in result:
                result.append(prefix)
        return result

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def validate_app_url(self) -> "Settings":
        """Links in outgoing email are built from APP_URL, never from the request.

        Production mode refuses to start without an absolute http(s) APP_URL,
        because a Host-derived link could point a reset email at an attacker.
        Dev mode may leave it empty and falls back to the request base URL.
        """
        self.app_url = self.app_url.strip().rstrip("/")
        if not self.app_url:
            if not self.debug:
                raise ValueError("APP_URL is required in production mode (e.g. https://plannr.example).")
            return self
        parsed = urlparse(self.app_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("APP_URL must be an absolute http(s) URL.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
