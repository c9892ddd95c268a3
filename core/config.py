"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. keys_dir -> KEYS_DIR). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Lifetimes must nest (access < refresh, access <= global
      revocation window) or revocation guarantees silently break.

Components never read Settings themselves: the app shell (api/main.py) and the
CLI (main.py) pass the values into constructors explicitly.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionguard.config")

_ROOT = Path(__file__).resolve().parent.parent


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

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_ROOT / 'auth' / 'sessionguard_auth.db'}"
    # Empty string selects the SQLite TTL store below (single-node only).
    redis_url: str = ""
    ttl_store_path: str = str(_ROOT / "cache" / "sessionguard_ttl.db")

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    keys_dir: str = "./keys"
    generate_missing_keys: bool = False

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "sessionguard"
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 15_552_000  # 180 days
    refresh_token_max_per_principal: int = 5
    refresh_token_revoked_retention_days: int = 30
    cleanup_interval_seconds: int = 86_400
    global_revocation_ttl_seconds: int = 30 * 86_400

    # ------------------------------------------------------------------
    # Brute-force mitigation
    # ------------------------------------------------------------------

    max_attempts_before_captcha: int = 5
    attempt_window_seconds: int = 1800
    password_reset_rate_limit_seconds: int = 60
    captcha_ttl_seconds: int = 600
    captcha_length: int = 5

    # ------------------------------------------------------------------
    # One-time links
    # ------------------------------------------------------------------

    password_reset_token_ttl_seconds: int = 7200
    email_verification_ttl_seconds: int = 86_400

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Reject configurations that break the lifetime ordering.

        - Every TTL, cap and threshold must be positive.
        - Access tokens must die before refresh tokens.
        - The global-revocation cutoff must outlive any access token issued
          before it, otherwise a cutoff could expire while tokens it covers
          are still valid.

        Debug mode with generate_missing_keys unset turns generation on, with
        a warning: keys created that way are throwaway.
        """
        positive = {
            "access_token_ttl_seconds": self.access_token_ttl_seconds,
            "refresh_token_ttl_seconds": self.refresh_token_ttl_seconds,
            "refresh_token_max_per_principal": self.refresh_token_max_per_principal,
            "refresh_token_revoked_retention_days": self.refresh_token_revoked_retention_days,
            "cleanup_interval_seconds": self.cleanup_interval_seconds,
            "global_revocation_ttl_seconds": self.global_revocation_ttl_seconds,
            "max_attempts_before_captcha": self.max_attempts_before_captcha,
            "attempt_window_seconds": self.attempt_window_seconds,
            "password_reset_rate_limit_seconds": self.password_reset_rate_limit_seconds,
            "captcha_ttl_seconds": self.captcha_ttl_seconds,
            "captcha_length": self.captcha_length,
            "password_reset_token_ttl_seconds": self.password_reset_token_ttl_seconds,
            "email_verification_ttl_seconds": self.email_verification_ttl_seconds,
        }
        bad = sorted(name for name, value in positive.items() if value <= 0)
        if bad:
            raise ValueError(f"Settings must be positive: {', '.join(bad)}")
        if self.access_token_ttl_seconds >= self.refresh_token_ttl_seconds:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be shorter than REFRESH_TOKEN_TTL_SECONDS.")
        if self.global_revocation_ttl_seconds < self.access_token_ttl_seconds:
            raise ValueError("GLOBAL_REVOCATION_TTL_SECONDS must be at least ACCESS_TOKEN_TTL_SECONDS.")
        if self.debug and not self.generate_missing_keys:
            self.generate_missing_keys = True
            logger.warning("WARNING: DEBUG mode generates RSA keys on demand. Do not use these keys in production.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
