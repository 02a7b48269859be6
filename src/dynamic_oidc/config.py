"""Runtime settings for dynamic OIDC login.

Everything is read from the environment once, at application startup.

Environment Variables:
    DYNAMIC_OIDC_SECRET: HMAC secret for state tokens and session cookies
    JWT_SECRET_KEY: fallback signing secret
    SETTINGS_ENCRYPTION_KEY: last-resort source for a derived secret
    APP_BASE_URL / PUBLIC_URL: fixed external base URL (optional)
    DYNAMIC_OIDC_ENABLED: feature switch (default: true)
    OIDC_HTTP_TIMEOUT_SECONDS: timeout for outbound provider calls
    OIDC_PROVIDER_CACHE_TTL: provider registry cache TTL in seconds
    OIDC_JWKS_CACHE_TTL: JWKS client cache TTL in seconds
    OIDC_SESSION_MAX_AGE_DAYS: absolute session lifetime
    DEFAULT_LOGIN_TYPE: login type reported by check-email when nothing matches
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_PROVIDER_CACHE_TTL = 300
DEFAULT_JWKS_CACHE_TTL = 300
DEFAULT_SESSION_MAX_AGE_DAYS = 7


def is_truthy(value: Optional[str], default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s", name)
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s", name)
        return default


def _get_signing_secret() -> str:
    secret = os.getenv("DYNAMIC_OIDC_SECRET") or os.getenv("JWT_SECRET_KEY")
    if not secret:
        logger.warning(
            "DYNAMIC_OIDC_SECRET not set, using derived key from SETTINGS_ENCRYPTION_KEY"
        )
        encryption_key = os.getenv("SETTINGS_ENCRYPTION_KEY", "dev-key-not-for-prod")
        secret = hashlib.sha256(encryption_key.encode()).hexdigest()
    return secret


@dataclass(frozen=True)
class OIDCSettings:
    secret: str
    base_url: Optional[str] = None
    enabled: bool = True
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    provider_cache_ttl: int = DEFAULT_PROVIDER_CACHE_TTL
    jwks_cache_ttl: int = DEFAULT_JWKS_CACHE_TTL
    session_max_age_days: int = DEFAULT_SESSION_MAX_AGE_DAYS
    default_login_type: str = "none"

    @property
    def session_max_age_seconds(self) -> int:
        return self.session_max_age_days * 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "OIDCSettings":
        base_url = os.getenv("APP_BASE_URL") or os.getenv("PUBLIC_URL")
        return cls(
            secret=_get_signing_secret(),
            base_url=base_url.rstrip("/") if base_url else None,
            enabled=is_truthy(os.getenv("DYNAMIC_OIDC_ENABLED"), default=True),
            http_timeout_seconds=_float_env(
                "OIDC_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS
            ),
            provider_cache_ttl=_int_env(
                "OIDC_PROVIDER_CACHE_TTL", DEFAULT_PROVIDER_CACHE_TTL
            ),
            jwks_cache_ttl=_int_env("OIDC_JWKS_CACHE_TTL", DEFAULT_JWKS_CACHE_TTL),
            session_max_age_days=_int_env(
                "OIDC_SESSION_MAX_AGE_DAYS", DEFAULT_SESSION_MAX_AGE_DAYS
            ),
            default_login_type=os.getenv("DEFAULT_LOGIN_TYPE", "none"),
        )
