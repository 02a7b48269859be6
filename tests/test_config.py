from __future__ import annotations

import hashlib

import pytest

from dynamic_oidc.config import OIDCSettings, is_truthy
from dynamic_oidc.db import _ensure_async_driver, get_database_uri

ENV_VARS = (
    "DYNAMIC_OIDC_SECRET",
    "JWT_SECRET_KEY",
    "APP_BASE_URL",
    "PUBLIC_URL",
    "DYNAMIC_OIDC_ENABLED",
    "OIDC_HTTP_TIMEOUT_SECONDS",
    "OIDC_PROVIDER_CACHE_TTL",
    "OIDC_JWKS_CACHE_TTL",
    "OIDC_SESSION_MAX_AGE_DAYS",
    "DEFAULT_LOGIN_TYPE",
    "DATABASE_URI",
    "DATABASE_URL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.parametrize(
    "value,expected",
    [("1", True), ("true", True), (" Yes ", True), ("on", True), ("0", False), ("no", False)],
)
def test_is_truthy(value, expected):
    assert is_truthy(value) is expected


def test_is_truthy_default_for_blank():
    assert is_truthy(None, default=True) is True
    assert is_truthy("  ", default=True) is True


def test_defaults():
    settings = OIDCSettings.from_env()

    assert settings.enabled is True
    assert settings.base_url is None
    assert settings.http_timeout_seconds == 10.0
    assert settings.provider_cache_ttl == 300
    assert settings.session_max_age_seconds == 7 * 24 * 60 * 60
    assert settings.default_login_type == "none"


def test_secret_precedence(monkeypatch):
    monkeypatch.setenv("SETTINGS_ENCRYPTION_KEY", "encryption-key")
    assert OIDCSettings.from_env().secret == hashlib.sha256(b"encryption-key").hexdigest()

    monkeypatch.setenv("JWT_SECRET_KEY", "jwt-secret")
    assert OIDCSettings.from_env().secret == "jwt-secret"

    monkeypatch.setenv("DYNAMIC_OIDC_SECRET", "oidc-secret")
    assert OIDCSettings.from_env().secret == "oidc-secret"


def test_overrides_from_environment(monkeypatch):
    monkeypatch.setenv("APP_BASE_URL", "https://console.example.com/")
    monkeypatch.setenv("DYNAMIC_OIDC_ENABLED", "false")
    monkeypatch.setenv("OIDC_HTTP_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("OIDC_SESSION_MAX_AGE_DAYS", "1")
    monkeypatch.setenv("OIDC_PROVIDER_CACHE_TTL", "not-a-number")
    monkeypatch.setenv("DEFAULT_LOGIN_TYPE", "password")

    settings = OIDCSettings.from_env()

    assert settings.base_url == "https://console.example.com"
    assert settings.enabled is False
    assert settings.http_timeout_seconds == 2.5
    assert settings.session_max_age_seconds == 86400
    assert settings.provider_cache_ttl == 300
    assert settings.default_login_type == "password"


@pytest.mark.parametrize(
    "uri,expected",
    [
        ("postgresql://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("postgres://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("sqlite:///tmp/app.db", "sqlite+aiosqlite:///tmp/app.db"),
        ("postgresql+asyncpg://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
    ],
)
def test_async_driver_rewrite(uri, expected):
    assert _ensure_async_driver(uri) == expected


def test_database_url_fallback(monkeypatch):
    assert get_database_uri() is None
    monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db/app")
    assert get_database_uri() == "postgresql+asyncpg://u:p@db/app"
