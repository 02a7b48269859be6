from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, AsyncContextManager, Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dynamic_oidc.api.services.cache import TTLCache, create_cache
from dynamic_oidc.api.services.encryption import decrypt_client_secret
from dynamic_oidc.api.services.errors import ProviderUnavailableError
from dynamic_oidc.api.utils.logging import mask_secret, sanitize_for_log
from dynamic_oidc.models.oidc import DEFAULT_SCOPES, OIDCProvider

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

ENDPOINT_FIELDS = (
    "authorization_endpoint",
    "token_endpoint",
    "userinfo_endpoint",
    "jwks_uri",
    "introspection_endpoint",
)


def login_provider_for(provider_id: str) -> str:
    return f"dynamic-oidc/{provider_id}"


@dataclass(frozen=True)
class ClaimMapping:
    """Which claims carry email, display name and groups for a provider."""

    email_claim: str = "email"
    name_claim: str = "name"
    group_claim: str = "groups"

    @classmethod
    def from_config(
        cls,
        email_claim: Optional[str] = None,
        name_claim: Optional[str] = None,
        group_claim: Optional[str] = None,
    ) -> "ClaimMapping":
        return cls(
            email_claim=email_claim or "email",
            name_claim=name_claim or "name",
            group_claim=group_claim or "groups",
        )

    def resolve_email(self, claims: Mapping[str, Any]) -> Optional[str]:
        value = claims.get(self.email_claim) or claims.get("email")
        if not value or not isinstance(value, str):
            return None
        return value

    def resolve_name(self, claims: Mapping[str, Any], email: str) -> str:
        for key in (self.name_claim, "name", "preferred_username"):
            value = claims.get(key)
            if value and isinstance(value, str):
                return value
        return email

    def resolve_groups(self, claims: Mapping[str, Any]) -> list[str]:
        value = claims.get(self.group_claim)
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        return []


@dataclass(frozen=True)
class ProviderConfig:
    id: str
    name: str
    issuer: str
    client_id: str
    client_secret: str = field(repr=False)
    scopes: tuple[str, ...] = tuple(DEFAULT_SCOPES)
    claims: ClaimMapping = field(default_factory=ClaimMapping)
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    auto_discovery: bool = True
    enabled: bool = True
    prompt: Optional[str] = None
    audience: Optional[str] = None
    allowed_domains: tuple[str, ...] = ()

    @property
    def login_provider(self) -> str:
        return login_provider_for(self.id)

    @property
    def token_url(self) -> str:
        """Token endpoint, falling back to the conventional ``{issuer}/token``."""
        return self.token_endpoint or f"{self.issuer.rstrip('/')}/token"

    def endpoint(self, name: str) -> Optional[str]:
        if name not in ENDPOINT_FIELDS:
            raise ValueError(f"Unknown endpoint: {name}")
        return getattr(self, name)

    def with_endpoints(self, endpoints: Mapping[str, Optional[str]]) -> "ProviderConfig":
        updates = {
            name: value
            for name, value in endpoints.items()
            if name in ENDPOINT_FIELDS and value
        }
        return replace(self, **updates)

    def is_email_allowed(self, email: str) -> bool:
        if not self.allowed_domains:
            return True
        domain = email.rsplit("@", 1)[-1].lower()
        return domain in {d.lower().lstrip("@") for d in self.allowed_domains}

    @classmethod
    def from_model(cls, row: OIDCProvider) -> "ProviderConfig":
        return cls(
            id=row.id,
            name=row.name,
            issuer=row.issuer,
            client_id=row.client_id,
            client_secret=decrypt_client_secret(row.client_secret),
            scopes=tuple(row.scopes or DEFAULT_SCOPES),
            claims=ClaimMapping.from_config(
                row.email_claim, row.name_claim, row.group_claim
            ),
            authorization_endpoint=row.authorization_endpoint,
            token_endpoint=row.token_endpoint,
            userinfo_endpoint=row.userinfo_endpoint,
            jwks_uri=row.jwks_uri,
            introspection_endpoint=row.introspection_endpoint,
            auto_discovery=bool(row.auto_discovery),
            enabled=bool(row.enabled),
            prompt=row.prompt,
            audience=row.audience,
            allowed_domains=tuple(row.allowed_domains or ()),
        )


class ProviderRegistry:
    """Read-through cache of enabled provider configurations."""

    def __init__(
        self,
        session_factory: SessionFactory,
        cache: Optional[TTLCache] = None,
        ttl_seconds: int = 300,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache if cache is not None else create_cache(ttl_seconds)

    async def get(self, provider_id: str) -> Optional[ProviderConfig]:
        if not provider_id:
            return None
        cached = self._cache.get(provider_id)
        if cached is not None:
            return cached

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(OIDCProvider).where(
                        OIDCProvider.id == provider_id,
                        OIDCProvider.enabled.is_(True),
                    )
                )
                row = result.scalar_one_or_none()
                config = ProviderConfig.from_model(row) if row else None
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to load OIDC provider %s: %s",
                sanitize_for_log(provider_id),
                type(exc).__name__,
            )
            raise ProviderUnavailableError("OIDC provider store unavailable") from exc

        if config is None:
            return None
        logger.debug(
            "Loaded OIDC provider %s (client %s)",
            sanitize_for_log(config.id),
            mask_secret(config.client_id),
        )
        self._cache.set(provider_id, config)
        return config

    def invalidate(self, provider_id: str) -> None:
        self._cache.delete(provider_id)

    def clear(self) -> None:
        self._cache.clear()
