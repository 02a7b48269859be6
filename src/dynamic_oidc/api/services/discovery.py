from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from dynamic_oidc.api.services.cache import TTLCache, create_cache
from dynamic_oidc.api.services.providers import (
    ENDPOINT_FIELDS,
    ProviderConfig,
    ProviderRegistry,
    SessionFactory,
)
from dynamic_oidc.api.utils.logging import sanitize_for_log
from dynamic_oidc.models.oidc import OIDCProvider

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"
REQUIRED_FIELDS = ("authorization_endpoint", "token_endpoint")
DISCOVERY_CACHE_TTL_SECONDS = 300
DISCOVERY_FAILURE_TTL_SECONDS = 30

_NO_DOCUMENT = object()

HttpClientFactory = Callable[[], httpx.AsyncClient]


@dataclass(frozen=True)
class DiscoveryDocument:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def endpoints(self) -> dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in ENDPOINT_FIELDS}


def discovery_url(issuer: str) -> str:
    return issuer.rstrip("/") + WELL_KNOWN_PATH


class DiscoveryResolver:
    """Fetches OpenID discovery documents and backfills provider endpoints."""

    def __init__(
        self,
        http_client_factory: HttpClientFactory,
        session_factory: SessionFactory,
        registry: ProviderRegistry,
        timeout_seconds: float = 10.0,
        cache_ttl_seconds: float = DISCOVERY_CACHE_TTL_SECONDS,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self._http = http_client_factory
        self._session_factory = session_factory
        self._registry = registry
        self._timeout = timeout_seconds
        self._documents = cache if cache is not None else create_cache(cache_ttl_seconds)

    async def discover(self, issuer: str) -> Optional[DiscoveryDocument]:
        url = discovery_url(issuer)
        async with self._http() as client:
            try:
                response = await client.get(url, timeout=self._timeout)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "OIDC discovery failed for %s: %s",
                    sanitize_for_log(issuer),
                    type(exc).__name__,
                )
                return None

        if not isinstance(data, dict):
            logger.warning(
                "OIDC discovery document for %s is not an object",
                sanitize_for_log(issuer),
            )
            return None

        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            logger.warning(
                "OIDC discovery document for %s missing %s",
                sanitize_for_log(issuer),
                ", ".join(missing),
            )
            return None

        return DiscoveryDocument(
            issuer=data.get("issuer") or issuer,
            authorization_endpoint=data["authorization_endpoint"],
            token_endpoint=data["token_endpoint"],
            userinfo_endpoint=data.get("userinfo_endpoint"),
            jwks_uri=data.get("jwks_uri"),
            introspection_endpoint=data.get("introspection_endpoint"),
            raw=data,
        )

    async def apply(self, provider_id: str, doc: DiscoveryDocument) -> bool:
        """Write discovered endpoints onto the provider row.

        Returns True when anything changed. Endpoints the document does not
        carry are left as they are.
        """
        changed = False
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(OIDCProvider).where(OIDCProvider.id == provider_id)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return False
                for name, value in doc.endpoints().items():
                    if value and getattr(row, name) != value:
                        setattr(row, name, value)
                        changed = True
                if changed:
                    row.last_metadata_sync_at = datetime.now(timezone.utc)
                    await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "Failed to store discovered endpoints for %s: %s",
                sanitize_for_log(provider_id),
                type(exc).__name__,
            )
            return False

        if changed:
            self._registry.invalidate(provider_id)
            logger.info(
                "Updated OIDC endpoints for provider %s from discovery",
                sanitize_for_log(provider_id),
            )
        return changed

    async def resolve_endpoint(
        self, provider: ProviderConfig, name: str
    ) -> tuple[ProviderConfig, Optional[str]]:
        """Return the named endpoint, discovering it when it is missing.

        Discovery only runs for providers with ``auto_discovery`` enabled,
        and at most once per provider and issuer within the cache TTL. A
        document that lacks the endpoint is remembered like any other, so
        later calls fail closed without another fetch. Failed fetches are
        remembered for a shorter time. The returned config includes any
        discovered endpoints.
        """
        current = provider.endpoint(name)
        if current or not provider.auto_discovery:
            return provider, current

        key = f"{provider.id}:{provider.issuer}"
        doc = self._documents.get(key)
        if doc is _NO_DOCUMENT:
            return provider, None
        if doc is None:
            doc = await self.discover(provider.issuer)
            if doc is None:
                self._documents.set(key, _NO_DOCUMENT, DISCOVERY_FAILURE_TTL_SECONDS)
                return provider, None
            await self.apply(provider.id, doc)
            self._documents.set(key, doc)

        updated = provider.with_endpoints(doc.endpoints())
        return updated, updated.endpoint(name)
