from __future__ import annotations

import pytest

from conftest import ISSUER, PROVIDER_ID, create_provider
from dynamic_oidc.api.services.cache import create_cache
from dynamic_oidc.api.services.discovery import (
    DISCOVERY_FAILURE_TTL_SECONDS,
    DiscoveryResolver,
    discovery_url,
)
from dynamic_oidc.api.services.providers import ProviderRegistry
from dynamic_oidc.models import OIDCProvider


def _resolver(idp, session_maker):
    registry = ProviderRegistry(session_maker)
    return DiscoveryResolver(idp.client_factory(), session_maker, registry), registry


def test_discovery_url_strips_trailing_slashes():
    assert discovery_url("https://idp.example.com/") == (
        "https://idp.example.com/.well-known/openid-configuration"
    )
    assert discovery_url("https://idp.example.com/realms/acme//") == (
        "https://idp.example.com/realms/acme/.well-known/openid-configuration"
    )


@pytest.mark.asyncio
async def test_discover_returns_document(idp, session_maker):
    resolver, _ = _resolver(idp, session_maker)

    doc = await resolver.discover(ISSUER + "/")

    assert doc is not None
    assert doc.authorization_endpoint == f"{ISSUER}/authorize"
    assert doc.jwks_uri == f"{ISSUER}/jwks"
    assert len(idp.requests_to("/.well-known/openid-configuration")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["authorization_endpoint", "token_endpoint"])
async def test_discover_discards_document_missing_required_endpoint(
    idp, session_maker, missing
):
    del idp.discovery_document[missing]
    resolver, _ = _resolver(idp, session_maker)

    assert await resolver.discover(ISSUER) is None


@pytest.mark.asyncio
async def test_discover_http_error_returns_none(idp, session_maker):
    idp.discovery_status = 503
    resolver, _ = _resolver(idp, session_maker)

    assert await resolver.discover(ISSUER) is None


@pytest.mark.asyncio
async def test_apply_is_idempotent(idp, session_maker):
    await create_provider(
        session_maker,
        authorization_endpoint=None,
        token_endpoint=None,
        userinfo_endpoint=None,
        introspection_endpoint=None,
        auto_discovery=True,
    )
    resolver, _ = _resolver(idp, session_maker)
    doc = await resolver.discover(ISSUER)

    assert await resolver.apply(PROVIDER_ID, doc) is True
    async with session_maker() as session:
        first = await session.get(OIDCProvider, PROVIDER_ID)
        first_sync = first.last_metadata_sync_at
        first_updated = first.updated_at

    assert await resolver.apply(PROVIDER_ID, doc) is False
    async with session_maker() as session:
        second = await session.get(OIDCProvider, PROVIDER_ID)
        assert second.authorization_endpoint == f"{ISSUER}/authorize"
        assert second.token_endpoint == f"{ISSUER}/token"
        assert second.jwks_uri == f"{ISSUER}/jwks"
        assert second.last_metadata_sync_at == first_sync
        assert second.updated_at == first_updated


@pytest.mark.asyncio
async def test_apply_invalidates_registry_entry(idp, session_maker):
    await create_provider(session_maker, jwks_uri=None, auto_discovery=True)
    resolver, registry = _resolver(idp, session_maker)
    cached = await registry.get(PROVIDER_ID)
    assert cached.jwks_uri is None

    await resolver.apply(PROVIDER_ID, await resolver.discover(ISSUER))

    refreshed = await registry.get(PROVIDER_ID)
    assert refreshed.jwks_uri == f"{ISSUER}/jwks"


@pytest.mark.asyncio
async def test_resolve_endpoint_discovers_only_when_missing(idp, session_maker):
    await create_provider(session_maker, jwks_uri=None, auto_discovery=True)
    resolver, registry = _resolver(idp, session_maker)
    provider = await registry.get(PROVIDER_ID)

    _, token_endpoint = await resolver.resolve_endpoint(provider, "token_endpoint")
    assert token_endpoint == f"{ISSUER}/token"
    assert idp.requests_to("/.well-known/openid-configuration") == []

    updated, jwks_uri = await resolver.resolve_endpoint(provider, "jwks_uri")
    assert jwks_uri == f"{ISSUER}/jwks"
    assert updated.jwks_uri == jwks_uri
    assert len(idp.requests_to("/.well-known/openid-configuration")) == 1


@pytest.mark.asyncio
async def test_resolve_endpoint_skips_discovery_when_disabled(idp, session_maker):
    await create_provider(session_maker, jwks_uri=None, auto_discovery=False)
    resolver, registry = _resolver(idp, session_maker)
    provider = await registry.get(PROVIDER_ID)

    _, jwks_uri = await resolver.resolve_endpoint(provider, "jwks_uri")

    assert jwks_uri is None
    assert idp.requests == []


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_endpoint_absent_from_document_is_not_rediscovered(idp, session_maker):
    await create_provider(session_maker, introspection_endpoint=None, auto_discovery=True)
    del idp.discovery_document["introspection_endpoint"]
    resolver, registry = _resolver(idp, session_maker)

    for _ in range(3):
        provider = await registry.get(PROVIDER_ID)
        _, endpoint = await resolver.resolve_endpoint(provider, "introspection_endpoint")
        assert endpoint is None

    assert len(idp.requests_to("/.well-known/openid-configuration")) == 1


@pytest.mark.asyncio
async def test_failed_discovery_is_retried_after_short_ttl(idp, session_maker):
    await create_provider(session_maker, jwks_uri=None, auto_discovery=True)
    idp.discovery_status = 503
    clock = FakeClock()
    registry = ProviderRegistry(session_maker)
    resolver = DiscoveryResolver(
        idp.client_factory(), session_maker, registry, cache=create_cache(300, clock=clock)
    )
    provider = await registry.get(PROVIDER_ID)

    assert (await resolver.resolve_endpoint(provider, "jwks_uri"))[1] is None
    assert (await resolver.resolve_endpoint(provider, "jwks_uri"))[1] is None
    assert len(idp.requests_to("/.well-known/openid-configuration")) == 1

    idp.discovery_status = 200
    clock.now = DISCOVERY_FAILURE_TTL_SECONDS + 1
    _, jwks_uri = await resolver.resolve_endpoint(provider, "jwks_uri")

    assert jwks_uri == f"{ISSUER}/jwks"
    assert len(idp.requests_to("/.well-known/openid-configuration")) == 2


@pytest.mark.asyncio
async def test_unchanged_apply_keeps_registry_entry(idp, session_maker):
    await create_provider(session_maker, jwks_uri=f"{ISSUER}/jwks", auto_discovery=True)
    resolver, registry = _resolver(idp, session_maker)
    cached = await registry.get(PROVIDER_ID)

    assert await resolver.apply(PROVIDER_ID, await resolver.discover(ISSUER)) is False

    assert await registry.get(PROVIDER_ID) is cached
