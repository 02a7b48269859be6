from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from fastapi import Request

from dynamic_oidc.api.services.authorization import AuthorizationInitiator
from dynamic_oidc.api.services.cache import create_cache
from dynamic_oidc.api.services.callback import CallbackProcessor
from dynamic_oidc.api.services.discovery import DiscoveryResolver, HttpClientFactory
from dynamic_oidc.api.services.providers import ProviderRegistry, SessionFactory
from dynamic_oidc.api.services.session import SessionManager, SessionSealer
from dynamic_oidc.api.services.state import StateCodec
from dynamic_oidc.api.services.tokens import (
    DEFAULT_CACHE_TTL_SECONDS,
    JWKSClientCache,
    TokenVerifier,
)
from dynamic_oidc.config import OIDCSettings

VERIFICATION_CACHE_MAX_ENTRIES = 10_000


@dataclass
class OIDCContext:
    """Everything the auth endpoints share, built once per application."""

    settings: OIDCSettings
    registry: ProviderRegistry
    discovery: DiscoveryResolver
    state_codec: StateCodec
    verifier: TokenVerifier
    sessions: SessionManager
    initiator: AuthorizationInitiator
    callback: CallbackProcessor


def build_context(
    settings: OIDCSettings,
    session_factory: SessionFactory,
    http_client_factory: Optional[HttpClientFactory] = None,
    clock: Callable[[], float] = time.time,
) -> OIDCContext:
    if http_client_factory is None:

        def http_client_factory() -> httpx.AsyncClient:
            return httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    registry = ProviderRegistry(
        session_factory, cache=create_cache(settings.provider_cache_ttl)
    )
    discovery = DiscoveryResolver(
        http_client_factory,
        session_factory,
        registry,
        timeout_seconds=settings.http_timeout_seconds,
        cache_ttl_seconds=settings.provider_cache_ttl,
    )
    state_codec = StateCodec(settings.secret, clock=clock)
    verifier = TokenVerifier(
        registry,
        discovery,
        http_client_factory,
        jwks_clients=JWKSClientCache(
            ttl_seconds=settings.jwks_cache_ttl,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        verification_cache=create_cache(
            DEFAULT_CACHE_TTL_SECONDS, max_entries=VERIFICATION_CACHE_MAX_ENTRIES
        ),
        timeout_seconds=settings.http_timeout_seconds,
        clock=clock,
    )
    sessions = SessionManager(
        SessionSealer(settings.secret, clock=clock),
        verifier,
        max_age_seconds=settings.session_max_age_seconds,
        clock=clock,
    )
    initiator = AuthorizationInitiator(registry, discovery, state_codec, clock=clock)
    callback = CallbackProcessor(
        registry,
        discovery,
        state_codec,
        verifier,
        sessions,
        http_client_factory,
        timeout_seconds=settings.http_timeout_seconds,
        clock=clock,
    )
    return OIDCContext(
        settings=settings,
        registry=registry,
        discovery=discovery,
        state_codec=state_codec,
        verifier=verifier,
        sessions=sessions,
        initiator=initiator,
        callback=callback,
    )


def get_oidc_context(request: Request) -> OIDCContext:
    return request.app.state.oidc
