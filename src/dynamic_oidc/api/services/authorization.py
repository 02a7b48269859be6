from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlencode

from dynamic_oidc.api.services.discovery import DiscoveryResolver
from dynamic_oidc.api.services.errors import (
    EndpointUnavailableError,
    ProviderNotFoundError,
)
from dynamic_oidc.api.services.providers import ProviderRegistry
from dynamic_oidc.api.services.state import AuthorizationState, StateCodec
from dynamic_oidc.api.utils.logging import sanitize_for_log
from dynamic_oidc.api.utils.redirects import validate_return_url

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/auth/dynamic-oidc/callback"
DEFAULT_PROMPT = "login"


@dataclass(frozen=True)
class PKCEPair:
    verifier: str
    challenge: str
    method: str = "S256"


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str
    nonce: str
    code_verifier: str


def generate_pkce() -> PKCEPair:
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .decode()
        .rstrip("=")
    )
    return PKCEPair(verifier=verifier, challenge=challenge)


def generate_nonce() -> str:
    return secrets.token_hex(16)


def callback_redirect_uri(base_url: str) -> str:
    return f"{base_url.rstrip('/')}{CALLBACK_PATH}"


class AuthorizationInitiator:
    def __init__(
        self,
        registry: ProviderRegistry,
        discovery: DiscoveryResolver,
        state_codec: StateCodec,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._discovery = discovery
        self._state_codec = state_codec
        self._clock = clock

    async def build_authorization_url(
        self,
        provider_id: str,
        base_url: str,
        return_url: Optional[str] = None,
        login_hint: Optional[str] = None,
    ) -> AuthorizationRequest:
        provider = await self._registry.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError("OIDC provider not found or disabled")

        provider, authorization_endpoint = await self._discovery.resolve_endpoint(
            provider, "authorization_endpoint"
        )
        if not authorization_endpoint:
            logger.error(
                "No authorization endpoint for OIDC provider %s",
                sanitize_for_log(provider.id),
            )
            raise EndpointUnavailableError("Authorization endpoint not configured")

        pkce = generate_pkce()
        nonce = generate_nonce()
        state = AuthorizationState.new(
            provider_id=provider.id,
            code_verifier=pkce.verifier,
            nonce=nonce,
            return_url=validate_return_url(return_url),
            clock=self._clock,
        )
        signed_state = self._state_codec.sign(state)

        params: dict[str, str] = {
            "client_id": provider.client_id,
            "redirect_uri": callback_redirect_uri(base_url),
            "response_type": "code",
            "scope": " ".join(provider.scopes),
            "state": signed_state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "nonce": nonce,
            "prompt": provider.prompt or DEFAULT_PROMPT,
        }
        if provider.audience:
            params["audience"] = provider.audience
        if login_hint:
            params["login_hint"] = login_hint

        separator = "&" if "?" in authorization_endpoint else "?"
        return AuthorizationRequest(
            authorization_url=f"{authorization_endpoint}{separator}{urlencode(params)}",
            state=signed_state,
            nonce=nonce,
            code_verifier=pkce.verifier,
        )
