from __future__ import annotations

import base64
import hashlib
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import BASE_URL, CLIENT_ID, ISSUER, PROVIDER_ID, create_provider
from dynamic_oidc.api.services.authorization import callback_redirect_uri, generate_pkce
from dynamic_oidc.api.services.errors import (
    EndpointUnavailableError,
    ProviderNotFoundError,
)


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_pkce_challenge_is_s256_of_verifier():
    pkce = generate_pkce()
    expected = (
        base64.urlsafe_b64encode(hashlib.sha256(pkce.verifier.encode()).digest())
        .decode()
        .rstrip("=")
    )
    assert pkce.challenge == expected
    assert pkce.method == "S256"
    assert len(pkce.verifier) >= 43


def test_callback_redirect_uri():
    assert callback_redirect_uri("https://app.example.com/") == (
        "https://app.example.com/auth/dynamic-oidc/callback"
    )


@pytest.mark.asyncio
async def test_authorization_url_carries_required_parameters(oidc_context, provider):
    request = await oidc_context.initiator.build_authorization_url(
        PROVIDER_ID, base_url=BASE_URL
    )

    assert request.authorization_url.startswith(f"{ISSUER}/authorize?")
    params = _query(request.authorization_url)
    assert params["client_id"] == CLIENT_ID
    assert params["redirect_uri"] == f"{BASE_URL}/auth/dynamic-oidc/callback"
    assert params["response_type"] == "code"
    assert params["scope"] == "openid profile email"
    assert params["state"] == request.state
    assert params["code_challenge_method"] == "S256"
    assert params["nonce"] == request.nonce
    assert len(request.nonce) == 32
    assert params["prompt"] == "login"
    assert "audience" not in params
    assert "login_hint" not in params


@pytest.mark.asyncio
async def test_state_binds_verifier_nonce_and_return_url(oidc_context, provider):
    request = await oidc_context.initiator.build_authorization_url(
        PROVIDER_ID, base_url=BASE_URL, return_url="/acme/streams"
    )

    state = oidc_context.state_codec.verify(request.state)
    assert state.provider_id == PROVIDER_ID
    assert state.code_verifier == request.code_verifier
    assert state.nonce == request.nonce
    assert state.return_url == "/acme/streams"

    challenge = _query(request.authorization_url)["code_challenge"]
    assert challenge == (
        base64.urlsafe_b64encode(hashlib.sha256(request.code_verifier.encode()).digest())
        .decode()
        .rstrip("=")
    )


@pytest.mark.asyncio
async def test_unsafe_return_url_is_not_carried(oidc_context, provider):
    request = await oidc_context.initiator.build_authorization_url(
        PROVIDER_ID, base_url=BASE_URL, return_url="//evil.example.com"
    )

    assert oidc_context.state_codec.verify(request.state).return_url is None


@pytest.mark.asyncio
async def test_optional_parameters_from_config(oidc_context, session_maker):
    await create_provider(session_maker, audience="https://api.example.com", prompt="consent")

    request = await oidc_context.initiator.build_authorization_url(
        PROVIDER_ID, base_url=BASE_URL, login_hint="alice@example.com"
    )

    params = _query(request.authorization_url)
    assert params["audience"] == "https://api.example.com"
    assert params["prompt"] == "consent"
    assert params["login_hint"] == "alice@example.com"


@pytest.mark.asyncio
async def test_disabled_provider_is_not_found(oidc_context, session_maker, idp):
    await create_provider(session_maker, enabled=False)

    with pytest.raises(ProviderNotFoundError):
        await oidc_context.initiator.build_authorization_url(PROVIDER_ID, base_url=BASE_URL)
    assert idp.requests == []


@pytest.mark.asyncio
async def test_missing_endpoint_without_discovery_fails_closed(oidc_context, session_maker):
    await create_provider(session_maker, authorization_endpoint=None, auto_discovery=False)

    with pytest.raises(EndpointUnavailableError):
        await oidc_context.initiator.build_authorization_url(PROVIDER_ID, base_url=BASE_URL)


@pytest.mark.asyncio
async def test_missing_endpoint_is_discovered(oidc_context, session_maker, idp):
    await create_provider(session_maker, authorization_endpoint=None, auto_discovery=True)

    request = await oidc_context.initiator.build_authorization_url(
        PROVIDER_ID, base_url=BASE_URL
    )

    assert request.authorization_url.startswith(f"{ISSUER}/authorize?")
    assert len(idp.requests_to("/.well-known/openid-configuration")) == 1


@pytest.mark.asyncio
async def test_failed_discovery_fails_closed(oidc_context, session_maker, idp):
    await create_provider(session_maker, authorization_endpoint=None, auto_discovery=True)
    idp.discovery_status = 500

    with pytest.raises(EndpointUnavailableError):
        await oidc_context.initiator.build_authorization_url(PROVIDER_ID, base_url=BASE_URL)
