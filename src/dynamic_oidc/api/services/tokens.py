from __future__ import annotations

import asyncio
import base64
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Optional

import httpx
import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientError

from dynamic_oidc.api.services.cache import TTLCache, create_cache
from dynamic_oidc.api.services.discovery import DiscoveryResolver, HttpClientFactory
from dynamic_oidc.api.services.errors import ProviderUnavailableError
from dynamic_oidc.api.services.providers import ProviderConfig, ProviderRegistry
from dynamic_oidc.api.utils.logging import sanitize_for_log, token_fingerprint

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]

DEFAULT_EXPIRES_IN_SECONDS = 3600
MIN_CACHE_TTL_SECONDS = 30
MAX_CACHE_TTL_SECONDS = 300
DEFAULT_CACHE_TTL_SECONDS = 120

JWKS_CLIENT_TTL_SECONDS = 300
JWKS_MAX_CACHED_KEYS = 5
JWKS_REQUESTS_PER_MINUTE = 10


@dataclass(frozen=True)
class OidcTokens:
    access_token: str
    expires_at: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "idToken": self.id_token,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OidcTokens":
        return cls(
            access_token=data["accessToken"],
            expires_at=int(data["expiresAt"]),
            refresh_token=data.get("refreshToken"),
            id_token=data.get("idToken"),
        )

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        now: float,
        previous_refresh_token: Optional[str] = None,
    ) -> "OidcTokens":
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            id_token=data.get("id_token"),
            expires_at=int(now * 1000) + expires_in * 1000,
        )


@dataclass
class VerificationResult:
    valid: bool
    claims: Optional[dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class RefreshResult:
    success: bool
    tokens: Optional[OidcTokens] = None
    error: Optional[str] = None


def is_jwt_token(token: str) -> bool:
    """True when the first segment decodes to a JSON header carrying ``alg``."""
    if not token:
        return False
    parts = token.split(".")
    if len(parts) != 3:
        return False
    segment = parts[0]
    try:
        header = json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))
    except ValueError:
        return False
    return isinstance(header, dict) and "alg" in header


def verification_cache_ttl(exp: Any, now: float) -> int:
    if isinstance(exp, (int, float)) and not isinstance(exp, bool) and exp > now:
        return int(min(max(MIN_CACHE_TTL_SECONDS, exp - now), MAX_CACHE_TTL_SECONDS))
    return DEFAULT_CACHE_TTL_SECONDS


class SlidingWindowRateLimiter:
    """Allows at most ``max_requests`` acquisitions per window."""

    def __init__(
        self,
        max_requests: int = JWKS_REQUESTS_PER_MINUTE,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._calls: Deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            while self._calls and now - self._calls[0] >= self._window:
                self._calls.popleft()
            if len(self._calls) >= self._max_requests:
                return False
            self._calls.append(now)
            return True


class RateLimitedJWKClient(PyJWKClient):
    def __init__(
        self,
        uri: str,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(uri, **kwargs)
        self.limiter = limiter or SlidingWindowRateLimiter()

    def fetch_data(self) -> Any:
        if not self.limiter.acquire():
            logger.warning("JWKS fetch rate limit reached for %s", sanitize_for_log(self.uri))
            raise PyJWKClientError("JWKS request rate limit exceeded")
        return super().fetch_data()


class JWKSClientCache:
    """One JWKS client per ``jwks_uri``, each kept for a bounded time."""

    def __init__(
        self,
        ttl_seconds: int = JWKS_CLIENT_TTL_SECONDS,
        timeout_seconds: float = 10.0,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._cache = cache if cache is not None else create_cache(ttl_seconds)

    def _create(self, jwks_uri: str) -> PyJWKClient:
        return RateLimitedJWKClient(
            jwks_uri,
            cache_keys=True,
            max_cached_keys=JWKS_MAX_CACHED_KEYS,
            cache_jwk_set=True,
            lifespan=self._ttl,
            timeout=self._timeout,
        )

    def get(self, jwks_uri: str) -> PyJWKClient:
        client = self._cache.get(jwks_uri)
        if client is None:
            client = self._create(jwks_uri)
            self._cache.set(jwks_uri, client)
        return client


class TokenVerifier:
    """Validates access tokens and refreshes them against the provider.

    JWT access tokens are checked locally against the provider's JWKS.
    Anything else is treated as opaque and sent to the introspection
    endpoint. Every failure comes back as ``valid=False``; callers deny.
    """

    OIDC_JWT_LEEWAY_SECONDS = 60

    def __init__(
        self,
        registry: ProviderRegistry,
        discovery: DiscoveryResolver,
        http_client_factory: HttpClientFactory,
        jwks_clients: Optional[JWKSClientCache] = None,
        verification_cache: Optional[TTLCache] = None,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._discovery = discovery
        self._http = http_client_factory
        self._jwks = jwks_clients or JWKSClientCache(timeout_seconds=timeout_seconds)
        self._cache = (
            verification_cache
            if verification_cache is not None
            else create_cache(DEFAULT_CACHE_TTL_SECONDS)
        )
        self._timeout = timeout_seconds
        self._clock = clock

    async def verify(self, token: str, provider_id: str) -> VerificationResult:
        try:
            provider = await self._registry.get(provider_id)
        except ProviderUnavailableError:
            return VerificationResult(valid=False, error="Provider store unavailable")
        if provider is None:
            return VerificationResult(valid=False, error="Provider not found")

        if is_jwt_token(token):
            return await self._verify_jwt(token, provider)
        return await self._introspect(token, provider)

    async def decode_signed(
        self,
        token: str,
        jwks_uri: str,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        verify_exp: bool = True,
        leeway: int = 0,
    ) -> dict[str, Any]:
        """Verify a JWT signature against a JWKS and return its claims.

        Raises ``jwt.PyJWTError`` on any failure, including an algorithm
        outside the asymmetric allow-list.
        """
        header = jwt.get_unverified_header(token)
        if header.get("alg") not in ALLOWED_ALGORITHMS:
            raise jwt.InvalidAlgorithmError("Unsupported token algorithm")

        client = self._jwks.get(jwks_uri)
        signing_key = await asyncio.to_thread(client.get_signing_key_from_jwt, token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=ALLOWED_ALGORITHMS,
            issuer=issuer,
            audience=audience,
            options={"verify_aud": audience is not None, "verify_exp": verify_exp},
            leeway=leeway,
        )

    async def _verify_jwt(
        self, token: str, provider: ProviderConfig
    ) -> VerificationResult:
        cache_key = f"jwt:{provider.id}:{token_fingerprint(token)}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return VerificationResult(valid=True, claims=cached)

        provider, jwks_uri = await self._discovery.resolve_endpoint(provider, "jwks_uri")
        if not jwks_uri:
            return VerificationResult(valid=False, error="JWKS URI not available")

        try:
            claims = await self.decode_signed(
                token,
                jwks_uri,
                issuer=provider.issuer,
                audience=provider.audience or None,
            )
        except jwt.PyJWTError as exc:
            logger.info(
                "JWT verification failed for provider %s: %s",
                sanitize_for_log(provider.id),
                type(exc).__name__,
            )
            return VerificationResult(
                valid=False, error=f"Token verification failed: {type(exc).__name__}"
            )

        self._cache.set(
            cache_key,
            claims,
            ttl_seconds=verification_cache_ttl(claims.get("exp"), self._clock()),
        )
        return VerificationResult(valid=True, claims=claims)

    async def _introspect(
        self, token: str, provider: ProviderConfig
    ) -> VerificationResult:
        cache_key = f"{provider.id}:{token_fingerprint(token)}"
        result = self._cache.get(cache_key)

        if result is None:
            provider, endpoint = await self._discovery.resolve_endpoint(
                provider, "introspection_endpoint"
            )
            if not endpoint:
                return VerificationResult(
                    valid=False, error="Introspection endpoint not available"
                )

            async with self._http() as client:
                try:
                    response = await client.post(
                        endpoint,
                        data={"token": token, "token_type_hint": "access_token"},
                        auth=httpx.BasicAuth(provider.client_id, provider.client_secret),
                        headers={"Accept": "application/json"},
                        timeout=self._timeout,
                    )
                    response.raise_for_status()
                    result = response.json()
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning(
                        "Token introspection failed for provider %s: %s",
                        sanitize_for_log(provider.id),
                        type(exc).__name__,
                    )
                    return VerificationResult(
                        valid=False, error="Token introspection failed"
                    )

            if not isinstance(result, dict):
                return VerificationResult(
                    valid=False, error="Malformed introspection response"
                )
            self._cache.set(
                cache_key,
                result,
                ttl_seconds=verification_cache_ttl(result.get("exp"), self._clock()),
            )

        if not result.get("active"):
            return VerificationResult(valid=False, claims=result, error="Token is not active")
        return VerificationResult(valid=True, claims=result)

    async def refresh_access_token(
        self, refresh_token: str, provider_id: str
    ) -> RefreshResult:
        try:
            provider = await self._registry.get(provider_id)
        except ProviderUnavailableError:
            return RefreshResult(success=False, error="Provider store unavailable")
        if provider is None:
            return RefreshResult(success=False, error="Provider not found")

        provider, endpoint = await self._discovery.resolve_endpoint(
            provider, "token_endpoint"
        )
        endpoint = endpoint or provider.token_url

        async with self._http() as client:
            try:
                response = await client.post(
                    endpoint,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "client_id": provider.client_id,
                    },
                    auth=httpx.BasicAuth(provider.client_id, provider.client_secret),
                    headers={"Accept": "application/json"},
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                logger.warning(
                    "Token refresh request failed for provider %s: %s",
                    sanitize_for_log(provider.id),
                    type(exc).__name__,
                )
                return RefreshResult(success=False, error="Token refresh request failed")

        if not response.is_success:
            logger.warning(
                "Token refresh rejected for provider %s: HTTP %s",
                sanitize_for_log(provider.id),
                response.status_code,
            )
            return RefreshResult(
                success=False, error=f"Token refresh failed: HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError:
            return RefreshResult(success=False, error="Malformed token response")
        if not isinstance(data, dict) or not data.get("access_token"):
            return RefreshResult(success=False, error="Token response missing access_token")

        tokens = OidcTokens.from_token_response(
            data, now=self._clock(), previous_refresh_token=refresh_token
        )
        return RefreshResult(success=True, tokens=tokens)
