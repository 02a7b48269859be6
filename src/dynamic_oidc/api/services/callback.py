from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from dynamic_oidc.api.services.authorization import callback_redirect_uri
from dynamic_oidc.api.services.discovery import DiscoveryResolver, HttpClientFactory
from dynamic_oidc.api.services.errors import (
    OidcErrorCode,
    StateValidationError,
    provider_error_code,
)
from dynamic_oidc.api.services.providers import ProviderConfig, ProviderRegistry
from dynamic_oidc.api.services.result import Err, Ok, Result
from dynamic_oidc.api.services.session import Session, SessionManager
from dynamic_oidc.api.services.state import AuthorizationState, StateCodec
from dynamic_oidc.api.services.tokens import OidcTokens, TokenVerifier
from dynamic_oidc.api.services.users import UserService, select_accessible_workspaces
from dynamic_oidc.api.utils.logging import sanitize_for_log
from dynamic_oidc.api.utils.redirects import validate_return_url

logger = logging.getLogger(__name__)


@dataclass
class CallbackOutcome:
    session: Session
    redirect_url: str
    user_id: str


class CallbackProcessor:
    """Turns a provider redirect into a sealed session.

    The steps run strictly in order and the first failure wins. Nothing is
    written to the database before the user has been granted at least one
    workspace.
    """

    OIDC_JWT_LEEWAY_SECONDS = 60

    def __init__(
        self,
        registry: ProviderRegistry,
        discovery: DiscoveryResolver,
        state_codec: StateCodec,
        verifier: TokenVerifier,
        sessions: SessionManager,
        http_client_factory: HttpClientFactory,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._discovery = discovery
        self._state_codec = state_codec
        self._verifier = verifier
        self._sessions = sessions
        self._http = http_client_factory
        self._timeout = timeout_seconds
        self._clock = clock

    async def process(
        self,
        db: AsyncSession,
        base_url: str,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Result[CallbackOutcome]:
        try:
            return await self._process(db, base_url, code, state, error)
        except Exception:
            logger.exception("Unexpected error processing OIDC callback")
            await db.rollback()
            return Err(OidcErrorCode.INTERNAL_ERROR, "Internal server error")

    async def _process(
        self,
        db: AsyncSession,
        base_url: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
    ) -> Result[CallbackOutcome]:
        if error:
            short_error = provider_error_code(error)
            logger.warning("OIDC provider returned error: %s", short_error)
            return Err(OidcErrorCode.OIDC_AUTH_ERROR, short_error)

        if not code or not state:
            return Err(OidcErrorCode.MISSING_PARAMS, "Missing code or state parameter")

        try:
            auth_state = self._state_codec.verify(state)
        except StateValidationError as exc:
            return Err(exc.code, str(exc))

        return_url = validate_return_url(auth_state.return_url)

        provider = await self._registry.get(auth_state.provider_id)
        if provider is None:
            logger.warning(
                "OIDC callback for unknown or disabled provider %s",
                sanitize_for_log(auth_state.provider_id),
            )
            return Err(
                OidcErrorCode.PROVIDER_NOT_FOUND,
                "OIDC provider not found or disabled",
                return_url,
            )

        result = await self._complete(db, base_url, provider, code, auth_state, return_url)
        if isinstance(result, Err):
            users = UserService(db)
            await users.record_error(provider.id, result.code.value)
            await db.commit()
        return result

    async def _complete(
        self,
        db: AsyncSession,
        base_url: str,
        provider: ProviderConfig,
        code: str,
        auth_state: AuthorizationState,
        return_url: Optional[str],
    ) -> Result[CallbackOutcome]:
        provider, token_endpoint = await self._discovery.resolve_endpoint(
            provider, "token_endpoint"
        )
        token_response = await self._exchange_code(
            provider,
            token_endpoint or provider.token_url,
            code,
            auth_state.code_verifier,
            base_url,
        )
        if token_response is None:
            return Err(
                OidcErrorCode.TOKEN_EXCHANGE_FAILED,
                "Failed to exchange authorization code",
                return_url,
            )

        claims_result = await self._obtain_claims(provider, token_response, auth_state)
        if isinstance(claims_result, Err):
            return replace(claims_result, return_url=return_url)
        claims = claims_result.value

        email = provider.claims.resolve_email(claims)
        if not email:
            return Err(OidcErrorCode.NO_EMAIL, "Email not provided by OIDC provider", return_url)
        name = provider.claims.resolve_name(claims, email)
        groups = provider.claims.resolve_groups(claims)

        external_id = claims.get("sub")
        if not external_id:
            return Err(OidcErrorCode.NO_USER_INFO, "Subject not provided by OIDC provider", return_url)

        if not provider.is_email_allowed(email):
            logger.warning(
                "Email domain of %s not allowed for provider %s",
                sanitize_for_log(email),
                sanitize_for_log(provider.id),
            )
            return Err(
                OidcErrorCode.NO_WORKSPACE_ACCESS,
                "Email domain is not allowed for this provider",
                return_url,
            )

        users = UserService(db)
        login_groups = await users.list_login_groups(provider.id)
        workspaces = select_accessible_workspaces(login_groups, groups)
        if not workspaces:
            logger.info(
                "User %s has no workspace access via provider %s",
                sanitize_for_log(email),
                sanitize_for_log(provider.id),
            )
            return Err(
                OidcErrorCode.NO_WORKSPACE_ACCESS,
                "You don't have access to any workspace",
                return_url,
            )
        default_path = workspaces[0].path

        user = await users.upsert_oidc_user(str(external_id), provider.id, email, name)
        await users.grant_workspace_access(user, workspaces)
        await users.record_login(provider.id)
        user_id = str(user.id)
        user_email = user.email
        await db.commit()

        tokens = OidcTokens.from_token_response(token_response, now=self._clock())
        session = self._sessions.issue(
            user_id=user_id,
            email=user_email,
            name=name,
            provider_id=provider.id,
            external_id=str(external_id),
            tokens=tokens,
        )
        logger.info(
            "OIDC login for user %s via provider %s",
            sanitize_for_log(user_email),
            sanitize_for_log(provider.id),
        )
        return Ok(
            CallbackOutcome(
                session=session,
                redirect_url=return_url or default_path,
                user_id=user_id,
            )
        )

    async def _exchange_code(
        self,
        provider: ProviderConfig,
        token_endpoint: str,
        code: str,
        code_verifier: str,
        base_url: str,
    ) -> Optional[dict[str, Any]]:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": callback_redirect_uri(base_url),
            "client_id": provider.client_id,
            "code_verifier": code_verifier,
        }
        if provider.audience:
            payload["audience"] = provider.audience

        async with self._http() as client:
            try:
                response = await client.post(
                    token_endpoint,
                    data=payload,
                    auth=httpx.BasicAuth(provider.client_id, provider.client_secret),
                    headers={"Accept": "application/json"},
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                logger.warning(
                    "OIDC token exchange request failed for provider %s: %s",
                    sanitize_for_log(provider.id),
                    type(exc).__name__,
                )
                return None

        if not response.is_success:
            logger.warning(
                "OIDC token exchange rejected for provider %s: HTTP %s",
                sanitize_for_log(provider.id),
                response.status_code,
            )
            return None

        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get("access_token"):
            logger.warning(
                "OIDC token response for provider %s missing access_token",
                sanitize_for_log(provider.id),
            )
            return None
        return data

    async def _obtain_claims(
        self,
        provider: ProviderConfig,
        token_response: dict[str, Any],
        auth_state: AuthorizationState,
    ) -> Result[dict[str, Any]]:
        id_token = token_response.get("id_token")
        if id_token:
            return await self._validate_id_token(provider, id_token, auth_state)

        provider, userinfo_endpoint = await self._discovery.resolve_endpoint(
            provider, "userinfo_endpoint"
        )
        if userinfo_endpoint:
            userinfo = await self._fetch_userinfo(
                provider, userinfo_endpoint, token_response["access_token"]
            )
            if userinfo is None:
                return Err(
                    OidcErrorCode.USERINFO_FETCH_FAILED, "Failed to fetch user info"
                )
            return Ok(userinfo)

        return Err(OidcErrorCode.NO_USER_INFO, "No user info available")

    async def _validate_id_token(
        self,
        provider: ProviderConfig,
        id_token: str,
        auth_state: AuthorizationState,
    ) -> Result[dict[str, Any]]:
        provider, jwks_uri = await self._discovery.resolve_endpoint(provider, "jwks_uri")
        try:
            if jwks_uri:
                claims = await self._verifier.decode_signed(
                    id_token,
                    jwks_uri,
                    verify_exp=False,
                    leeway=self.OIDC_JWT_LEEWAY_SECONDS,
                )
            else:
                # Received directly from the token endpoint over TLS.
                claims = jwt.decode(id_token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            logger.warning(
                "Invalid ID token from provider %s: %s",
                sanitize_for_log(provider.id),
                type(exc).__name__,
            )
            return Err(OidcErrorCode.INVALID_ID_TOKEN, "Invalid ID token")

        if claims.get("iss") != provider.issuer:
            logger.warning(
                "ID token issuer mismatch for provider %s: %s",
                sanitize_for_log(provider.id),
                sanitize_for_log(claims.get("iss")),
            )
            return Err(OidcErrorCode.INVALID_ISSUER, "Invalid token issuer")

        aud = claims.get("aud")
        if isinstance(aud, str):
            audiences = [aud]
        elif isinstance(aud, list):
            audiences = aud
        else:
            audiences = []
        if provider.client_id not in audiences:
            return Err(OidcErrorCode.INVALID_AUDIENCE, "Invalid token audience")

        if auth_state.nonce and claims.get("nonce") != auth_state.nonce:
            return Err(OidcErrorCode.INVALID_NONCE, "Invalid nonce")

        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and exp < self._clock():
            return Err(OidcErrorCode.TOKEN_EXPIRED, "ID token expired")

        return Ok(claims)

    async def _fetch_userinfo(
        self, provider: ProviderConfig, userinfo_endpoint: str, access_token: str
    ) -> Optional[dict[str, Any]]:
        async with self._http() as client:
            try:
                response = await client.get(
                    userinfo_endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                    timeout=self._timeout,
                )
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "OIDC userinfo request failed for provider %s: %s",
                    sanitize_for_log(provider.id),
                    type(exc).__name__,
                )
                return None
        return data if isinstance(data, dict) else None
