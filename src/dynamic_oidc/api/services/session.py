"""OIDC login sessions.

A session is sealed into the ``oidc-session`` cookie: an HS256 JWT whose
provider tokens are Fernet-encrypted before signing, so the cookie is both
tamper-evident and opaque to the browser. Nothing is stored server-side.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

import jwt
from cryptography.fernet import Fernet, InvalidToken
from starlette.responses import Response

from dynamic_oidc.api.services.encryption import derive_key
from dynamic_oidc.api.services.providers import login_provider_for
from dynamic_oidc.api.services.tokens import OidcTokens, TokenVerifier
from dynamic_oidc.api.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "oidc-session"
SESSION_ALGORITHM = "HS256"
SESSION_MAX_AGE_SECONDS = 7 * 24 * 60 * 60
TOKEN_EXPIRY_MARGIN_MS = 60_000


def is_token_expired(expires_at: int, now_ms: Optional[int] = None) -> bool:
    """True when the token expires within the safety margin."""
    current = int(time.time() * 1000) if now_ms is None else now_ms
    return current >= expires_at - TOKEN_EXPIRY_MARGIN_MS


@dataclass(frozen=True)
class Session:
    user_id: str
    email: str
    name: str
    login_provider: str
    external_id: str
    provider_id: str
    timestamp: int
    exp: int
    tokens: Optional[OidcTokens] = None


@dataclass
class RenewResult:
    session: Session
    success: bool
    needs_reauth: bool = False
    error: Optional[str] = None


@dataclass
class ResolvedSession:
    session: Optional[Session]
    refreshed: bool = False
    error: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.session is not None


@dataclass
class SessionStatus:
    authenticated: bool
    session: Optional[Session] = None
    needs_refresh: bool = False


class SessionSealer:
    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("Session signing secret is required")
        self._secret = secret
        self._fernet = Fernet(derive_key(secret, context="oidc-session-tokens:"))
        self._clock = clock

    def seal(self, session: Session) -> str:
        claims: dict[str, Any] = {
            "userId": session.user_id,
            "email": session.email,
            "name": session.name,
            "loginProvider": session.login_provider,
            "externalId": session.external_id,
            "providerId": session.provider_id,
            "timestamp": session.timestamp,
            "exp": session.exp,
        }
        if session.tokens is not None:
            payload = json.dumps(session.tokens.to_dict()).encode()
            claims["tokens"] = self._fernet.encrypt(payload).decode()
        return jwt.encode(claims, self._secret, algorithm=SESSION_ALGORITHM)

    def unseal(self, value: Optional[str]) -> Optional[Session]:
        """Return the session, or None for expired, foreign or garbled values."""
        if not value:
            return None
        try:
            claims = jwt.decode(
                value,
                self._secret,
                algorithms=[SESSION_ALGORITHM],
                options={"verify_exp": False, "require": ["exp"]},
            )
        except jwt.PyJWTError as exc:
            logger.info("Rejected OIDC session cookie: %s", type(exc).__name__)
            return None

        exp = claims.get("exp")
        if not isinstance(exp, int) or exp <= self._clock():
            return None

        tokens = None
        sealed_tokens = claims.get("tokens")
        if sealed_tokens:
            try:
                tokens = OidcTokens.from_dict(
                    json.loads(self._fernet.decrypt(str(sealed_tokens).encode()))
                )
            except (InvalidToken, ValueError, KeyError, TypeError):
                logger.warning("OIDC session cookie carries unreadable token material")
                return None

        try:
            return Session(
                user_id=str(claims["userId"]),
                email=str(claims["email"]),
                name=str(claims.get("name") or claims["email"]),
                login_provider=str(claims["loginProvider"]),
                external_id=str(claims["externalId"]),
                provider_id=str(claims["providerId"]),
                timestamp=int(claims["timestamp"]),
                exp=exp,
                tokens=tokens,
            )
        except (KeyError, TypeError, ValueError):
            logger.info("OIDC session cookie is missing required claims")
            return None


class SessionManager:
    def __init__(
        self,
        sealer: SessionSealer,
        verifier: TokenVerifier,
        max_age_seconds: int = SESSION_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sealer = sealer
        self._verifier = verifier
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def issue(
        self,
        user_id: str,
        email: str,
        name: str,
        provider_id: str,
        external_id: str,
        tokens: Optional[OidcTokens] = None,
    ) -> Session:
        now = self._clock()
        return Session(
            user_id=user_id,
            email=email,
            name=name,
            login_provider=login_provider_for(provider_id),
            external_id=external_id,
            provider_id=provider_id,
            timestamp=int(now * 1000),
            exp=int(now) + self.max_age_seconds,
            tokens=tokens,
        )

    def seal(self, session: Session) -> str:
        return self._sealer.seal(session)

    def unseal(self, value: Optional[str]) -> Optional[Session]:
        return self._sealer.unseal(value)

    def _slide(self, session: Session, tokens: Optional[OidcTokens] = None) -> Session:
        now = self._clock()
        return replace(
            session,
            timestamp=int(now * 1000),
            exp=int(now) + self.max_age_seconds,
            tokens=tokens if tokens is not None else session.tokens,
        )

    async def _refresh(self, session: Session) -> Optional[OidcTokens]:
        tokens = session.tokens
        if tokens is None or not tokens.refresh_token:
            return None
        result = await self._verifier.refresh_access_token(
            tokens.refresh_token, session.provider_id
        )
        if not result.success or result.tokens is None:
            logger.info(
                "Token refresh failed for user %s: %s",
                sanitize_for_log(session.user_id),
                sanitize_for_log(result.error),
            )
            return None
        return replace(result.tokens, id_token=result.tokens.id_token or tokens.id_token)

    async def renew(self, session: Session) -> RenewResult:
        """Slide the session window, refreshing provider tokens when possible.

        Never raises. A failed refresh leaves the session untouched and
        reports that the user has to sign in again.
        """
        tokens = session.tokens
        if tokens is None:
            return RenewResult(session=self._slide(session), success=True)

        if not tokens.refresh_token:
            if is_token_expired(tokens.expires_at, self._now_ms()):
                return RenewResult(
                    session=session,
                    success=False,
                    needs_reauth=True,
                    error="Access token expired and no refresh token is available",
                )
            return RenewResult(session=self._slide(session), success=True)

        refreshed = await self._refresh(session)
        if refreshed is None:
            return RenewResult(
                session=session,
                success=False,
                needs_reauth=True,
                error="Token refresh failed",
            )
        return RenewResult(session=self._slide(session, tokens=refreshed), success=True)

    async def resolve(self, session: Session) -> ResolvedSession:
        """Per-request check: refresh an expiring token, then verify it."""
        tokens = session.tokens
        if tokens is None:
            return ResolvedSession(session=session)

        refreshed = False
        if is_token_expired(tokens.expires_at, self._now_ms()):
            new_tokens = await self._refresh(session)
            if new_tokens is None:
                return ResolvedSession(session=None, error="Access token expired")
            session = replace(session, timestamp=self._now_ms(), tokens=new_tokens)
            tokens = new_tokens
            refreshed = True

        verification = await self._verifier.verify(tokens.access_token, session.provider_id)
        if not verification.valid:
            return ResolvedSession(session=None, error=verification.error)
        return ResolvedSession(session=session, refreshed=refreshed)

    async def status(self, session: Session) -> SessionStatus:
        tokens = session.tokens
        if tokens is not None:
            if is_token_expired(tokens.expires_at, self._now_ms()):
                return SessionStatus(authenticated=False, session=session, needs_refresh=True)
            verification = await self._verifier.verify(
                tokens.access_token, session.provider_id
            )
            if not verification.valid:
                return SessionStatus(authenticated=False, session=session, needs_refresh=True)
        return SessionStatus(authenticated=True, session=session)

    def set_cookie(self, response: Response, session: Session, secure: bool) -> None:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            self.seal(session),
            max_age=self.max_age_seconds,
            path="/",
            secure=secure,
            httponly=True,
            samesite="strict",
        )

    def clear_cookie(self, response: Response, secure: bool) -> None:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            "",
            max_age=0,
            path="/",
            secure=secure,
            httponly=True,
            samesite="strict",
        )
