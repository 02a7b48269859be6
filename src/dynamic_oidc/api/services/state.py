"""Signed, stateless authorization state.

The state parameter round-trips through the provider and carries everything
the callback needs: the PKCE verifier, the nonce and the return URL. It is
an HS256 JWT, so nothing is persisted between the two requests.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

import jwt

from dynamic_oidc.api.services.errors import OidcErrorCode, StateValidationError

logger = logging.getLogger(__name__)

STATE_ALGORITHM = "HS256"
STATE_MAX_AGE = timedelta(minutes=10)


@dataclass(frozen=True)
class AuthorizationState:
    provider_id: str
    code_verifier: str
    nonce: str
    csrf_token: str
    timestamp: int
    return_url: Optional[str] = None

    @classmethod
    def new(
        cls,
        provider_id: str,
        code_verifier: str,
        nonce: str,
        return_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> "AuthorizationState":
        return cls(
            provider_id=provider_id,
            code_verifier=code_verifier,
            nonce=nonce,
            csrf_token=secrets.token_hex(16),
            timestamp=int(clock() * 1000),
            return_url=return_url,
        )

    def to_claims(self) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "providerId": self.provider_id,
            "codeVerifier": self.code_verifier,
            "nonce": self.nonce,
            "csrfToken": self.csrf_token,
            "timestamp": self.timestamp,
        }
        if self.return_url:
            claims["returnUrl"] = self.return_url
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "AuthorizationState":
        provider_id = claims.get("providerId")
        timestamp = claims.get("timestamp")
        code_verifier = claims.get("codeVerifier")
        if not isinstance(provider_id, str) or not provider_id:
            raise ValueError("state is missing providerId")
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise ValueError("state is missing timestamp")
        if not isinstance(code_verifier, str) or not code_verifier:
            raise ValueError("state is missing codeVerifier")
        return cls(
            provider_id=provider_id,
            code_verifier=code_verifier,
            nonce=str(claims.get("nonce") or ""),
            csrf_token=str(claims.get("csrfToken") or ""),
            timestamp=timestamp,
            return_url=claims.get("returnUrl") or None,
        )


class StateCodec:
    def __init__(
        self,
        secret: str,
        max_age: timedelta = STATE_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("State signing secret is required")
        self._secret = secret
        self._max_age = max_age
        self._clock = clock

    def sign(self, state: AuthorizationState) -> str:
        claims = state.to_claims()
        claims["exp"] = state.timestamp // 1000 + int(self._max_age.total_seconds())
        return jwt.encode(claims, self._secret, algorithm=STATE_ALGORITHM)

    def verify(self, token: str) -> AuthorizationState:
        """Check signature and age; raise StateValidationError otherwise."""
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[STATE_ALGORITHM],
                options={"verify_exp": False},
            )
            state = AuthorizationState.from_claims(claims)
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            logger.info("Rejected OIDC state: %s", type(exc).__name__)
            raise StateValidationError(
                OidcErrorCode.INVALID_STATE, "Invalid state parameter"
            ) from exc

        age_ms = int(self._clock() * 1000) - state.timestamp
        if age_ms > self._max_age.total_seconds() * 1000:
            raise StateValidationError(
                OidcErrorCode.STATE_EXPIRED, "Authentication session expired"
            )
        return state
