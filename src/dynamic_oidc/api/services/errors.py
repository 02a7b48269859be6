from __future__ import annotations

from enum import Enum
from typing import Optional
from urllib.parse import urlencode

from dynamic_oidc.api.utils.logging import sanitize_for_log

SIGNIN_PATH = "/signin"
MAX_PROVIDER_ERROR_LENGTH = 64


class OidcErrorCode(str, Enum):
    """Closed set of failure codes surfaced to the sign-in page."""

    OIDC_AUTH_ERROR = "oidc_auth_error"
    MISSING_PARAMS = "missing_params"
    INVALID_STATE = "invalid_state"
    STATE_EXPIRED = "state_expired"
    PROVIDER_NOT_FOUND = "provider_not_found"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    INVALID_ID_TOKEN = "invalid_id_token"
    INVALID_ISSUER = "invalid_issuer"
    INVALID_AUDIENCE = "invalid_audience"
    INVALID_NONCE = "invalid_nonce"
    TOKEN_EXPIRED = "token_expired"
    USERINFO_FETCH_FAILED = "userinfo_fetch_failed"
    NO_USER_INFO = "no_user_info"
    NO_EMAIL = "no_email"
    NO_WORKSPACE_ACCESS = "no_workspace_access"
    INTERNAL_ERROR = "internal_error"


class OIDCError(Exception):
    pass


class ProviderNotFoundError(OIDCError):
    pass


class ProviderUnavailableError(OIDCError):
    pass


class EndpointUnavailableError(OIDCError):
    pass


class StateValidationError(OIDCError):
    def __init__(self, code: OidcErrorCode, message: str = ""):
        super().__init__(message or code.value)
        self.code = code


def provider_error_code(error: Optional[str]) -> str:
    """Short, log-safe form of the ``error`` parameter a provider sent back."""
    return sanitize_for_log(error or "", max_length=MAX_PROVIDER_ERROR_LENGTH)


def build_error_redirect(
    code: OidcErrorCode,
    message: Optional[str] = None,
    return_url: Optional[str] = None,
) -> str:
    params = {"error": code.value}
    if message:
        params["message"] = message
    if return_url:
        params["callbackUrl"] = return_url
    return f"{SIGNIN_PATH}?{urlencode(params)}"
