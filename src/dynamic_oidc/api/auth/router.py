from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from dynamic_oidc.api.auth.deps import AuthenticatedUser, require_workspace_access
from dynamic_oidc.api.auth.schemas import (
    CheckEmailRequest,
    CheckEmailResponse,
    LogoutResponse,
    RenewResponse,
    SessionStatusResponse,
    SessionUser,
    WorkspaceAccessResponse,
)
from dynamic_oidc.api.context import OIDCContext, get_oidc_context
from dynamic_oidc.api.services.errors import (
    EndpointUnavailableError,
    OidcErrorCode,
    ProviderNotFoundError,
    ProviderUnavailableError,
    build_error_redirect,
)
from dynamic_oidc.api.services.result import Err
from dynamic_oidc.api.services.session import SESSION_COOKIE_NAME, Session
from dynamic_oidc.api.services.users import UserService
from dynamic_oidc.api.utils.logging import sanitize_for_log
from dynamic_oidc.api.utils.redirects import validate_return_url
from dynamic_oidc.api.utils.request_info import get_base_url, is_secure_request
from dynamic_oidc.db import session_dependency

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _session_user(session: Session) -> SessionUser:
    return SessionUser(
        email=session.email,
        name=session.name,
        internal_id=session.user_id,
        login_provider=session.login_provider,
        external_id=session.external_id,
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.get("/dynamic-oidc/authorize")
async def authorize(
    request: Request,
    provider_id: Optional[str] = Query(None, alias="providerId"),
    login_hint: Optional[str] = Query(None, alias="loginHint"),
    callback_url: Optional[str] = Query(None, alias="callbackUrl"),
    ctx: OIDCContext = Depends(get_oidc_context),
):
    if not provider_id:
        return _error(400, "Provider ID is required")
    if not ctx.settings.enabled:
        return _error(404, "Dynamic OIDC login is disabled")

    try:
        auth_request = await ctx.initiator.build_authorization_url(
            provider_id,
            base_url=get_base_url(request, ctx.settings.base_url),
            return_url=validate_return_url(callback_url),
            login_hint=login_hint,
        )
    except ProviderNotFoundError:
        return _error(404, "OIDC provider not found or disabled")
    except EndpointUnavailableError:
        return _error(500, "Authorization endpoint not configured")
    except ProviderUnavailableError:
        logger.error(
            "Provider store unavailable while authorizing %s",
            sanitize_for_log(provider_id),
        )
        return _error(500, "Internal server error")

    return RedirectResponse(auth_request.authorization_url, status_code=302)


@router.get("/dynamic-oidc/callback")
async def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    ctx: OIDCContext = Depends(get_oidc_context),
    db: AsyncSession = Depends(session_dependency),
):
    if not ctx.settings.enabled:
        return RedirectResponse(
            build_error_redirect(
                OidcErrorCode.PROVIDER_NOT_FOUND, "Dynamic OIDC login is disabled"
            ),
            status_code=302,
        )

    result = await ctx.callback.process(
        db,
        base_url=get_base_url(request, ctx.settings.base_url),
        code=code,
        state=state,
        error=error,
    )
    if isinstance(result, Err):
        return RedirectResponse(
            build_error_redirect(result.code, result.detail, result.return_url),
            status_code=302,
        )

    outcome = result.value
    response = RedirectResponse(outcome.redirect_url, status_code=302)
    ctx.sessions.set_cookie(response, outcome.session, secure=is_secure_request(request))
    return response


@router.get(
    "/dynamic-oidc/session",
    response_model=SessionStatusResponse,
    response_model_exclude_none=True,
)
async def session_status(
    request: Request,
    ctx: OIDCContext = Depends(get_oidc_context),
) -> SessionStatusResponse:
    session = ctx.sessions.unseal(request.cookies.get(SESSION_COOKIE_NAME))
    if session is None:
        return SessionStatusResponse(authenticated=False)

    status = await ctx.sessions.status(session)
    if not status.authenticated:
        return SessionStatusResponse(
            authenticated=False, needs_refresh=status.needs_refresh or None
        )
    return SessionStatusResponse(authenticated=True, user=_session_user(session))


@router.post(
    "/dynamic-oidc/renew",
    response_model=RenewResponse,
    response_model_exclude_none=True,
)
async def renew(
    request: Request,
    ctx: OIDCContext = Depends(get_oidc_context),
):
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        return _error(401, "No OIDC session found")
    session = ctx.sessions.unseal(cookie)
    if session is None:
        return _error(401, "Invalid session token")

    result = await ctx.sessions.renew(session)
    if not result.success:
        logger.info(
            "OIDC session renewal failed for user %s: %s",
            sanitize_for_log(session.user_id),
            sanitize_for_log(result.error),
        )
        return JSONResponse(
            content=RenewResponse(
                success=False, message="Re-authentication required"
            ).model_dump(by_alias=True)
        )

    response = JSONResponse(
        content=RenewResponse(success=True, message="Session renewed").model_dump(
            by_alias=True
        )
    )
    ctx.sessions.set_cookie(response, result.session, secure=is_secure_request(request))
    return response


@router.post("/dynamic-oidc/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    ctx: OIDCContext = Depends(get_oidc_context),
):
    response = JSONResponse(content=LogoutResponse(success=True).model_dump(by_alias=True))
    ctx.sessions.clear_cookie(response, secure=is_secure_request(request))
    return response


@router.post(
    "/check-email",
    response_model=CheckEmailResponse,
    response_model_exclude_none=True,
)
async def check_email(
    payload: CheckEmailRequest,
    ctx: OIDCContext = Depends(get_oidc_context),
    db: AsyncSession = Depends(session_dependency),
) -> CheckEmailResponse:
    default_type = ctx.settings.default_login_type
    if not ctx.settings.enabled:
        return CheckEmailResponse(type=default_type)

    method = await UserService(db).find_login_method(
        payload.email, default_type=default_type
    )
    return CheckEmailResponse(
        type=method.type,
        oidc_provider_id=method.provider_id,
        oidc_provider_name=method.provider_name,
    )


@router.get(
    "/workspaces/{workspace}/access",
    response_model=WorkspaceAccessResponse,
)
async def workspace_access(
    workspace: str,
    user: AuthenticatedUser = Depends(require_workspace_access),
) -> WorkspaceAccessResponse:
    return WorkspaceAccessResponse(workspace=workspace, user_id=user.user_id)
