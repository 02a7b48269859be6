from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from dynamic_oidc.api.context import OIDCContext, get_oidc_context
from dynamic_oidc.api.services.session import SESSION_COOKIE_NAME
from dynamic_oidc.api.services.users import UserService
from dynamic_oidc.api.utils.logging import sanitize_for_log
from dynamic_oidc.api.utils.request_info import is_secure_request
from dynamic_oidc.db import session_dependency

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    """User resolved from a verified OIDC session."""

    user_id: str
    email: str
    name: str
    login_provider: str
    external_id: str
    provider_id: str


async def get_current_user(
    request: Request,
    response: Response,
    ctx: OIDCContext = Depends(get_oidc_context),
) -> AuthenticatedUser:
    """Resolve the session cookie, refreshing and re-issuing it when needed."""
    if not ctx.settings.enabled:
        raise HTTPException(status_code=401, detail="Not authenticated")

    session = ctx.sessions.unseal(request.cookies.get(SESSION_COOKIE_NAME))
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")

    resolved = await ctx.sessions.resolve(session)
    if resolved.session is None:
        logger.info(
            "Rejected OIDC session for user %s: %s",
            sanitize_for_log(session.user_id),
            sanitize_for_log(resolved.error),
        )
        raise HTTPException(status_code=401, detail="Session expired or invalid")

    if resolved.refreshed:
        ctx.sessions.set_cookie(
            response, resolved.session, secure=is_secure_request(request)
        )

    current = resolved.session
    return AuthenticatedUser(
        user_id=current.user_id,
        email=current.email,
        name=current.name,
        login_provider=current.login_provider,
        external_id=current.external_id,
        provider_id=current.provider_id,
    )


async def require_workspace_access(
    workspace: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(session_dependency),
) -> AuthenticatedUser:
    if not await UserService(db).has_workspace_access(user.user_id, workspace):
        raise HTTPException(status_code=403, detail="No access to this workspace")
    return user
