from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from dynamic_oidc.api.services.providers import login_provider_for
from dynamic_oidc.api.utils.logging import sanitize_for_log
from dynamic_oidc.models.oidc import OIDCLoginGroup, OIDCProvider
from dynamic_oidc.models.users import Invitation, User, Workspace, WorkspaceAccess

logger = logging.getLogger(__name__)

DYNAMIC_OIDC_LOGIN_TYPE = "dynamic-oidc"


@dataclass(frozen=True)
class LoginMethod:
    type: str
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None


def select_accessible_workspaces(
    login_groups: Iterable[OIDCLoginGroup], groups: Sequence[str]
) -> list[Workspace]:
    """Workspaces a user may enter, in login-group order, without duplicates."""
    member_of = set(groups)
    workspaces: list[Workspace] = []
    seen: set[uuid.UUID] = set()
    for login_group in login_groups:
        if not (
            login_group.allow_all_users
            or (login_group.group_value and login_group.group_value in member_of)
        ):
            continue
        workspace = login_group.workspace
        if workspace is None or workspace.id in seen:
            continue
        seen.add(workspace.id)
        workspaces.append(workspace)
    return workspaces


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class UserService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_login_groups(self, provider_id: str) -> list[OIDCLoginGroup]:
        result = await self.session.execute(
            select(OIDCLoginGroup)
            .options(joinedload(OIDCLoginGroup.workspace))
            .where(OIDCLoginGroup.provider_id == provider_id)
            .order_by(OIDCLoginGroup.created_at)
        )
        return list(result.scalars().all())

    async def upsert_oidc_user(
        self,
        external_id: str,
        provider_id: str,
        email: str,
        name: str,
    ) -> User:
        login_provider = login_provider_for(provider_id)
        result = await self.session.execute(
            select(User).where(
                User.external_id == external_id,
                User.login_provider == login_provider,
            )
        )
        user = result.scalar_one_or_none()
        now = datetime.now(timezone.utc)

        if user is None:
            user = User(
                id=uuid.uuid4(),
                email=email.lower(),
                name=name,
                external_id=external_id,
                login_provider=login_provider,
                last_login_at=now,
            )
            self.session.add(user)
            logger.info(
                "Created user %s via %s",
                sanitize_for_log(email.lower()),
                sanitize_for_log(login_provider),
            )
        else:
            user.email = email.lower()
            user.name = name
            user.last_login_at = now

        await self.session.flush()
        return user

    async def grant_workspace_access(
        self, user: User, workspaces: Iterable[Workspace]
    ) -> None:
        result = await self.session.execute(
            select(WorkspaceAccess.workspace_id).where(WorkspaceAccess.user_id == user.id)
        )
        existing = set(result.scalars().all())
        for workspace in workspaces:
            if workspace.id in existing:
                continue
            self.session.add(WorkspaceAccess(workspace_id=workspace.id, user_id=user.id))
            existing.add(workspace.id)
        await self.session.flush()

    async def has_workspace_access(self, user_id: str, workspace: str) -> bool:
        """Workspace may be given by id or by slug."""
        uid = _as_uuid(user_id)
        if uid is None:
            return False
        workspace_uuid = _as_uuid(workspace)
        condition = (
            Workspace.id == workspace_uuid
            if workspace_uuid is not None
            else Workspace.slug == workspace
        )
        result = await self.session.execute(
            select(WorkspaceAccess.id)
            .join(Workspace, Workspace.id == WorkspaceAccess.workspace_id)
            .where(WorkspaceAccess.user_id == uid, condition)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def find_login_method(
        self, email: str, default_type: str = "none"
    ) -> LoginMethod:
        """Which login flow the sign-in page should offer for an email.

        Unknown emails get ``default_type`` so the response does not reveal
        which addresses are registered.
        """
        email = email.strip().lower()

        result = await self.session.execute(
            select(User).where(func.lower(User.email) == email).limit(1)
        )
        user = result.scalar_one_or_none()
        if user is not None and (user.login_provider or "").startswith(
            DYNAMIC_OIDC_LOGIN_TYPE + "/"
        ):
            provider_id = user.login_provider.split("/", 1)[1]
            provider_result = await self.session.execute(
                select(OIDCProvider)
                .join(OIDCLoginGroup, OIDCLoginGroup.provider_id == OIDCProvider.id)
                .join(
                    WorkspaceAccess,
                    WorkspaceAccess.workspace_id == OIDCLoginGroup.workspace_id,
                )
                .where(
                    WorkspaceAccess.user_id == user.id,
                    OIDCProvider.id == provider_id,
                    OIDCProvider.enabled.is_(True),
                )
                .limit(1)
            )
            provider = provider_result.scalar_one_or_none()
            if provider is not None:
                return LoginMethod(DYNAMIC_OIDC_LOGIN_TYPE, provider.id, provider.name)

        invitation_result = await self.session.execute(
            select(Invitation)
            .where(func.lower(Invitation.email) == email, Invitation.used_by.is_(None))
            .order_by(Invitation.created_at.desc())
            .limit(1)
        )
        invitation = invitation_result.scalar_one_or_none()
        if invitation is not None:
            provider_result = await self.session.execute(
                select(OIDCProvider)
                .join(OIDCLoginGroup, OIDCLoginGroup.provider_id == OIDCProvider.id)
                .where(
                    OIDCLoginGroup.workspace_id == invitation.workspace_id,
                    OIDCProvider.enabled.is_(True),
                )
                .order_by(OIDCLoginGroup.created_at)
                .limit(1)
            )
            provider = provider_result.scalar_one_or_none()
            if provider is not None:
                return LoginMethod(DYNAMIC_OIDC_LOGIN_TYPE, provider.id, provider.name)

        return LoginMethod(default_type)

    async def record_login(self, provider_id: str) -> None:
        provider = await self.session.get(OIDCProvider, provider_id)
        if provider:
            provider.last_login_at = datetime.now(timezone.utc)
            await self.session.flush()

    async def record_error(self, provider_id: str, error: str) -> None:
        provider = await self.session.get(OIDCProvider, provider_id)
        if provider:
            provider.last_error = error
            provider.last_error_at = datetime.now(timezone.utc)
            await self.session.flush()
