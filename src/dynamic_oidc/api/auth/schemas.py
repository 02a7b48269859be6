from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionUser(CamelModel):
    email: str
    name: str
    internal_id: str
    login_provider: str
    external_id: str


class SessionStatusResponse(CamelModel):
    authenticated: bool
    user: Optional[SessionUser] = None
    needs_refresh: Optional[bool] = None


class RenewResponse(CamelModel):
    success: bool
    message: Optional[str] = None


class LogoutResponse(CamelModel):
    success: bool = True


class CheckEmailRequest(BaseModel):
    email: EmailStr


class CheckEmailResponse(CamelModel):
    type: str
    oidc_provider_id: Optional[str] = None
    oidc_provider_name: Optional[str] = None


class WorkspaceAccessResponse(CamelModel):
    workspace: str
    user_id: str
    has_access: bool = True
