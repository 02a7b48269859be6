from dynamic_oidc.models.base import Base
from dynamic_oidc.models.oidc import DEFAULT_SCOPES, OIDCLoginGroup, OIDCProvider
from dynamic_oidc.models.users import Invitation, User, Workspace, WorkspaceAccess

__all__ = [
    "Base",
    "DEFAULT_SCOPES",
    "Invitation",
    "OIDCLoginGroup",
    "OIDCProvider",
    "User",
    "Workspace",
    "WorkspaceAccess",
]
